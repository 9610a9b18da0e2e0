from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .models import Label, Note, Opportunity, Stage


@dataclass(frozen=True, slots=True)
class StageCreated:
    stage: Stage


@dataclass(frozen=True, slots=True)
class StageRenamed:
    stage: Stage
    previous_name: str


@dataclass(frozen=True, slots=True)
class StageDeleted:
    stage: Stage
    # Opportunities that still reference the deleted stage.
    orphaned_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class OpportunityCreated:
    opportunity: Opportunity


@dataclass(frozen=True, slots=True)
class OpportunityMoved:
    opportunity: Opportunity
    from_stage_id: str
    to_stage_id: str


@dataclass(frozen=True, slots=True)
class OpportunityUpdated:
    opportunity: Opportunity


@dataclass(frozen=True, slots=True)
class OpportunityDeleted:
    opportunity: Opportunity


@dataclass(frozen=True, slots=True)
class NoteAdded:
    note: Note


@dataclass(frozen=True, slots=True)
class LabelCreated:
    label: Label


@dataclass(frozen=True, slots=True)
class MutationReverted:
    """
    A remote call failed and the store was rolled back.

    `move` is set when the failed mutation was a card move so the UI can
    animate the card back to `move.from_stage_id`.
    """

    operation: str
    error: Exception
    move: OpportunityMoved | None = None


PipelineEvent = Union[
    StageCreated,
    StageRenamed,
    StageDeleted,
    OpportunityCreated,
    OpportunityMoved,
    OpportunityUpdated,
    OpportunityDeleted,
    NoteAdded,
    LabelCreated,
    MutationReverted,
]
