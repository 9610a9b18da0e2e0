"""
Drag-and-drop session state machine.

    Idle --begin--> Dragging --hover(other)--> HoveringTarget(stage)
    HoveringTarget --leave(stage)--> Dragging
    HoveringTarget --hover(origin)--> Dragging
    Dragging | HoveringTarget --drop | cancel--> Idle

Highlighting is driven only by hover/leave so the UI can render the drop
affordance before anything is committed. The origin stage is never a live
target. The tracker has no side effects: a drop only *describes* the move,
the board hands it to the opportunity service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from ...observability.logging import get_logger
from .models import Opportunity

log = get_logger("drag_session")


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Dragging:
    opportunity_id: str
    origin_stage_id: str


@dataclass(frozen=True, slots=True)
class HoveringTarget:
    opportunity_id: str
    origin_stage_id: str
    stage_id: str


DragState = Union[Idle, Dragging, HoveringTarget]


@dataclass(frozen=True, slots=True)
class MoveRequested:
    opportunity_id: str
    from_stage_id: str
    to_stage_id: str


DropIgnoredReason = Literal["no_session", "same_stage", "cancelled"]


@dataclass(frozen=True, slots=True)
class DropIgnored:
    reason: DropIgnoredReason
    opportunity_id: str | None = None


DropOutcome = Union[MoveRequested, DropIgnored]

IDLE = Idle()


class DragSessionTracker:
    def __init__(self) -> None:
        self._state: DragState = IDLE

    @property
    def state(self) -> DragState:
        return self._state

    @property
    def is_active(self) -> bool:
        return not isinstance(self._state, Idle)

    @property
    def dragged_opportunity_id(self) -> str | None:
        if isinstance(self._state, (Dragging, HoveringTarget)):
            return self._state.opportunity_id
        return None

    @property
    def highlighted_stage_id(self) -> str | None:
        if isinstance(self._state, HoveringTarget):
            return self._state.stage_id
        return None

    def is_highlighted(self, stage_id: str) -> bool:
        return self.highlighted_stage_id == stage_id

    def begin(self, opportunity: Opportunity) -> DragState:
        if self.is_active:
            # A new pick-up supersedes whatever gesture was left dangling.
            self.cancel()
        self._state = Dragging(opportunity_id=opportunity.id, origin_stage_id=opportunity.stage_id)
        log.debug("drag_started", opportunity_id=opportunity.id, origin_stage_id=opportunity.stage_id)
        return self._state

    def hover(self, stage_id: str) -> DragState:
        st = self._state
        if isinstance(st, Idle):
            return st
        if stage_id == st.origin_stage_id:
            self._state = Dragging(opportunity_id=st.opportunity_id, origin_stage_id=st.origin_stage_id)
        else:
            self._state = HoveringTarget(
                opportunity_id=st.opportunity_id,
                origin_stage_id=st.origin_stage_id,
                stage_id=stage_id,
            )
        return self._state

    def leave(self, stage_id: str) -> DragState:
        st = self._state
        if isinstance(st, HoveringTarget) and st.stage_id == stage_id:
            self._state = Dragging(opportunity_id=st.opportunity_id, origin_stage_id=st.origin_stage_id)
        return self._state

    def drop(self, stage_id: str) -> DropOutcome:
        st = self._state
        self._state = IDLE
        if isinstance(st, Idle):
            return DropIgnored(reason="no_session")
        if stage_id == st.origin_stage_id:
            log.debug("drop_on_origin", opportunity_id=st.opportunity_id, stage_id=stage_id)
            return DropIgnored(reason="same_stage", opportunity_id=st.opportunity_id)
        log.info(
            "drop_move_requested",
            opportunity_id=st.opportunity_id,
            from_stage_id=st.origin_stage_id,
            to_stage_id=stage_id,
        )
        return MoveRequested(
            opportunity_id=st.opportunity_id,
            from_stage_id=st.origin_stage_id,
            to_stage_id=stage_id,
        )

    def cancel(self) -> DropIgnored:
        st = self._state
        self._state = IDLE
        if isinstance(st, Idle):
            return DropIgnored(reason="no_session")
        log.debug("drag_cancelled", opportunity_id=st.opportunity_id)
        return DropIgnored(reason="cancelled", opportunity_id=st.opportunity_id)
