"""
In-memory projection of the board.

The store is the only shared mutable state in the engine. Lifecycle services
mutate it, the reconciler restores it, and everything else reads it. It never
performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, TypeVar

from .models import Note, Opportunity, Stage, sort_notes

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class StoreDiff:
    """Entity keys that differ between two snapshots."""

    stage_ids: frozenset[str] = frozenset()
    opportunity_ids: frozenset[str] = frozenset()
    note_thread_ids: frozenset[str] = frozenset()
    active_changed: bool = False

    def __bool__(self) -> bool:
        return bool(self.stage_ids or self.opportunity_ids or self.note_thread_ids or self.active_changed)

    def intersection(self, other: "StoreDiff") -> "StoreDiff":
        return StoreDiff(
            stage_ids=self.stage_ids & other.stage_ids,
            opportunity_ids=self.opportunity_ids & other.opportunity_ids,
            note_thread_ids=self.note_thread_ids & other.note_thread_ids,
            active_changed=self.active_changed and other.active_changed,
        )

    def difference(self, other: "StoreDiff") -> "StoreDiff":
        return StoreDiff(
            stage_ids=self.stage_ids - other.stage_ids,
            opportunity_ids=self.opportunity_ids - other.opportunity_ids,
            note_thread_ids=self.note_thread_ids - other.note_thread_ids,
            active_changed=self.active_changed and not other.active_changed,
        )


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    Immutable capture of the whole store.

    Entities are frozen models, so holding the (key, value) pairs is enough to
    restore them; ordering is part of the capture.
    """

    stages: tuple[tuple[str, Stage], ...]
    opportunities: tuple[tuple[str, Opportunity], ...]
    notes: tuple[tuple[str, tuple[Note, ...]], ...]
    active_opportunity_id: str | None

    def diff(self, other: "Snapshot") -> StoreDiff:
        return StoreDiff(
            stage_ids=_changed_keys(dict(self.stages), dict(other.stages)),
            opportunity_ids=_changed_keys(dict(self.opportunities), dict(other.opportunities)),
            note_thread_ids=_changed_keys(dict(self.notes), dict(other.notes)),
            active_changed=self.active_opportunity_id != other.active_opportunity_id,
        )

    def rebase(self, source: "Snapshot", keys: StoreDiff) -> "Snapshot":
        """Copy of this capture where `keys` hold `source`'s values (or are absent, like in `source`)."""
        return Snapshot(
            stages=_rebase(self.stages, source.stages, keys.stage_ids),
            opportunities=_rebase(self.opportunities, source.opportunities, keys.opportunity_ids),
            notes=_rebase(self.notes, source.notes, keys.note_thread_ids),
            active_opportunity_id=(
                source.active_opportunity_id if keys.active_changed else self.active_opportunity_id
            ),
        )


def _rebase(
    items: tuple[tuple[str, V], ...], source: tuple[tuple[str, V], ...], keys: frozenset[str]
) -> tuple[tuple[str, V], ...]:
    src = dict(source)
    out = [(k, src[k] if k in keys else v) for k, v in items if k not in keys or k in src]
    seen = {k for k, _ in items}
    out.extend((k, v) for k, v in source if k in keys and k not in seen)
    return tuple(out)


def _changed_keys(a: Mapping[str, object], b: Mapping[str, object]) -> frozenset[str]:
    keys = set(a) | set(b)
    return frozenset(k for k in keys if a.get(k) != b.get(k))


def _merge(current: dict[str, V], before: tuple[tuple[str, V], ...], keys: frozenset[str]) -> dict[str, V]:
    # Restore `keys` to their captured values (dropping the ones that did not
    # exist), keep every other current entry, and follow the captured order.
    out: dict[str, V] = {}
    for k, v in before:
        if k in keys:
            out[k] = v
        elif k in current:
            out[k] = current[k]
    for k, v in current.items():
        if k not in out and k not in keys:
            out[k] = v
    return out


class PipelineStore:
    def __init__(self) -> None:
        self._stages: dict[str, Stage] = {}
        self._opportunities: dict[str, Opportunity] = {}
        self._notes: dict[str, tuple[Note, ...]] = {}
        self._active_opportunity_id: str | None = None

    # ---- loads (latest fetch wins) ----
    def load_stages(self, stages: Iterable[Stage]) -> None:
        self._stages = {s.id: s for s in stages}

    def load_opportunities(self, opportunities: Iterable[Opportunity]) -> None:
        self._opportunities = {o.id: o for o in opportunities}
        self._notes = {k: v for k, v in self._notes.items() if k in self._opportunities}
        if self._active_opportunity_id not in self._opportunities:
            self._active_opportunity_id = None

    def load_notes(self, opportunity_id: str, notes: Iterable[Note]) -> None:
        self._notes[opportunity_id] = sort_notes(notes)

    def open_thread(self, opportunity_id: str) -> None:
        self._active_opportunity_id = opportunity_id

    def close_thread(self) -> None:
        self._active_opportunity_id = None

    # ---- projections ----
    def ordered_stages(self) -> list[Stage]:
        return sorted(self._stages.values(), key=lambda s: s.sort_key)

    def entry_stage(self) -> Stage | None:
        stages = self.ordered_stages()
        return stages[0] if stages else None

    def next_order_position(self) -> int:
        if not self._stages:
            return 1
        return max(s.order_position for s in self._stages.values()) + 1

    def get_stage(self, stage_id: str) -> Stage | None:
        return self._stages.get(stage_id)

    def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        return self._opportunities.get(opportunity_id)

    def opportunities(self) -> list[Opportunity]:
        return list(self._opportunities.values())

    def opportunities_in_stage(self, stage_id: str) -> list[Opportunity]:
        return [o for o in self._opportunities.values() if o.stage_id == stage_id]

    def orphaned_opportunities(self) -> list[Opportunity]:
        return [o for o in self._opportunities.values() if o.stage_id not in self._stages]

    @property
    def active_opportunity_id(self) -> str | None:
        return self._active_opportunity_id

    def notes_for(self, opportunity_id: str) -> tuple[Note, ...]:
        return self._notes.get(opportunity_id, ())

    def note_thread(self) -> tuple[Note, ...]:
        if not self._active_opportunity_id:
            return ()
        return self.notes_for(self._active_opportunity_id)

    # ---- mutations ----
    def put_stage(self, stage: Stage) -> None:
        self._stages[stage.id] = stage

    def replace_stage(self, old_id: str, stage: Stage) -> None:
        self._stages = _swap(self._stages, old_id, stage.id, stage)
        if old_id != stage.id:
            for oid, opp in list(self._opportunities.items()):
                if opp.stage_id == old_id:
                    self._opportunities[oid] = opp.model_copy(update={"stage_id": stage.id})

    def remove_stage(self, stage_id: str) -> Stage | None:
        return self._stages.pop(stage_id, None)

    def put_opportunity(self, opportunity: Opportunity) -> None:
        self._opportunities[opportunity.id] = opportunity

    def replace_opportunity(self, old_id: str, opportunity: Opportunity) -> None:
        self._opportunities = _swap(self._opportunities, old_id, opportunity.id, opportunity)
        if old_id != opportunity.id:
            if old_id in self._notes:
                self._notes[opportunity.id] = self._notes.pop(old_id)
            if self._active_opportunity_id == old_id:
                self._active_opportunity_id = opportunity.id

    def remove_opportunity(self, opportunity_id: str) -> Opportunity | None:
        removed = self._opportunities.pop(opportunity_id, None)
        self._notes.pop(opportunity_id, None)
        if self._active_opportunity_id == opportunity_id:
            self._active_opportunity_id = None
        return removed

    def append_note(self, note: Note) -> None:
        thread = self._notes.get(note.opportunity_id, ())
        self._notes[note.opportunity_id] = sort_notes(thread + (note,))

    def replace_note(self, old_id: str, note: Note) -> None:
        thread = self._notes.get(note.opportunity_id, ())
        kept = tuple(n for n in thread if n.id != old_id)
        self._notes[note.opportunity_id] = sort_notes(kept + (note,))

    # ---- snapshot / restore ----
    def snapshot(self) -> Snapshot:
        return Snapshot(
            stages=tuple(self._stages.items()),
            opportunities=tuple(self._opportunities.items()),
            notes=tuple(self._notes.items()),
            active_opportunity_id=self._active_opportunity_id,
        )

    def restore(self, snapshot: Snapshot, only: StoreDiff | None = None) -> None:
        """
        Restore captured state.

        With `only`, just the entities one mutation touched are put back, so a
        rollback never undoes another mutation that is still in flight.
        """
        if only is None:
            self._stages = dict(snapshot.stages)
            self._opportunities = dict(snapshot.opportunities)
            self._notes = dict(snapshot.notes)
            self._active_opportunity_id = snapshot.active_opportunity_id
            return
        if not only:
            return

        self._stages = _merge(self._stages, snapshot.stages, only.stage_ids)
        self._opportunities = _merge(self._opportunities, snapshot.opportunities, only.opportunity_ids)
        self._notes = _merge(self._notes, snapshot.notes, only.note_thread_ids)
        if only.active_changed:
            self._active_opportunity_id = snapshot.active_opportunity_id


def _swap(items: dict[str, V], old_key: str, new_key: str, value: V) -> dict[str, V]:
    if old_key not in items:
        out = dict(items)
        out[new_key] = value
        return out
    out = {}
    for k, v in items.items():
        if k == old_key:
            out[new_key] = value
        elif k != new_key:
            out[k] = v
    return out
