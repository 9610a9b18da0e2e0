"""
Optimistic-then-reconcile protocol.

For every mutation:
1) snapshot the store
2) apply the change locally (synchronous)
3) await the remote call (the only suspension point)
4) success: let the caller confirm with the authoritative response
5) failure: put back the entities this mutation touched, publish
   `MutationReverted` and re-raise

Nothing is queued or serialized per entity. Mutations still in flight are
tracked in start order so that overlapping changes to the same entity unwind
to what the server actually holds:
- a failed mutation hands its captured values to the next in-flight mutation
  that touched the same entity, instead of overwriting that mutation's
  optimistic value
- a confirmed mutation releases those entities from every earlier in-flight
  mutation, so a late failure never undoes a confirmed change
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from anyio import get_cancelled_exc_class

from ...domain.pipeline.events import MutationReverted, OpportunityMoved, PipelineEvent
from ...domain.pipeline.store import PipelineStore, Snapshot, StoreDiff
from ...errors import PipelineError, TransportError
from ...observability.context import mutation_id_var
from ...observability.logging import get_logger

log = get_logger("reconciliation")

T = TypeVar("T")

Publish = Callable[[PipelineEvent], None]


@dataclass(slots=True, eq=False)
class _InFlight:
    operation: str
    before: Snapshot
    touched: StoreDiff


class Reconciler:
    def __init__(self, store: PipelineStore, publish: Publish | None = None) -> None:
        self._store = store
        self._publish = publish or (lambda _evt: None)
        self._in_flight: list[_InFlight] = []

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    async def run(
        self,
        operation: str,
        *,
        apply: Callable[[], None],
        remote: Callable[[], Awaitable[T]],
        confirm: Callable[[T], None] | None = None,
        move: OpportunityMoved | None = None,
    ) -> T:
        token = mutation_id_var.set(uuid.uuid4().hex[:12])
        try:
            before = self._store.snapshot()
            apply()
            entry = _InFlight(operation=operation, before=before, touched=before.diff(self._store.snapshot()))
            self._in_flight.append(entry)
            log.info("optimistic_apply", operation=operation, in_flight=len(self._in_flight))

            try:
                result = await remote()
            except get_cancelled_exc_class():
                self._unwind(entry)
                log.warning("mutation_cancelled", operation=operation)
                raise
            except PipelineError as e:
                self._rollback(entry, e, move)
                raise
            except Exception as e:  # noqa: BLE001
                wrapped = TransportError(message="Unexpected remote failure", operation=operation, cause=e)
                self._rollback(entry, wrapped, move)
                raise wrapped from e

            self._settle(entry)
            if confirm is not None:
                confirm(result)
            log.info("mutation_confirmed", operation=operation)
            return result
        finally:
            mutation_id_var.reset(token)

    def _settle(self, entry: _InFlight) -> None:
        idx = self._in_flight.index(entry)
        for earlier in self._in_flight[:idx]:
            earlier.touched = earlier.touched.difference(entry.touched)
        del self._in_flight[idx]

    def _unwind(self, entry: _InFlight) -> None:
        idx = self._in_flight.index(entry)
        restore = entry.touched
        for later in self._in_flight[idx + 1 :]:
            shared = restore.intersection(later.touched)
            if shared:
                # `later` captured this mutation's optimistic value; give it ours.
                later.before = later.before.rebase(entry.before, shared)
                restore = restore.difference(shared)
        del self._in_flight[idx]
        self._store.restore(entry.before, only=restore)

    def _rollback(self, entry: _InFlight, error: PipelineError, move: OpportunityMoved | None) -> None:
        self._unwind(entry)
        log.warning(
            "mutation_rolled_back",
            operation=entry.operation,
            error=str(error),
            error_type=type(error).__name__,
            status=error.status,
        )
        self._publish(MutationReverted(operation=entry.operation, error=error, move=move))
