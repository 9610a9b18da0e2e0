from __future__ import annotations

import uuid
from typing import Callable

from ...domain.pipeline.events import PipelineEvent, StageCreated, StageDeleted, StageRenamed
from ...domain.pipeline.models import PROVISIONAL_PREFIX, Stage, is_provisional
from ...domain.pipeline.store import PipelineStore
from ...errors import NotFoundError, PipelineError, PreconditionError, ValidationError
from ...observability.logging import get_logger
from ...repositories.pipeline_gateway import PipelineGateway
from .reconciliation import Reconciler

log = get_logger("stage_service")


def _require_name(name: str | None, *, operation: str) -> str:
    n = str(name or "").strip()
    if not n:
        raise ValidationError(message="Stage name is required", operation=operation, field="name")
    return n


def _require_confirmed(stage_id: str, *, operation: str) -> None:
    if is_provisional(stage_id):
        raise PreconditionError(message="Stage is still being saved", operation=operation, entity_id=stage_id)


class StageLifecycleManager:
    """
    Create / rename / delete stages.

    Deletion policy: a stage may always be deleted. Opportunities that still
    reference it keep their `stage_id`, drop out of every column, and are
    reported by `PipelineStore.orphaned_opportunities()` until moved.
    """

    def __init__(
        self,
        store: PipelineStore,
        gateway: PipelineGateway,
        reconciler: Reconciler,
        publish: Callable[[PipelineEvent], None],
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._reconciler = reconciler
        self._publish = publish

    async def _adopt_created(self, provisional: Stage) -> Stage:
        """The server stored the stage but did not echo it: re-read to learn its id."""
        try:
            remote = await self._gateway.fetch_stages()
        except PipelineError as e:
            log.warning("created_stage_reread_failed", provisional_id=provisional.id, error=str(e))
            return provisional
        known = {s.id for s in self._store.ordered_stages()}
        matches = [
            s
            for s in remote
            if s.id not in known and s.name == provisional.name and s.order_position == provisional.order_position
        ]
        if not matches:
            log.warning("created_stage_not_found", provisional_id=provisional.id)
            return provisional
        created = matches[-1]
        if self._store.get_stage(provisional.id) is not None:
            self._store.replace_stage(provisional.id, created)
        return created

    async def create_stage(self, name: str, order_position: int | None = None) -> Stage:
        n = _require_name(name, operation="create_stage")
        if order_position is None:
            position = self._store.next_order_position()
        else:
            position = int(order_position)
            if any(s.order_position == position for s in self._store.ordered_stages()):
                raise ValidationError(
                    message=f"Order position {position} is already used",
                    operation="create_stage",
                    field="order_position",
                )

        provisional = Stage(id=f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}", name=n, order_position=position)
        created = provisional

        def confirm(server: Stage | None) -> None:
            nonlocal created
            created = server or provisional
            self._store.replace_stage(provisional.id, created)

        await self._reconciler.run(
            "create_stage",
            apply=lambda: self._store.put_stage(provisional),
            remote=lambda: self._gateway.create_stage(n, position),
            confirm=confirm,
        )
        if created is provisional:
            created = await self._adopt_created(provisional)
        log.info("stage_created", stage_id=created.id, order_position=created.order_position)
        self._publish(StageCreated(stage=created))
        return created

    async def rename_stage(self, stage_id: str, name: str) -> Stage:
        n = _require_name(name, operation="rename_stage")
        current = self._store.get_stage(stage_id)
        if current is None:
            raise NotFoundError(message="Stage not found", operation="rename_stage", entity_id=stage_id)
        _require_confirmed(stage_id, operation="rename_stage")

        renamed = current.model_copy(update={"name": n})
        result = renamed

        def confirm(server: Stage | None) -> None:
            nonlocal result
            if server is not None:
                result = server
                if self._store.get_stage(stage_id) == renamed:
                    self._store.put_stage(server)

        await self._reconciler.run(
            "rename_stage",
            apply=lambda: self._store.put_stage(renamed),
            remote=lambda: self._gateway.rename_stage(stage_id, n),
            confirm=confirm,
        )
        self._publish(StageRenamed(stage=result, previous_name=current.name))
        return result

    async def delete_stage(self, stage_id: str) -> StageDeleted:
        current = self._store.get_stage(stage_id)
        if current is None:
            raise NotFoundError(message="Stage not found", operation="delete_stage", entity_id=stage_id)
        _require_confirmed(stage_id, operation="delete_stage")

        orphaned = tuple(o.id for o in self._store.opportunities_in_stage(stage_id))
        await self._reconciler.run(
            "delete_stage",
            apply=lambda: self._store.remove_stage(stage_id),
            remote=lambda: self._gateway.delete_stage(stage_id),
        )
        if orphaned:
            log.info("stage_deleted_with_opportunities", stage_id=stage_id, orphaned=len(orphaned))
        evt = StageDeleted(stage=current, orphaned_ids=orphaned)
        self._publish(evt)
        return evt
