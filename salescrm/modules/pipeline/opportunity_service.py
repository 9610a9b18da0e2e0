from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from ...domain.pipeline.events import (
    NoteAdded,
    OpportunityCreated,
    OpportunityDeleted,
    OpportunityMoved,
    OpportunityUpdated,
    PipelineEvent,
)
from ...domain.pipeline.models import PROVISIONAL_PREFIX, Note, Opportunity, is_provisional
from ...domain.pipeline.store import PipelineStore
from ...errors import NotFoundError, PipelineError, PreconditionError, ValidationError
from ...observability.logging import get_logger
from ...repositories.pipeline_gateway import PipelineGateway
from ...settings import Settings, get_settings
from .reconciliation import Reconciler

log = get_logger("opportunity_service")


def _clean(v: str | None) -> str | None:
    s = str(v or "").strip()
    return s or None


class OpportunityLifecycleManager:
    def __init__(
        self,
        store: PipelineStore,
        gateway: PipelineGateway,
        reconciler: Reconciler,
        publish: Callable[[PipelineEvent], None],
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._reconciler = reconciler
        self._publish = publish
        self._settings = settings or get_settings()

    # ---- validation ----
    def _validate_fields(self, *, operation: str, title: str | None, description: str | None) -> tuple[str, str | None]:
        t = _clean(title)
        if not t:
            raise ValidationError(message="Opportunity title is required", operation=operation, field="title")
        d = _clean(description)
        limit = int(self._settings.description_max_length)
        if d is not None and len(d) > limit:
            raise ValidationError(
                message=f"Description must be at most {limit} characters",
                operation=operation,
                field="description",
            )
        return t, d

    def _require_opportunity(self, opportunity_id: str, *, operation: str) -> Opportunity:
        opp = self._store.get_opportunity(opportunity_id)
        if opp is None:
            raise NotFoundError(message="Opportunity not found", operation=operation, entity_id=opportunity_id)
        if is_provisional(opp.id):
            raise PreconditionError(
                message="Opportunity is still being saved", operation=operation, entity_id=opportunity_id
            )
        return opp

    # ---- bodyless create responses ----
    async def _adopt_created(self, provisional: Opportunity) -> Opportunity:
        """The server stored the card but did not echo it: re-read to learn its id."""
        try:
            remote = await self._gateway.fetch_opportunities()
        except PipelineError as e:
            log.warning("created_opportunity_reread_failed", provisional_id=provisional.id, error=str(e))
            return provisional
        known = {o.id for o in self._store.opportunities()}
        matches = [
            o
            for o in remote
            if o.id not in known and o.title == provisional.title and o.stage_id == provisional.stage_id
        ]
        if not matches:
            log.warning("created_opportunity_not_found", provisional_id=provisional.id)
            return provisional
        created = matches[-1]
        if self._store.get_opportunity(provisional.id) is not None:
            self._store.replace_opportunity(provisional.id, created)
        return created

    async def _adopt_note(self, provisional: Note) -> Note:
        try:
            remote = await self._gateway.fetch_notes(provisional.opportunity_id)
        except PipelineError as e:
            log.warning("created_note_reread_failed", provisional_id=provisional.id, error=str(e))
            return provisional
        known = {n.id for n in self._store.notes_for(provisional.opportunity_id)}
        matches = [n for n in remote if n.id not in known and n.content == provisional.content]
        if not matches:
            log.warning("created_note_not_found", provisional_id=provisional.id)
            return provisional
        created = matches[-1]
        self._store.replace_note(provisional.id, created)
        return created

    # ---- lifecycle ----
    async def create_opportunity(
        self,
        title: str,
        description: str | None = None,
        label: str | None = None,
        patient_id: str | None = None,
    ) -> Opportunity:
        t, d = self._validate_fields(operation="create_opportunity", title=title, description=description)
        entry = self._store.entry_stage()
        if entry is None:
            raise PreconditionError(message="no stages", operation="create_opportunity")
        if is_provisional(entry.id):
            raise PreconditionError(
                message="Stage is still being saved", operation="create_opportunity", entity_id=entry.id
            )

        provisional = Opportunity(
            id=f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}",
            title=t,
            description=d,
            label=_clean(label),
            stage_id=entry.id,
            patient_id=patient_id,
        )
        fields = {
            "title": provisional.title,
            "description": provisional.description,
            "stage_id": provisional.stage_id,
            "patient_id": provisional.patient_id,
            "label": provisional.label,
        }
        created = provisional

        def confirm(server: Opportunity | None) -> None:
            nonlocal created
            created = server or provisional
            self._store.replace_opportunity(provisional.id, created)

        await self._reconciler.run(
            "create_opportunity",
            apply=lambda: self._store.put_opportunity(provisional),
            remote=lambda: self._gateway.create_opportunity(fields),
            confirm=confirm,
        )
        if created is provisional:
            created = await self._adopt_created(provisional)
        log.info("opportunity_created", opportunity_id=created.id, stage_id=created.stage_id)
        self._publish(OpportunityCreated(opportunity=created))
        return created

    async def move_opportunity(self, opportunity_id: str, target_stage_id: str) -> OpportunityMoved | None:
        """
        Move a card to another stage. Drag-and-drop and the explicit
        "move to stage" action both end up here.

        Returns None (no mutation, no request) when the card is already there.
        """
        current = self._require_opportunity(opportunity_id, operation="move_opportunity")
        if current.stage_id == target_stage_id:
            return None
        if self._store.get_stage(target_stage_id) is None:
            raise NotFoundError(message="Stage not found", operation="move_opportunity", entity_id=target_stage_id)
        if is_provisional(target_stage_id):
            raise PreconditionError(
                message="Stage is still being saved", operation="move_opportunity", entity_id=target_stage_id
            )

        moved = current.model_copy(update={"stage_id": target_stage_id})
        evt = OpportunityMoved(opportunity=moved, from_stage_id=current.stage_id, to_stage_id=target_stage_id)

        def confirm(server: Opportunity | None) -> None:
            nonlocal evt
            if server is not None:
                # A newer in-flight change to the card keeps its optimistic value.
                if self._store.get_opportunity(opportunity_id) == moved:
                    self._store.put_opportunity(server)
                evt = OpportunityMoved(opportunity=server, from_stage_id=current.stage_id, to_stage_id=server.stage_id)

        await self._reconciler.run(
            "move_opportunity",
            apply=lambda: self._store.put_opportunity(moved),
            remote=lambda: self._gateway.update_opportunity(opportunity_id, {"stage_id": target_stage_id}),
            confirm=confirm,
            move=evt,
        )
        self._publish(evt)
        return evt

    async def update_opportunity(
        self,
        opportunity_id: str,
        title: str,
        description: str | None,
        label: str | None,
    ) -> Opportunity:
        current = self._require_opportunity(opportunity_id, operation="update_opportunity")
        t, d = self._validate_fields(operation="update_opportunity", title=title, description=description)
        updated = current.model_copy(update={"title": t, "description": d, "label": _clean(label)})
        fields: dict[str, Any] = {"title": updated.title, "description": updated.description, "label": updated.label}
        result = updated

        def confirm(server: Opportunity | None) -> None:
            nonlocal result
            if server is not None:
                result = server
                if self._store.get_opportunity(opportunity_id) == updated:
                    self._store.put_opportunity(server)

        await self._reconciler.run(
            "update_opportunity",
            apply=lambda: self._store.put_opportunity(updated),
            remote=lambda: self._gateway.update_opportunity(opportunity_id, fields),
            confirm=confirm,
        )
        self._publish(OpportunityUpdated(opportunity=result))
        return result

    async def delete_opportunity(self, opportunity_id: str) -> Opportunity:
        current = self._require_opportunity(opportunity_id, operation="delete_opportunity")
        await self._reconciler.run(
            "delete_opportunity",
            apply=lambda: self._store.remove_opportunity(opportunity_id),
            remote=lambda: self._gateway.delete_opportunity(opportunity_id),
        )
        log.info("opportunity_deleted", opportunity_id=opportunity_id)
        self._publish(OpportunityDeleted(opportunity=current))
        return current

    # ---- notes ----
    async def add_note(self, opportunity_id: str, content: str) -> Note:
        body = _clean(content)
        if not body:
            raise ValidationError(message="Note content is required", operation="add_note", field="content")
        self._require_opportunity(opportunity_id, operation="add_note")

        provisional = Note(
            id=f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}",
            opportunity_id=opportunity_id,
            user_name=self._settings.note_author,
            content=body,
            created_at=datetime.now(timezone.utc),
        )
        created = provisional

        def confirm(server: Note | None) -> None:
            nonlocal created
            created = server or provisional
            self._store.replace_note(provisional.id, created)

        await self._reconciler.run(
            "add_note",
            apply=lambda: self._store.append_note(provisional),
            remote=lambda: self._gateway.create_note(opportunity_id, body),
            confirm=confirm,
        )
        if created is provisional:
            created = await self._adopt_note(provisional)
        self._publish(NoteAdded(note=created))
        return created

    # ---- detail view ----
    async def open_opportunity(self, opportunity_id: str) -> Opportunity:
        """Load an opportunity and its note thread for the details view."""
        opp = await self._gateway.fetch_opportunity(opportunity_id)
        notes = await self._gateway.fetch_notes(opportunity_id)
        self._store.put_opportunity(opp)
        self._store.load_notes(opp.id, notes)
        self._store.open_thread(opp.id)
        return opp

    def close_opportunity(self) -> None:
        self._store.close_thread()
