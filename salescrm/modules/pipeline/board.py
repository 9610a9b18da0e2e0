"""
Pipeline board facade.

Single entrypoint for the presentation layer:
- read-only projections of the store (ordered stages, columns, drag state,
  note thread, labels)
- gesture handlers for drag-and-drop
- CRUD operations that run through the reconciler
- event and notice subscriptions

View-state (which modal is open, which form is dirty) stays in the
presentation layer; the board only exposes data, operations and events.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ...domain.pipeline.drag_session import DragSessionTracker, DragState, DropIgnored
from ...domain.pipeline.events import MutationReverted, OpportunityMoved, PipelineEvent, StageDeleted
from ...domain.pipeline.models import Label, Note, Opportunity, Stage
from ...domain.pipeline.store import PipelineStore
from ...errors import NotFoundError, PipelineError
from ...infrastructure.sales_api_client import SalesApiClient
from ...observability.logging import configure_logging, get_logger
from ...repositories.pipeline_gateway import PipelineGateway
from ...settings import Settings, get_settings
from ..labels.label_service import LabelService
from .notices import Notice, notice_for_error, notice_for_event
from .opportunity_service import OpportunityLifecycleManager
from .reconciliation import Reconciler
from .stage_service import StageLifecycleManager

log = get_logger("pipeline_board")

T = TypeVar("T")

EventListener = Callable[[PipelineEvent], None]
NoticeListener = Callable[[Notice], None]


@dataclass(frozen=True, slots=True)
class Column:
    stage: Stage
    opportunities: tuple[Opportunity, ...]
    highlighted: bool = False


class PipelineBoard:
    def __init__(self, gateway: PipelineGateway, *, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._gateway = gateway
        self._store = PipelineStore()
        self._drag = DragSessionTracker()
        self._listeners: list[EventListener] = []
        self._notice_listeners: list[NoticeListener] = []
        self._last_surfaced: Exception | None = None

        self._reconciler = Reconciler(self._store, publish=self._emit)
        self._stages = StageLifecycleManager(self._store, gateway, self._reconciler, self._emit)
        self._opportunities = OpportunityLifecycleManager(
            self._store, gateway, self._reconciler, self._emit, settings=self._settings
        )
        self._labels = LabelService(gateway, context=self._settings.label_context or None, publish=self._emit)

    async def aclose(self) -> None:
        close = getattr(self._gateway, "aclose", None)
        if close is not None:
            await close()

    # ---- subscriptions ----
    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_notice(self, listener: NoticeListener) -> Callable[[], None]:
        self._notice_listeners.append(listener)
        return lambda: self._notice_listeners.remove(listener)

    def _notify(self, notice: Notice | None) -> None:
        if notice is None:
            return
        for nl in list(self._notice_listeners):
            nl(notice)

    def _emit(self, evt: PipelineEvent) -> None:
        if isinstance(evt, MutationReverted):
            self._last_surfaced = evt.error
        for listener in list(self._listeners):
            listener(evt)
        self._notify(notice_for_event(evt))

    async def _surface(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        # Rolled-back mutations were already announced via MutationReverted;
        # everything else (local validation, failed loads) is announced here.
        try:
            return await call()
        except PipelineError as e:
            if e is not self._last_surfaced:
                log.info("operation_failed", operation=operation, error=str(e), error_type=type(e).__name__)
                self._notify(notice_for_error(e, operation=e.operation or operation))
            self._last_surfaced = None
            raise

    # ---- projections ----
    @property
    def stages(self) -> list[Stage]:
        return self._store.ordered_stages()

    def opportunities(self, stage_id: str | None = None) -> list[Opportunity]:
        if stage_id is None:
            return self._store.opportunities()
        return self._store.opportunities_in_stage(stage_id)

    def columns(self) -> list[Column]:
        return [
            Column(
                stage=s,
                opportunities=tuple(self._store.opportunities_in_stage(s.id)),
                highlighted=self._drag.is_highlighted(s.id),
            )
            for s in self._store.ordered_stages()
        ]

    @property
    def orphaned_opportunities(self) -> list[Opportunity]:
        return self._store.orphaned_opportunities()

    @property
    def drag_state(self) -> DragState:
        return self._drag.state

    @property
    def active_opportunity(self) -> Opportunity | None:
        oid = self._store.active_opportunity_id
        return self._store.get_opportunity(oid) if oid else None

    @property
    def note_thread(self) -> tuple[Note, ...]:
        return self._store.note_thread()

    @property
    def labels(self) -> list[Label]:
        return self._labels.labels

    def label_for(self, opportunity: Opportunity) -> Label | None:
        return self._labels.resolve(opportunity.label)

    def snapshot(self):
        return self._store.snapshot()

    # ---- loading ----
    async def refresh(self) -> None:
        """Full reload from the clinic API; nothing is replaced unless every read succeeds."""

        async def _load() -> None:
            stages = await self._gateway.fetch_stages()
            opportunities = await self._gateway.fetch_opportunities()
            await self._labels.refresh()
            self._store.load_stages(stages)
            self._store.load_opportunities(opportunities)
            log.info("board_loaded", stages=len(stages), opportunities=len(opportunities))

        await self._surface("refresh", _load)

    async def open_opportunity(self, opportunity_id: str) -> Opportunity:
        return await self._surface(
            "fetch_opportunity", lambda: self._opportunities.open_opportunity(opportunity_id)
        )

    def close_opportunity(self) -> None:
        self._opportunities.close_opportunity()

    # ---- stages ----
    async def create_stage(self, name: str, order_position: int | None = None) -> Stage:
        return await self._surface("create_stage", lambda: self._stages.create_stage(name, order_position))

    async def rename_stage(self, stage_id: str, name: str) -> Stage:
        return await self._surface("rename_stage", lambda: self._stages.rename_stage(stage_id, name))

    async def delete_stage(self, stage_id: str) -> StageDeleted:
        evt = await self._surface("delete_stage", lambda: self._stages.delete_stage(stage_id))
        # The column is gone; a card dragged out of it can still be dropped elsewhere.
        self._drag.leave(stage_id)
        return evt

    # ---- opportunities ----
    async def create_opportunity(
        self,
        title: str,
        description: str | None = None,
        label: str | None = None,
        patient_id: str | None = None,
    ) -> Opportunity:
        return await self._surface(
            "create_opportunity",
            lambda: self._opportunities.create_opportunity(title, description, label, patient_id),
        )

    async def move_to_stage(self, opportunity_id: str, stage_id: str) -> OpportunityMoved | None:
        """Explicit "move to stage" action; same path as a drop."""
        return await self._surface(
            "move_opportunity", lambda: self._opportunities.move_opportunity(opportunity_id, stage_id)
        )

    async def update_opportunity(
        self,
        opportunity_id: str,
        title: str,
        description: str | None,
        label: str | None,
    ) -> Opportunity:
        return await self._surface(
            "update_opportunity",
            lambda: self._opportunities.update_opportunity(opportunity_id, title, description, label),
        )

    async def delete_opportunity(self, opportunity_id: str) -> Opportunity:
        deleted = await self._surface(
            "delete_opportunity", lambda: self._opportunities.delete_opportunity(opportunity_id)
        )
        if self._drag.dragged_opportunity_id == opportunity_id:
            self._drag.cancel()
        return deleted

    async def add_note(self, opportunity_id: str, content: str) -> Note:
        return await self._surface("add_note", lambda: self._opportunities.add_note(opportunity_id, content))

    async def create_label(self, name: str, color: str) -> Label:
        return await self._surface("create_label", lambda: self._labels.create_label(name, color))

    # ---- drag and drop ----
    def begin_drag(self, opportunity_id: str) -> DragState:
        opp = self._store.get_opportunity(opportunity_id)
        if opp is None:
            raise NotFoundError(message="Opportunity not found", operation="begin_drag", entity_id=opportunity_id)
        return self._drag.begin(opp)

    def drag_over(self, stage_id: str) -> DragState:
        return self._drag.hover(stage_id)

    def drag_leave(self, stage_id: str) -> DragState:
        return self._drag.leave(stage_id)

    def cancel_drag(self) -> DropIgnored:
        return self._drag.cancel()

    async def drop(self, stage_id: str) -> OpportunityMoved | None:
        """
        Finish the gesture on `stage_id`.

        Returns the move on success, None when the drop was a no-op (origin
        stage or no active drag). A failed move is rolled back and re-raised.
        """
        outcome = self._drag.drop(stage_id)
        if isinstance(outcome, DropIgnored):
            return None
        return await self.move_to_stage(outcome.opportunity_id, outcome.to_stage_id)


def create_board(settings: Settings | None = None, **client_kwargs: Any) -> PipelineBoard:
    """Build a board wired to the clinic API with logging configured."""
    s = settings or get_settings()
    configure_logging(level=s.log_level)
    log.info("board_starting", settings=s.to_log_safe_dict())
    return PipelineBoard(SalesApiClient(settings=s, **client_kwargs), settings=s)
