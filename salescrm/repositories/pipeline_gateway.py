"""
Pipeline gateway interface.

The clinic API is the owner of record for every board entity. Gateways are
plain request/response wrappers: no caching, no retries on writes, no state.
Any failure must surface as a `salescrm.errors.PipelineError` subclass.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..domain.pipeline.models import Label, Note, Opportunity, Stage


class PipelineGateway(ABC):
    """Remote collaborator used by the board services."""

    # ---- reads (full replace) ----
    @abstractmethod
    async def fetch_stages(self) -> list[Stage]:
        pass

    @abstractmethod
    async def fetch_opportunities(self) -> list[Opportunity]:
        pass

    @abstractmethod
    async def fetch_opportunity(self, opportunity_id: str) -> Opportunity:
        pass

    @abstractmethod
    async def fetch_notes(self, opportunity_id: str) -> list[Note]:
        pass

    @abstractmethod
    async def fetch_labels(self, context: str | None = None) -> list[Label]:
        """Active labels for `context`, shared (context-less) labels included."""
        pass

    # ---- stages ----
    @abstractmethod
    async def create_stage(self, name: str, order_position: int) -> Stage | None:
        pass

    @abstractmethod
    async def rename_stage(self, stage_id: str, name: str) -> Stage | None:
        pass

    @abstractmethod
    async def delete_stage(self, stage_id: str) -> None:
        pass

    # ---- opportunities ----
    @abstractmethod
    async def create_opportunity(self, fields: dict[str, Any]) -> Opportunity | None:
        pass

    @abstractmethod
    async def update_opportunity(self, opportunity_id: str, fields: dict[str, Any]) -> Opportunity | None:
        """Partial update; `fields` carries `stage_id` for moves."""
        pass

    @abstractmethod
    async def delete_opportunity(self, opportunity_id: str) -> None:
        """Deletes the opportunity; the server cascades its notes."""
        pass

    # ---- notes / labels ----
    @abstractmethod
    async def create_note(self, opportunity_id: str, content: str) -> Note | None:
        pass

    @abstractmethod
    async def create_label(self, name: str, color: str, context: str | None) -> Label | None:
        pass
