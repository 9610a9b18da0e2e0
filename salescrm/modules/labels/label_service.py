"""
Labels are a vocabulary shared with the appointment calendar. The board only
reads them (to colour cards) and creates new ones from its forms.
"""

from __future__ import annotations

from typing import Callable

from ...domain.pipeline.events import LabelCreated, PipelineEvent
from ...domain.pipeline.models import LABEL_COLORS, Label
from ...errors import NotFoundError, ValidationError
from ...observability.logging import get_logger
from ...repositories.pipeline_gateway import PipelineGateway

log = get_logger("label_service")


class LabelService:
    def __init__(
        self,
        gateway: PipelineGateway,
        *,
        context: str | None = "sales",
        publish: Callable[[PipelineEvent], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._context = context
        self._publish = publish or (lambda _evt: None)
        self._labels: list[Label] = []

    @property
    def labels(self) -> list[Label]:
        return list(self._labels)

    async def refresh(self) -> list[Label]:
        self._labels = await self._gateway.fetch_labels(self._context)
        return self.labels

    def resolve(self, name: str | None) -> Label | None:
        """First active label with this name; context-specific labels win over shared ones."""
        n = str(name or "").strip()
        if not n:
            return None
        matches = [lb for lb in self._labels if lb.name == n and lb.is_active]
        if not matches:
            return None
        for lb in matches:
            if lb.context == self._context:
                return lb
        return matches[0]

    async def create_label(self, name: str, color: str) -> Label:
        n = str(name or "").strip()
        if not n:
            raise ValidationError(message="Label name is required", operation="create_label", field="name")
        c = str(color or "").strip().lower()
        if c not in LABEL_COLORS:
            raise ValidationError(
                message="Label color must be one of the palette colors",
                operation="create_label",
                field="color",
            )
        if any(lb.name == n and lb.context == self._context for lb in self._labels):
            raise ValidationError(message="A label with this name already exists", operation="create_label", field="name")

        created = await self._gateway.create_label(n, c, self._context)
        if created is None:
            # Server answered without a body: re-read to pick up the new id.
            await self.refresh()
            created = self.resolve(n)
            if created is None:
                raise NotFoundError(message="Created label was not returned by the clinic API", operation="create_label")
        else:
            self._labels.append(created)
        log.info("label_created", label_id=created.id, context=self._context)
        self._publish(LabelCreated(label=created))
        return created
