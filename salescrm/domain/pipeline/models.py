from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Fixed palette offered when creating a label (value -> display name).
LABEL_COLORS: dict[str, str] = {
    "#1890ff": "Azul",
    "#ff4d4f": "Vermelho",
    "#52c41a": "Verde",
    "#faad14": "Amarelo",
    "#722ed1": "Roxo",
    "#eb2f96": "Rosa",
    "#13c2c2": "Ciano",
    "#fa8c16": "Laranja",
}

# Ids minted locally for optimistic inserts carry this prefix until the
# server answers with the real entity.
PROVISIONAL_PREFIX = "tmp_"


class _Entity(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)


class Stage(_Entity):
    id: str
    name: str
    order_position: int = 0

    @field_validator("order_position", mode="before")
    @classmethod
    def _null_position(cls, v):
        return 0 if v is None else v

    @property
    def sort_key(self) -> tuple[int, str]:
        # id tie-break is render-only
        return (self.order_position, self.id)


class Opportunity(_Entity):
    id: str
    title: str
    description: str | None = None
    label: str | None = None
    stage_id: str
    patient_id: str | None = None

    @field_validator("description", "label", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class Note(_Entity):
    id: str
    opportunity_id: str
    user_name: str | None = None
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        # Servers that drop the offset are assumed to speak UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class Label(_Entity):
    id: str
    name: str
    color: str = "#1890ff"
    context: str | None = None
    is_active: bool = True


def is_provisional(entity_id: str | None) -> bool:
    return str(entity_id or "").startswith(PROVISIONAL_PREFIX)


def sort_notes(notes) -> tuple[Note, ...]:
    """Oldest first; notes sharing a timestamp keep their arrival order."""
    return tuple(sorted(notes, key=lambda n: n.created_at))
