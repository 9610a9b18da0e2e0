from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so `import salescrm.*` works in tests.
ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from salescrm.domain.pipeline.models import Label, Note, Opportunity, Stage  # noqa: E402
from salescrm.errors import NotFoundError, TransportError  # noqa: E402
from salescrm.repositories.pipeline_gateway import PipelineGateway  # noqa: E402
from salescrm.settings import Settings  # noqa: E402


class FakeGateway(PipelineGateway):
    """
    In-memory clinic API.

    Set `fail_on` to an operation name (or a set of them) to make that call
    raise `failure` instead of answering. Every call is recorded in `calls`.
    """

    def __init__(self) -> None:
        self.stages: dict[str, Stage] = {}
        self.opportunities: dict[str, Opportunity] = {}
        self.notes: dict[str, list[Note]] = {}
        self.labels: list[Label] = []
        self.calls: list[tuple[str, tuple]] = []
        self.fail_on: set[str] = set()
        self.failure: Exception | None = None
        self.echo = True
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    async def _call(self, op: str, *args) -> None:
        self.calls.append((op, args))
        if op in self.fail_on:
            raise self.failure or TransportError(message="boom", operation=op, status=500)

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def fetch_stages(self):
        await self._call("fetch_stages")
        return list(self.stages.values())

    async def fetch_opportunities(self):
        await self._call("fetch_opportunities")
        return list(self.opportunities.values())

    async def fetch_opportunity(self, opportunity_id):
        await self._call("fetch_opportunity", opportunity_id)
        opp = self.opportunities.get(opportunity_id)
        if opp is None:
            raise NotFoundError(message="Not found", operation="fetch_opportunity", entity_id=opportunity_id, status=404)
        return opp

    async def fetch_notes(self, opportunity_id):
        await self._call("fetch_notes", opportunity_id)
        return list(self.notes.get(opportunity_id, []))

    async def fetch_labels(self, context=None):
        await self._call("fetch_labels", context)
        return [lb for lb in self.labels if context is None or lb.context == context or not lb.context]

    async def create_stage(self, name, order_position):
        await self._call("create_stage", name, order_position)
        stage = Stage(id=self._next_id("st"), name=name, order_position=order_position)
        self.stages[stage.id] = stage
        return stage if self.echo else None

    async def rename_stage(self, stage_id, name):
        await self._call("rename_stage", stage_id, name)
        stage = self.stages[stage_id].model_copy(update={"name": name})
        self.stages[stage_id] = stage
        return stage if self.echo else None

    async def delete_stage(self, stage_id):
        await self._call("delete_stage", stage_id)
        self.stages.pop(stage_id, None)

    async def create_opportunity(self, fields):
        await self._call("create_opportunity", fields)
        opp = Opportunity(id=self._next_id("op"), **fields)
        self.opportunities[opp.id] = opp
        return opp if self.echo else None

    async def update_opportunity(self, opportunity_id, fields):
        await self._call("update_opportunity", opportunity_id, fields)
        opp = self.opportunities[opportunity_id].model_copy(update=fields)
        self.opportunities[opportunity_id] = opp
        return opp if self.echo else None

    async def delete_opportunity(self, opportunity_id):
        await self._call("delete_opportunity", opportunity_id)
        self.opportunities.pop(opportunity_id, None)
        self.notes.pop(opportunity_id, None)

    async def create_note(self, opportunity_id, content):
        await self._call("create_note", opportunity_id, content)
        note = Note(id=self._next_id("nt"), opportunity_id=opportunity_id, user_name="Dra. Ana", content=content)
        self.notes.setdefault(opportunity_id, []).append(note)
        return note if self.echo else None

    async def create_label(self, name, color, context):
        await self._call("create_label", name, color, context)
        label = Label(id=self._next_id("lb"), name=name, color=color, context=context)
        self.labels.append(label)
        return label if self.echo else None


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SALESCRM_ENV="test",
        SALESCRM_DESCRIPTION_MAX_LENGTH=300,
        SALESCRM_NOTE_AUTHOR="Recepção",
    )
