from __future__ import annotations

from datetime import datetime, timedelta, timezone

import anyio
import pytest

from salescrm.domain.pipeline.events import (
    MutationReverted,
    NoteAdded,
    OpportunityCreated,
    OpportunityDeleted,
    OpportunityMoved,
)
from salescrm.domain.pipeline.models import Note, Opportunity, Stage
from salescrm.domain.pipeline.store import PipelineStore
from salescrm.errors import NotFoundError, PreconditionError, TransportError, ValidationError
from salescrm.modules.pipeline.opportunity_service import OpportunityLifecycleManager
from salescrm.modules.pipeline.reconciliation import Reconciler


def _manager(gateway, settings, *, seeded: bool = True):
    store = PipelineStore()
    events: list = []
    reconciler = Reconciler(store, publish=events.append)
    mgr = OpportunityLifecycleManager(store, gateway, reconciler, events.append, settings=settings)
    if seeded:
        stages = [Stage(id="s1", name="Novo", order_position=1), Stage(id="s2", name="Fechado", order_position=2)]
        store.load_stages(stages)
        gateway.stages.update({s.id: s for s in stages})
    return store, events, mgr


def _seed_card(store, gateway, *, oid: str = "o1", stage_id: str = "s1") -> Opportunity:
    opp = Opportunity(id=oid, title="Implante", stage_id=stage_id)
    store.put_opportunity(opp)
    gateway.opportunities[oid] = opp
    return opp


def test_create_then_move_across_board(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)

    async def run():
        created = await mgr.create_opportunity("Implante", description="Paciente indicado")
        moved = await mgr.move_opportunity(created.id, "s2")
        return created, moved

    created, moved = anyio.run(run)

    assert created.stage_id == "s1"
    assert not created.id.startswith("tmp_")
    assert store.opportunities_in_stage("s1") == []
    assert [o.id for o in store.opportunities_in_stage("s2")] == [created.id]
    assert moved == OpportunityMoved(opportunity=store.get_opportunity(created.id), from_stage_id="s1", to_stage_id="s2")
    assert [type(e) for e in events] == [OpportunityCreated, OpportunityMoved]
    assert gateway.calls[-1] == ("update_opportunity", (created.id, {"stage_id": "s2"}))


def test_create_sends_entry_stage_and_fields(gateway, test_settings):
    _store, _events, mgr = _manager(gateway, test_settings)
    anyio.run(lambda: mgr.create_opportunity(" Implante ", "", "VIP", "p1"))
    op, (fields,) = gateway.calls[0]
    assert op == "create_opportunity"
    assert fields == {
        "title": "Implante",
        "description": None,
        "stage_id": "s1",
        "patient_id": "p1",
        "label": "VIP",
    }


def test_create_without_stages_is_a_precondition_error(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings, seeded=False)
    with pytest.raises(PreconditionError):
        anyio.run(mgr.create_opportunity, "Implante")
    assert gateway.calls == []
    assert store.opportunities() == []


def test_create_validates_title_and_description(gateway, test_settings):
    _store, _events, mgr = _manager(gateway, test_settings)
    with pytest.raises(ValidationError) as ei:
        anyio.run(mgr.create_opportunity, "  ")
    assert ei.value.field == "title"

    with pytest.raises(ValidationError) as ei:
        anyio.run(mgr.create_opportunity, "Implante", "x" * 301)
    assert ei.value.field == "description"
    assert gateway.calls == []

    # Exactly at the limit is accepted.
    anyio.run(mgr.create_opportunity, "Implante", "x" * 300)


def test_move_to_same_stage_is_a_noop(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    before = store.snapshot()
    assert anyio.run(mgr.move_opportunity, "o1", "s1") is None
    assert gateway.calls == []
    assert events == []
    assert store.snapshot() == before


def test_move_to_unknown_stage_is_not_found(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    with pytest.raises(NotFoundError):
        anyio.run(mgr.move_opportunity, "o1", "s9")
    with pytest.raises(NotFoundError):
        anyio.run(mgr.move_opportunity, "o9", "s2")
    assert gateway.calls == []


def test_failed_move_returns_card_to_origin(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    before = store.snapshot()
    gateway.fail_on = {"update_opportunity"}

    with pytest.raises(TransportError):
        anyio.run(mgr.move_opportunity, "o1", "s2")

    assert store.snapshot() == before
    assert [o.id for o in store.opportunities_in_stage("s1")] == ["o1"]
    reverted = events[-1]
    assert isinstance(reverted, MutationReverted)
    assert reverted.move.from_stage_id == "s1"
    assert reverted.move.to_stage_id == "s2"
    assert not any(isinstance(e, OpportunityMoved) for e in events)


def test_rollback_applies_to_every_mutation_kind(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    store.load_notes("o1", [Note(id="n1", opportunity_id="o1", content="primeira")])
    store.open_thread("o1")
    gateway.fail_on = {"create_opportunity", "update_opportunity", "delete_opportunity", "create_note"}

    calls = [
        lambda: mgr.create_opportunity("Outro"),
        lambda: mgr.update_opportunity("o1", "Novo título", "desc", None),
        lambda: mgr.delete_opportunity("o1"),
        lambda: mgr.add_note("o1", "segunda"),
    ]
    for call in calls:
        before = store.snapshot()
        with pytest.raises(TransportError):
            anyio.run(call)
        assert store.snapshot() == before


def test_unexpected_remote_exception_is_wrapped_and_rolled_back(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    before = store.snapshot()
    gateway.fail_on = {"delete_opportunity"}
    gateway.failure = RuntimeError("socket closed")

    with pytest.raises(TransportError) as ei:
        anyio.run(mgr.delete_opportunity, "o1")

    assert isinstance(ei.value.cause, RuntimeError)
    assert store.snapshot() == before
    assert isinstance(events[-1], MutationReverted)


def test_update_replaces_editable_fields(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    store.put_opportunity(store.get_opportunity("o1").model_copy(update={"label": "VIP"}))

    updated = anyio.run(lambda: mgr.update_opportunity("o1", "Implante duplo", "", None))

    assert updated.title == "Implante duplo"
    assert updated.label is None
    assert updated.stage_id == "s1"
    assert gateway.calls[-1][1][1] == {"title": "Implante duplo", "description": None, "label": None}


def test_delete_removes_card_and_thread(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    store.load_notes("o1", [Note(id="n1", opportunity_id="o1", content="x")])
    store.open_thread("o1")

    anyio.run(mgr.delete_opportunity, "o1")

    assert store.get_opportunity("o1") is None
    assert store.note_thread() == ()
    assert isinstance(events[-1], OpportunityDeleted)


def test_notes_thread_is_oldest_first(gateway, test_settings):
    store, events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    t0 = datetime.now(timezone.utc) - timedelta(days=1)
    gateway.notes["o1"] = [
        Note(id="n2", opportunity_id="o1", content="segunda", created_at=t0 + timedelta(hours=1)),
        Note(id="n1", opportunity_id="o1", content="primeira", created_at=t0),
    ]

    async def run():
        await mgr.open_opportunity("o1")
        await mgr.add_note("o1", "terceira")

    anyio.run(run)

    thread = store.note_thread()
    assert [n.content for n in thread] == ["primeira", "segunda", "terceira"]
    assert not thread[-1].id.startswith("tmp_")
    assert isinstance(events[-1], NoteAdded)


def test_provisional_note_uses_configured_author(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    gateway.echo = False
    gateway.fail_on = {"fetch_notes"}
    note = anyio.run(mgr.add_note, "o1", "retornar ligação")
    assert note.user_name == "Recepção"
    assert note.id.startswith("tmp_")
    assert store.notes_for("o1") == (note,)


def test_blank_note_is_rejected(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    with pytest.raises(ValidationError) as ei:
        anyio.run(mgr.add_note, "o1", " ")
    assert ei.value.field == "content"


def test_open_unknown_opportunity_leaves_thread_closed(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    with pytest.raises(NotFoundError):
        anyio.run(mgr.open_opportunity, "o404")
    assert store.active_opportunity_id is None
    mgr.close_opportunity()
    assert store.note_thread() == ()


def test_concurrent_mutations_roll_back_independently(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway, oid="o1")
    _seed_card(store, gateway, oid="o2")

    release: list[anyio.Event] = []
    original = gateway.update_opportunity

    async def slow_failing_update(opportunity_id, fields):
        if opportunity_id == "o1":
            await release[0].wait()
            raise TransportError(message="boom", operation="update_opportunity", status=503)
        return await original(opportunity_id, fields)

    gateway.update_opportunity = slow_failing_update
    errors: list[Exception] = []

    async def move_o1():
        try:
            await mgr.move_opportunity("o1", "s2")
        except TransportError as e:
            errors.append(e)

    async def run():
        release.append(anyio.Event())
        async with anyio.create_task_group() as tg:
            tg.start_soon(move_o1)
            await anyio.sleep(0)
            await mgr.move_opportunity("o2", "s2")
            release[0].set()

    anyio.run(run)

    assert len(errors) == 1
    assert store.get_opportunity("o1").stage_id == "s1"
    assert store.get_opportunity("o2").stage_id == "s2"


def test_unconfirmed_card_cannot_be_changed(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    gateway.echo = False
    gateway.fail_on = {"fetch_opportunities"}
    created = anyio.run(mgr.create_opportunity, "Implante")
    assert created.id.startswith("tmp_")
    gateway.calls.clear()

    with pytest.raises(PreconditionError):
        anyio.run(mgr.move_opportunity, created.id, "s2")
    with pytest.raises(PreconditionError):
        anyio.run(mgr.add_note, created.id, "oi")
    assert gateway.calls == []
    assert store.get_opportunity(created.id).stage_id == "s1"


def test_create_without_body_adopts_server_card(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    gateway.echo = False

    async def run():
        created = await mgr.create_opportunity("Implante")
        moved = await mgr.move_opportunity(created.id, "s2")
        return created, moved

    created, moved = anyio.run(run)

    assert created.id == "op1"
    assert [o.id for o in store.opportunities()] == ["op1"]
    assert moved.to_stage_id == "s2"
    assert gateway.opportunities["op1"].stage_id == "s2"
    assert gateway.ops() == ["create_opportunity", "fetch_opportunities", "update_opportunity"]


def test_note_without_body_adopts_server_note(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    gateway.echo = False

    note = anyio.run(mgr.add_note, "o1", "retornar ligação")

    assert note.id == "nt1"
    assert store.notes_for("o1") == (note,)
    assert gateway.ops() == ["create_note", "fetch_notes"]


def test_three_notes_in_sequence_keep_earlier_ones(gateway, test_settings):
    store, _events, mgr = _manager(gateway, test_settings)
    _seed_card(store, gateway)
    store.open_thread("o1")
    threads: list[tuple[Note, ...]] = []

    async def run():
        for body in ("primeira", "segunda", "terceira"):
            await mgr.add_note("o1", body)
            threads.append(store.note_thread())

    anyio.run(run)

    final = store.note_thread()
    assert [n.content for n in final] == ["primeira", "segunda", "terceira"]
    assert all(not n.id.startswith("tmp_") for n in final)
    # Earlier notes are untouched by later appends.
    assert final[:1] == threads[0]
    assert final[:2] == threads[1]
    assert [n.id for n in final[:2]] == [n.id for n in threads[1]]


def _chained_moves(gateway, settings, *, release_order, failing):
    """
    Issue o1 s1->s2 and, while it is in flight, o1 s2->s3. Gates release
    the two remote calls in `release_order`; targets in `failing` are
    rejected. Returns the client stage of o1 before and after each release.
    """
    store, _events, mgr = _manager(gateway, settings)
    s3 = Stage(id="s3", name="Perdido", order_position=3)
    store.put_stage(s3)
    gateway.stages["s3"] = s3
    _seed_card(store, gateway)

    gates: dict[str, anyio.Event] = {}
    original = gateway.update_opportunity

    async def gated_update(opportunity_id, fields):
        target = fields["stage_id"]
        await gates[target].wait()
        if target in failing:
            raise TransportError(message="recusado", operation="update_opportunity", status=409)
        return await original(opportunity_id, fields)

    gateway.update_opportunity = gated_update
    seen: list[str] = []
    failures: list[str] = []

    async def move(target):
        try:
            await mgr.move_opportunity("o1", target)
        except TransportError:
            failures.append(target)

    async def run():
        gates.update(s2=anyio.Event(), s3=anyio.Event())
        async with anyio.create_task_group() as tg:
            tg.start_soon(move, "s2")
            await anyio.wait_all_tasks_blocked()
            tg.start_soon(move, "s3")
            await anyio.wait_all_tasks_blocked()
            seen.append(store.get_opportunity("o1").stage_id)
            for target in release_order:
                gates[target].set()
                await anyio.wait_all_tasks_blocked()
                seen.append(store.get_opportunity("o1").stage_id)

    anyio.run(run)
    return store, seen, failures


def test_chained_moves_both_rejected_end_at_origin(gateway, test_settings):
    store, seen, failures = _chained_moves(
        gateway, test_settings, release_order=("s2", "s3"), failing={"s2", "s3"}
    )
    assert failures == ["s2", "s3"]
    # The newer optimistic move stays visible until it is rejected too.
    assert seen == ["s3", "s3", "s1"]
    assert store.get_opportunity("o1").stage_id == gateway.opportunities["o1"].stage_id == "s1"


def test_chained_moves_first_rejected_second_confirmed(gateway, test_settings):
    store, seen, failures = _chained_moves(gateway, test_settings, release_order=("s2", "s3"), failing={"s2"})
    assert failures == ["s2"]
    assert seen == ["s3", "s3", "s3"]
    assert store.get_opportunity("o1").stage_id == gateway.opportunities["o1"].stage_id == "s3"


def test_chained_moves_late_rejection_keeps_confirmed_move(gateway, test_settings):
    store, seen, failures = _chained_moves(gateway, test_settings, release_order=("s3", "s2"), failing={"s2"})
    assert failures == ["s2"]
    assert seen == ["s3", "s3", "s3"]
    assert store.get_opportunity("o1").stage_id == gateway.opportunities["o1"].stage_id == "s3"


def test_chained_moves_first_confirmed_second_rejected(gateway, test_settings):
    store, seen, failures = _chained_moves(gateway, test_settings, release_order=("s2", "s3"), failing={"s3"})
    assert failures == ["s3"]
    assert seen == ["s3", "s3", "s2"]
    assert store.get_opportunity("o1").stage_id == gateway.opportunities["o1"].stage_id == "s2"
