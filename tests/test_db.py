import asyncio
from pathlib import Path

import pytest

from crewdesk.db import Database
from crewdesk.schemas import Employee, Message, PendingAction, ProjectPhase, TriggeredAction


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    expected = {
        "companies",
        "employees",
        "phases",
        "budgets",
        "conversation_messages",
        "pending_actions",
        "brainstorm_sessions",
        "events",
    }
    assert expected.issubset(tables)
    # init is safe to run twice
    await db.init()


@pytest.mark.asyncio
async def test_conversation_log_is_append_only_per_pair(db: Database):
    first = Message(role="user", text="Hello.")
    second = Message(role="model", text="Hi!")
    await db.append_messages("emp_1", "general", [first, second])
    await db.append_message("emp_1", "proj_1", Message(role="user", text="Other thread"))

    log = await db.get_conversation("emp_1", "general")
    assert [m.id for m in log] == [first.id, second.id]
    assert [m.text for m in await db.get_conversation("emp_1", "proj_1")] == ["Other thread"]
    assert await db.get_conversation("emp_2", "general") == []


@pytest.mark.asyncio
async def test_replace_message_keeps_position(db: Database):
    messages = [Message(role="user", text="a"), Message(role="model", text="b"), Message(role="user", text="c")]
    await db.append_messages("emp_1", "general", messages)
    praised = messages[1].model_copy(update={"is_praised": True})
    assert await db.replace_message("emp_1", "general", praised)
    assert not await db.replace_message("emp_1", "general", Message(role="model", text="missing"))
    log = await db.get_conversation("emp_1", "general")
    assert [m.text for m in log] == ["a", "b", "c"]
    assert log[1].is_praised


@pytest.mark.asyncio
async def test_pending_action_transitions_are_conditional(db: Database):
    pending = PendingAction(
        owner_type="chat",
        owner_id="emp_1",
        context_id="proj_1",
        message_id="msg_1",
        employee_id="emp_1",
        action=TriggeredAction(kind="Calendar", payload={"title": "Sync"}, narration_text="Booking."),
    )
    await db.add_pending_action(pending)
    assert await db.transition_pending_action(pending.id, "Pending", "Committed")
    assert not await db.transition_pending_action(pending.id, "Pending", "Committed")
    assert await db.transition_pending_action(pending.id, "Committed", "Committed", "Done.")
    stored = await db.get_pending_action(pending.id)
    assert stored.status == "Committed"
    assert stored.outcome_text == "Done."
    assert await db.get_pending_action("act_missing") is None


@pytest.mark.asyncio
async def test_adjust_morale_clamps(db: Database):
    employee = await db.save_employee(Employee(company_id="comp_1", name="Sam", job_profile="Engineer", morale=98))
    raised = await db.adjust_morale(employee.id, 5)
    assert raised.morale == 100
    lowered = await db.adjust_morale(employee.id, -250)
    assert lowered.morale == 0
    assert (await db.get_employee(employee.id)).morale == 0
    assert await db.adjust_morale("emp_missing", 1) is None


@pytest.mark.asyncio
async def test_phase_updates_accept_both_key_styles(db: Database):
    phase = await db.add_phase(
        ProjectPhase(project_id="proj_1", name="Design", start_date="2025-01-01T00:00:00Z", end_date="2025-02-01T00:00:00Z")
    )
    updated = await db.update_phase(phase.id, {"endDate": "2025-03-01T00:00:00Z", "status": "In Progress", "bogus": 1})
    assert updated.end_date == "2025-03-01T00:00:00Z"
    assert updated.status == "In Progress"
    assert await db.update_phase("phase_missing", {"name": "x"}) is None
    assert await db.delete_phase(phase.id)
    assert await db.list_phases("proj_1") == []


@pytest.mark.asyncio
async def test_events_are_sequenced_per_stream(db: Database):
    await db.add_event("bs_1", "brainstorm_message", {"n": 1})
    await db.add_event("bs_1", "brainstorm_message", {"n": 2})
    other = await db.add_event("bs_2", "brainstorm_message", {"n": 3})
    assert other["seq"] == 1
    events = await db.list_events("bs_1")
    assert [ev["seq"] for ev in events] == [1, 2]
    assert [ev["payload"]["n"] for ev in await db.list_events("bs_1", after_seq=1)] == [2]


@pytest.mark.asyncio
async def test_concurrent_events_get_distinct_seqs(db: Database):
    stored = await asyncio.gather(*(db.add_event("bs_1", "brainstorm_message", {"n": n}) for n in range(5)))
    assert sorted(ev["seq"] for ev in stored) == [1, 2, 3, 4, 5]
    events = await db.list_events("bs_1")
    assert [ev["seq"] for ev in events] == [1, 2, 3, 4, 5]
    assert sorted(ev["payload"]["n"] for ev in events) == [0, 1, 2, 3, 4]
