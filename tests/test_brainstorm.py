import asyncio

import pytest

from crewdesk.brainstorm import (
    GENERAL_FAILURE,
    MINUTES_SAVED,
    SessionConflict,
    resolve_placeholder,
    typing_placeholders,
)
from crewdesk.llm import ServiceError
from crewdesk.schemas import CreateSessionRequest, Message, SendMessageRequest
from tests.conftest import ENG_PERSONA, PM_PERSONA
from tests.fakes import tool_reply

FACILITATOR_MARKER = "meeting facilitator"


async def _session(controllers, org, project: bool = False, participants=None):
    participant_ids = participants or [org.assistant.id, org.pm.id, org.engineer.id]
    request = CreateSessionRequest(
        company_id=org.company.id,
        topic="Launch",
        context_type="project" if project else "general",
        context_id=org.project.id if project else None,
        participant_ids=participant_ids,
    )
    return await controllers.brainstorm.create_session(request)


def test_placeholders_put_the_facilitator_last(org):
    placeholders = typing_placeholders([org.assistant, org.pm, org.engineer])
    assert [p.employee_id for p in placeholders] == [org.pm.id, org.engineer.id, org.assistant.id]
    assert all(p.is_typing for p in placeholders)


def test_resolution_keeps_earlier_messages_and_position():
    earlier = Message(role="model", text="Earlier idea", employee_id="emp_a")
    placeholder_a = Message(role="model", is_typing=True, employee_id="emp_a")
    placeholder_b = Message(role="model", is_typing=True, employee_id="emp_b")
    history = [earlier, Message(role="user", text="More?"), placeholder_a, placeholder_b]

    reply = Message(role="model", text="New idea", employee_id="emp_a")
    resolved = resolve_placeholder(history, reply)
    assert [m.text for m in resolved] == ["Earlier idea", "More?", "New idea", ""]
    assert resolved[3].is_typing


@pytest.mark.asyncio
async def test_submission_resolves_every_placeholder(controllers, org, fake_lm, db):
    session = await _session(controllers, org)
    queue = await controllers.bus.subscribe(session.id)
    fake_lm.replies = {PM_PERSONA: "Timeline first.", ENG_PERSONA: "API first.", FACILITATOR_MARKER: "Good points."}
    # Later participants answer first.
    fake_lm.delays = {PM_PERSONA: 0.05, ENG_PERSONA: 0.02}

    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="How do we launch?"))

    assert [m.text for m in updated.history] == ["How do we launch?", "Timeline first.", "API first.", "Good points."]
    assert not any(m.is_typing for m in updated.history)
    assert len(fake_lm.calls_of("chat")) == 3
    for call in fake_lm.calls_of("chat"):
        assert [m.text for m in call["history"]] == ["How do we launch?"]

    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    kinds = [ev["event_type"] for ev in events]
    assert kinds.count("brainstorm_placeholder") == 3
    assert kinds[-1] == "brainstorm_settled"
    stored = await db.get_session(session.id)
    assert len(stored.history) == 4


@pytest.mark.asyncio
async def test_placeholder_count_matches_participants(controllers, org, fake_lm):
    session = await _session(controllers, org)
    seen = []

    async def snoop(stream_id, event_type, payload):
        seen.append(event_type)
        return {}

    controllers.brainstorm.bus.emit = snoop
    await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Go"))
    assert seen.count("brainstorm_placeholder") == 3
    assert seen.count("brainstorm_message") == 1 + 3


@pytest.mark.asyncio
async def test_participant_failure_becomes_their_message(controllers, org, fake_lm):
    session = await _session(controllers, org)
    fake_lm.replies = {ENG_PERSONA: ServiceError("Rate limited."), PM_PERSONA: "Fine here."}
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Go"))
    by_employee = {m.employee_id: m.text for m in updated.history if m.role == "model"}
    assert by_employee[org.engineer.id] == "Rate limited."
    assert by_employee[org.pm.id] == "Fine here."


@pytest.mark.asyncio
async def test_images_are_fulfilled_after_everyone_answers(controllers, org, fake_lm):
    session = await _session(controllers, org, participants=[org.marketer.id, org.engineer.id])
    fake_lm.replies = {"[persona:mkt]": tool_reply("Image", {"prompt": "launch poster"}, "Sketching a poster.")}
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Visuals?"))
    poster = next(m for m in updated.history if m.employee_id == org.marketer.id)
    assert poster.text == 'Here\'s an image for: "launch poster"'
    assert poster.image == fake_lm.image_result
    kinds = [call["kind"] for call in fake_lm.calls]
    assert kinds.index("image") > max(i for i, kind in enumerate(kinds) if kind == "chat")


@pytest.mark.asyncio
async def test_failed_image_clears_the_pending_marker(controllers, org, fake_lm):
    session = await _session(controllers, org, participants=[org.marketer.id])
    fake_lm.replies = {"[persona:mkt]": tool_reply("Image", {"prompt": "logo"}, "Drawing.")}
    fake_lm.image_result = ServiceError("Image service unavailable.")
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Logo?"))
    poster = updated.history[-1]
    assert poster.image is None
    assert poster.text == "Image service unavailable."


@pytest.mark.asyncio
async def test_catastrophic_failure_appends_one_general_error(controllers, org, fake_lm, db):
    session = await _session(controllers, org)

    async def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    fake_lm.replies = {PM_PERSONA: tool_reply("Calendar", {"title": "Sync"}, "Booking a sync.")}
    controllers.desk.propose = explode
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Go"))
    texts = [m.text for m in updated.history]
    assert texts.count(GENERAL_FAILURE) == 1
    assert updated.history[-1].is_system
    assert not any(m.is_typing for m in updated.history)
    assert len((await db.get_session(session.id)).history) == len(updated.history)


@pytest.mark.asyncio
async def test_brainstorm_proposals_use_pending_actions(controllers, org, fake_lm, db):
    session = await _session(controllers, org, project=True)
    fake_lm.replies = {
        PM_PERSONA: tool_reply(
            "Project Management",
            {"action": "set_budget", "payload": {"totalBudget": 20000}},
            "Proposing a budget.",
        )
    }
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Budget?"))
    proposal = next(m for m in updated.history if m.employee_id == org.pm.id)
    result = await controllers.desk.approve(proposal.action_id)
    assert result.message.text == "Project budget has been set to 20,000.00 USD."
    assert (await db.get_budget(org.project.id)).total_budget == 20000
    stored = await db.get_session(session.id)
    assert stored.history[-1].text == result.message.text


@pytest.mark.asyncio
async def test_approval_during_a_round_survives_the_round(controllers, org, fake_lm, db):
    session = await _session(controllers, org, project=True, participants=[org.pm.id, org.engineer.id])
    fake_lm.replies = {
        PM_PERSONA: [
            tool_reply("Project Management", {"action": "set_budget", "payload": {"totalBudget": 500}}, "Proposing a budget."),
            "Agreed.",
        ]
    }
    updated = await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Budget?"))
    proposal = next(m for m in updated.history if m.employee_id == org.pm.id)

    fake_lm.delays = {ENG_PERSONA: 0.3}
    round_task = asyncio.ensure_future(controllers.brainstorm.submit(session.id, SendMessageRequest(text="Next steps?")))
    while len(fake_lm.calls_of("chat")) < 4:
        await asyncio.sleep(0.01)
    result = await controllers.desk.approve(proposal.action_id)
    final = await round_task

    stored = await db.get_session(session.id)
    texts = [m.text for m in stored.history]
    assert [m.text for m in final.history] == texts
    assert texts.count(result.message.text) == 1
    assert result.message.text == "Project budget has been set to 500.00 USD."
    assert texts.index(result.message.text) < texts.index("Next steps?")
    assert "Agreed." in texts
    assert not any(m.is_typing for m in stored.history)
    assert len(stored.history) == 3 + 1 + 3


@pytest.mark.asyncio
async def test_minutes_require_project_scope(controllers, org):
    session = await _session(controllers, org)
    with pytest.raises(SessionConflict):
        await controllers.brainstorm.generate_minutes(session.id)


@pytest.mark.asyncio
async def test_minutes_are_stored_and_confirmed(controllers, org, fake_lm, db):
    session = await _session(controllers, org, project=True)
    await controllers.brainstorm.submit(session.id, SendMessageRequest(text="Recap"))
    confirmation = await controllers.brainstorm.generate_minutes(session.id)
    assert confirmation.text == MINUTES_SAVED
    [minute] = await db.list_project_minutes(org.project.id)
    assert minute.title == "Meeting Minutes: Launch - 2025-01-01"
    stored = await db.get_session(session.id)
    assert stored.history[-1].text == MINUTES_SAVED
    assert fake_lm.calls_of("minutes")[0]["topic"] == "Launch"
