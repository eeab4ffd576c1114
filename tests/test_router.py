import base64
from datetime import datetime, timezone

import pytest

from crewdesk import router
from crewdesk.actions import PHASE_FIELDS_MISSING
from crewdesk.encoder import TextDocumentEncoder
from crewdesk.router import ActionClass, RouteScope
from crewdesk.schemas import ActionKind, ProjectPhase, TriggeredAction

NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)


def _action(kind: ActionKind, payload) -> TriggeredAction:
    return TriggeredAction(kind=kind, payload=payload, narration_text="On it.")


def _project(action: str, payload=None) -> TriggeredAction:
    return _action(ActionKind.PROJECT_MANAGEMENT, {"action": action, "payload": payload})


async def _scope(db, org, in_project: bool = True) -> RouteScope:
    project_id = org.project.id if in_project else None
    return RouteScope(
        company_id=org.company.id,
        project_id=project_id,
        phases=await db.list_phases(org.project.id) if in_project else [],
        employees=await db.list_employees(org.company.id),
        now=NOW,
    )


def test_classification_families():
    assert router.classify(ActionKind.WORD_DOCUMENT) == ActionClass.DOCUMENT
    assert router.classify(ActionKind.POWERPOINT) == ActionClass.DOCUMENT
    assert router.classify(ActionKind.EXCEL_SHEET) == ActionClass.DOCUMENT
    for kind in (ActionKind.WHITEBOARD, ActionKind.KANBAN, ActionKind.CODE, ActionKind.CHART, ActionKind.DOCUMENT):
        assert router.classify(kind) == ActionClass.CANVAS
    for kind in (ActionKind.CALENDAR, ActionKind.CREATE_TASK, ActionKind.PROJECT_MANAGEMENT):
        assert router.classify(kind) == ActionClass.DATA_MUTATION
    assert router.classify(ActionKind.COLLABORATION) == ActionClass.COLLABORATION
    assert router.classify(ActionKind.IMAGE) == ActionClass.IMAGE


@pytest.mark.asyncio
async def test_add_phase_applies_exactly_one_phase(db, org):
    action = _project("add_phase", {"name": "Design", "startDate": "2025-01-01", "endDate": "2025-02-01"})
    outcome = await router.apply(action, db, await _scope(db, org))
    phases = await db.list_phases(org.project.id)
    assert outcome.applied
    assert outcome.text == 'New phase "Design" has been added to the project plan.'
    assert len(phases) == 1
    assert phases[0].name == "Design"
    assert phases[0].description == "Phase created on 2025-01-15"


@pytest.mark.asyncio
async def test_add_phase_without_end_date_changes_nothing(db, org):
    action = _project("add_phase", {"name": "Design", "startDate": "2025-01-01"})
    outcome = await router.apply(action, db, await _scope(db, org))
    assert not outcome.applied
    assert outcome.text == PHASE_FIELDS_MISSING
    assert await db.list_phases(org.project.id) == []


@pytest.mark.asyncio
async def test_update_unknown_phase_names_the_id(db, org):
    await db.add_phase(
        ProjectPhase(project_id=org.project.id, name="Design", start_date="2025-01-01T00:00:00Z", end_date="2025-02-01T00:00:00Z")
    )
    action = _project("update_phase", {"phaseId": "does-not-exist", "updates": {"name": "Renamed"}})
    outcome = await router.apply(action, db, await _scope(db, org))
    assert not outcome.applied
    assert "does-not-exist" in outcome.text
    assert [p.name for p in await db.list_phases(org.project.id)] == ["Design"]


@pytest.mark.asyncio
async def test_update_and_delete_existing_phase(db, org):
    phase = await db.add_phase(
        ProjectPhase(project_id=org.project.id, name="Design", start_date="2025-01-01T00:00:00Z", end_date="2025-02-01T00:00:00Z")
    )
    update = _project("update_phase", {"phaseId": phase.id, "updates": {"name": "UX", "endDate": "2025-03-01"}})
    outcome = await router.apply(update, db, await _scope(db, org))
    assert outcome.text == 'Phase "Design" has been successfully updated.'
    stored = await db.list_phases(org.project.id)
    assert stored[0].name == "UX"
    assert stored[0].end_date == "2025-03-01T00:00:00Z"

    delete = _project("delete_phase", {"phaseId": phase.id})
    outcome = await router.apply(delete, db, await _scope(db, org))
    assert outcome.text == 'Phase "UX" has been deleted from the project plan.'
    assert await db.list_phases(org.project.id) == []


@pytest.mark.asyncio
async def test_add_multiple_phases_reports_applied_count(db, org):
    action = _project(
        "add_multiple_phases",
        [
            {"name": "Design", "startDate": "2025-01-01", "endDate": "2025-02-01"},
            {"name": "Build", "endDate": "2025-04-01"},
            {"name": "Launch", "startDate": "2025-04-01", "endDate": "2025-04-15"},
        ],
    )
    outcome = await router.apply(action, db, await _scope(db, org))
    assert outcome.text == "Successfully added 2 new phase(s) to the project plan."
    assert [p.name for p in await db.list_phases(org.project.id)] == ["Design", "Launch"]


@pytest.mark.asyncio
async def test_project_management_outside_project_is_refused(db, org):
    action = _project("set_budget", {"totalBudget": 1000})
    outcome = await router.apply(action, db, await _scope(db, org, in_project=False))
    assert not outcome.applied
    assert outcome.text == router.OUTSIDE_PROJECT
    assert await db.get_budget(org.project.id) is None


@pytest.mark.asyncio
async def test_budget_expense_and_query(db, org):
    scope = await _scope(db, org)
    budget = await router.apply(_project("set_budget", {"totalBudget": 50000}), db, scope)
    assert budget.text == "Project budget has been set to 50,000.00 USD."
    assert (await db.get_budget(org.project.id)).total_budget == 50000

    expense = await router.apply(_project("add_expense", {"description": "Servers", "amount": 1200.5}), db, scope)
    assert expense.text == 'Expense of 1,200.50 USD for "Servers" has been logged.'
    [stored] = await db.list_expenses(org.project.id)
    assert stored.category == "Uncategorized"
    assert stored.date == "2025-01-15T09:30:00Z"

    query = await router.apply(_project("query"), db, scope)
    assert query.text == router.NO_CHANGES
    assert len(await db.list_expenses(org.project.id)) == 1


@pytest.mark.asyncio
async def test_calendar_defaults_to_now_and_colors_reminders(db, org):
    scope = await _scope(db, org, in_project=False)
    outcome = await router.apply(_action(ActionKind.CALENDAR, {"title": "Pay invoices", "type": "reminder"}), db, scope)
    assert outcome.text == 'OK. I\'ve added "Pay invoices" to the company calendar.'
    [event] = await db.list_calendar_events(org.company.id)
    assert event.start == event.end == "2025-01-15T09:30:00Z"
    assert event.color == router.REMINDER_COLOR


@pytest.mark.asyncio
async def test_task_confirmation_resolves_assignee(db, org):
    scope = await _scope(db, org, in_project=False)
    named = await router.apply(_action(ActionKind.CREATE_TASK, {"title": "Ship", "assigneeId": org.engineer.id}), db, scope)
    unnamed = await router.apply(_action(ActionKind.CREATE_TASK, {"title": "Review", "assigneeId": "emp_ghost"}), db, scope)
    assert named.text == 'Task "Ship" created and assigned to Sam.'
    assert unnamed.text == 'Task "Review" created and assigned to the designated employee.'
    assert len(await db.list_tasks(org.company.id)) == 2


@pytest.mark.asyncio
async def test_preview_flags_unresolvable_phase(db, org):
    scope = await _scope(db, org)
    preview = router.preview(_project("delete_phase", {"phaseId": "phase_missing"}), scope)
    assert not preview.valid
    assert "phase_missing" in preview.reason
    ok = router.preview(_project("set_budget", {"totalBudget": 10}), scope)
    assert ok.valid
    assert ok.action_class == ActionClass.DATA_MUTATION


@pytest.mark.asyncio
async def test_save_document_records_generated_document(db, org):
    action = _action(
        ActionKind.WORD_DOCUMENT,
        {"fileName": "brief.docx", "content": [{"type": "heading1", "text": "Brief"}, {"type": "paragraph", "text": "Hi"}]},
    )
    rendered = await router.render_document(action, TextDocumentEncoder())
    assert await db.list_generated_documents(org.company.id) == []
    assert rendered.file_name == "brief.md"

    outcome = await router.save_document(
        action, TextDocumentEncoder(), db, org.pm, org.company.id, "direct", "Generated in a chat with Dana"
    )
    assert outcome.text == 'I\'ve generated "brief.md". You can find it in the Generated Documents panel.'
    [document] = await db.list_generated_documents(org.company.id)
    assert document.generated_by_employee_id == org.pm.id
    assert base64.b64decode(document.base64_content).decode() == "# Brief\n\nHi\n"


@pytest.mark.asyncio
async def test_rich_document_persists_only_in_project_scope(db, org):
    action = _action(ActionKind.DOCUMENT, {"fileName": "notes", "content": [{"type": "paragraph", "content": "x"}]})
    assert await router.persist_rich_document(action, db, org.pm, org.company.id, None) is None
    item = await router.persist_rich_document(action, db, org.pm, org.company.id, org.project.id)
    assert item is not None
    assert item.status == "Draft"
    assert item.author_id == org.pm.id
    assert [f.name for f in await db.list_files(org.project.id)] == ["notes"]


@pytest.mark.asyncio
async def test_apply_rejects_non_mutations(db, org):
    outcome = await router.apply(_action(ActionKind.CODE, {"code": "x"}), db, await _scope(db, org))
    assert not outcome.applied
    with pytest.raises(ValueError):
        await router.render_document(_action(ActionKind.CODE, {"code": "x"}), TextDocumentEncoder())
