"""Action routing: classification, approval previews and application.

The router holds no conversation state. Callers pass the action, the scope it
was proposed in and the mutators to apply it with; every ``apply`` call yields
exactly one outcome text for the caller to append as a system message.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from .actions import (
    AddExpense,
    AddMultiplePhases,
    AddPhase,
    CalendarPayload,
    DeletePhase,
    PhaseDraft,
    QueryProject,
    Rejection,
    SetBudget,
    TaskPayload,
    UpdatePhase,
    ValidatedAction,
    validate_action,
)
from .context import format_currency
from .encoder import DocumentEncoder, EncodedFile
from .schemas import (
    FACILITATOR_ID,
    FACILITATOR_NAME,
    ActionKind,
    AppFile,
    CalendarEvent,
    Employee,
    GeneratedDocument,
    MeetingMinute,
    Message,
    ProjectBudget,
    ProjectExpense,
    ProjectPhase,
    Task,
    TriggeredAction,
    parse_timestamp,
    to_utc_iso,
)

logger = logging.getLogger("uvicorn.error")

OUTSIDE_PROJECT = (
    "I can only manage project plans from within a project's dedicated chat. "
    "Please navigate to the specific project to make these changes."
)
NO_CHANGES = "No changes were made to the project plan."
REMINDER_COLOR = "bg-yellow-500"
DEFAULT_EVENT_COLOR = "bg-purple-500"


class ActionClass(str, Enum):
    DOCUMENT = "document"
    DATA_MUTATION = "data_mutation"
    CANVAS = "canvas"
    COLLABORATION = "collaboration"
    IMAGE = "image"


ACTION_CLASSES: Dict[ActionKind, ActionClass] = {
    ActionKind.WORD_DOCUMENT: ActionClass.DOCUMENT,
    ActionKind.POWERPOINT: ActionClass.DOCUMENT,
    ActionKind.EXCEL_SHEET: ActionClass.DOCUMENT,
    ActionKind.DOCUMENT: ActionClass.CANVAS,
    ActionKind.WHITEBOARD: ActionClass.CANVAS,
    ActionKind.KANBAN: ActionClass.CANVAS,
    ActionKind.CODE: ActionClass.CANVAS,
    ActionKind.CHART: ActionClass.CANVAS,
    ActionKind.CALENDAR: ActionClass.DATA_MUTATION,
    ActionKind.CREATE_TASK: ActionClass.DATA_MUTATION,
    ActionKind.PROJECT_MANAGEMENT: ActionClass.DATA_MUTATION,
    ActionKind.COLLABORATION: ActionClass.COLLABORATION,
    ActionKind.IMAGE: ActionClass.IMAGE,
}


def classify(kind: ActionKind) -> ActionClass:
    return ACTION_CLASSES[kind]


class DomainMutators(Protocol):
    async def add_phase(self, phase: ProjectPhase) -> ProjectPhase: ...

    async def update_phase(self, phase_id: str, updates: Dict[str, Any]) -> Optional[ProjectPhase]: ...

    async def delete_phase(self, phase_id: str) -> bool: ...

    async def set_budget(self, budget: ProjectBudget) -> ProjectBudget: ...

    async def add_expense(self, expense: ProjectExpense) -> ProjectExpense: ...

    async def add_calendar_event(self, event: CalendarEvent) -> CalendarEvent: ...

    async def add_task(self, task: Task) -> Task: ...

    async def add_file(self, item: AppFile) -> AppFile: ...

    async def add_generated_document(self, document: GeneratedDocument) -> GeneratedDocument: ...

    async def add_meeting_minute(self, minute: MeetingMinute) -> MeetingMinute: ...


@dataclass
class RouteScope:
    company_id: str
    project_id: Optional[str] = None
    phases: List[ProjectPhase] = field(default_factory=list)
    employees: List[Employee] = field(default_factory=list)
    currency: str = "USD"
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ActionPreview:
    kind: ActionKind
    action_class: ActionClass
    valid: bool
    summary: str
    reason: Optional[str] = None


@dataclass
class RouterOutcome:
    applied: bool
    text: str
    record: Any = None


def system_message(text: str) -> Message:
    return Message(role="model", text=text, employee_id=FACILITATOR_ID, employee_name=FACILITATOR_NAME)


def _find_phase(phases: List[ProjectPhase], phase_id: str) -> Optional[ProjectPhase]:
    for phase in phases:
        if phase.id == phase_id:
            return phase
    return None


def _phase_from_draft(draft: PhaseDraft, project_id: str, now: datetime) -> ProjectPhase:
    return ProjectPhase(
        project_id=project_id,
        name=draft.name,
        description=draft.description or f"Phase created on {now:%Y-%m-%d}",
        start_date=draft.start_date,
        end_date=draft.end_date,
    )


def _phase_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in updates.items():
        if key in ("startDate", "endDate", "start_date", "end_date"):
            parsed = parse_timestamp(value)
            if parsed is None:
                continue
            value = to_utc_iso(parsed)
        cleaned[key] = value
    return cleaned


def _assignee_name(employees: List[Employee], assignee_id: Optional[str]) -> str:
    for employee in employees:
        if employee.id == assignee_id:
            return employee.name
    return "the designated employee"


def _summarize(validated: ValidatedAction, scope: RouteScope) -> ActionPreview:
    kind = validated.kind
    action_class = classify(kind)
    payload = validated.payload
    if isinstance(payload, CalendarPayload):
        when = payload.start or "now"
        return ActionPreview(kind, action_class, True, f'Add {payload.type} "{payload.title}" ({when}) to the calendar.')
    if isinstance(payload, TaskPayload):
        who = _assignee_name(scope.employees, payload.assignee_id)
        return ActionPreview(kind, action_class, True, f'Create {payload.priority} task "{payload.title}" for {who}.')
    if kind == ActionKind.PROJECT_MANAGEMENT:
        if not scope.project_id:
            return ActionPreview(kind, action_class, False, "Project plan change", OUTSIDE_PROJECT)
        if isinstance(payload, AddPhase):
            return ActionPreview(kind, action_class, True, f'Add phase "{payload.phase.name}".')
        if isinstance(payload, AddMultiplePhases):
            summary = f"Add {len(payload.phases)} phase(s)."
            if payload.skipped:
                summary += f" {payload.skipped} malformed entr{'y' if payload.skipped == 1 else 'ies'} will be skipped."
            return ActionPreview(kind, action_class, True, summary)
        if isinstance(payload, (UpdatePhase, DeletePhase)):
            verb = "update" if isinstance(payload, UpdatePhase) else "delete"
            phase = _find_phase(scope.phases, payload.phase_id)
            if phase is None:
                reason = f"I'm sorry, I couldn't find a phase with ID \"{payload.phase_id}\" to {verb}."
                return ActionPreview(kind, action_class, False, f"{verb.capitalize()} phase", reason)
            return ActionPreview(kind, action_class, True, f'{verb.capitalize()} phase "{phase.name}".')
        if isinstance(payload, SetBudget):
            amount = format_currency(payload.total_budget, scope.currency)
            return ActionPreview(kind, action_class, True, f"Set the project budget to {amount}.")
        if isinstance(payload, AddExpense):
            amount = format_currency(payload.amount, scope.currency)
            return ActionPreview(kind, action_class, True, f'Log an expense of {amount} for "{payload.description}".')
        if isinstance(payload, QueryProject):
            return ActionPreview(kind, action_class, True, "Answer a question about the plan. Nothing will change.")
    return ActionPreview(kind, action_class, True, validated.narration_text)


def preview(action: TriggeredAction, scope: RouteScope) -> ActionPreview:
    """Check an action before it is offered for approval."""
    validated = validate_action(action)
    if isinstance(validated, Rejection):
        return ActionPreview(action.kind, classify(action.kind), False, action.narration_text, validated.reason)
    return _summarize(validated, scope)


async def _apply_project_operation(operation: Any, mutators: DomainMutators, scope: RouteScope) -> RouterOutcome:
    project_id = scope.project_id
    if not project_id:
        return RouterOutcome(False, OUTSIDE_PROJECT)
    if isinstance(operation, AddPhase):
        phase = await mutators.add_phase(_phase_from_draft(operation.phase, project_id, scope.now))
        return RouterOutcome(True, f'New phase "{phase.name}" has been added to the project plan.', phase)
    if isinstance(operation, AddMultiplePhases):
        added = []
        for draft in operation.phases:
            added.append(await mutators.add_phase(_phase_from_draft(draft, project_id, scope.now)))
        return RouterOutcome(True, f"Successfully added {len(added)} new phase(s) to the project plan.", added)
    if isinstance(operation, UpdatePhase):
        phase = _find_phase(scope.phases, operation.phase_id)
        if phase is None:
            return RouterOutcome(False, f'I\'m sorry, I couldn\'t find a phase with ID "{operation.phase_id}" to update.')
        updated = await mutators.update_phase(phase.id, _phase_updates(operation.updates))
        return RouterOutcome(True, f'Phase "{phase.name}" has been successfully updated.', updated)
    if isinstance(operation, DeletePhase):
        phase = _find_phase(scope.phases, operation.phase_id)
        if phase is None:
            return RouterOutcome(False, f'I\'m sorry, I couldn\'t find a phase with ID "{operation.phase_id}" to delete.')
        await mutators.delete_phase(phase.id)
        return RouterOutcome(True, f'Phase "{phase.name}" has been deleted from the project plan.')
    if isinstance(operation, SetBudget):
        budget = await mutators.set_budget(
            ProjectBudget(project_id=project_id, total_budget=operation.total_budget, currency=scope.currency)
        )
        amount = format_currency(operation.total_budget, scope.currency)
        return RouterOutcome(True, f"Project budget has been set to {amount}.", budget)
    if isinstance(operation, AddExpense):
        expense = await mutators.add_expense(
            ProjectExpense(
                project_id=project_id,
                description=operation.description,
                amount=operation.amount,
                category=operation.category,
                date=operation.date or to_utc_iso(scope.now),
            )
        )
        amount = format_currency(operation.amount, scope.currency)
        return RouterOutcome(True, f'Expense of {amount} for "{operation.description}" has been logged.', expense)
    return RouterOutcome(True, NO_CHANGES)


async def apply(action: TriggeredAction, mutators: DomainMutators, scope: RouteScope) -> RouterOutcome:
    """Apply an approved data-mutating action and describe the result."""
    if classify(action.kind) != ActionClass.DATA_MUTATION:
        return RouterOutcome(False, f"There is nothing to approve for a {action.kind.value} action.")
    validated = validate_action(action)
    if isinstance(validated, Rejection):
        return RouterOutcome(False, validated.reason)
    payload = validated.payload
    if isinstance(payload, CalendarPayload):
        start, end = payload.start, payload.end
        if not start or not end:
            start = end = to_utc_iso(scope.now)
        event = await mutators.add_calendar_event(
            CalendarEvent(
                company_id=scope.company_id,
                title=payload.title,
                description=payload.description,
                start=start,
                end=end,
                participant_ids=payload.participant_ids,
                color=REMINDER_COLOR if payload.type == "reminder" else DEFAULT_EVENT_COLOR,
                type=payload.type,
                project_id=scope.project_id,
            )
        )
        logger.info("Calendar event %s added for company %s", event.id, scope.company_id)
        return RouterOutcome(True, f'OK. I\'ve added "{payload.title}" to the company calendar.', event)
    if isinstance(payload, TaskPayload):
        task = await mutators.add_task(
            Task(
                company_id=scope.company_id,
                project_id=payload.project_id,
                assignee_id=payload.assignee_id,
                title=payload.title,
                description=payload.description,
                priority=payload.priority,
                due_date=payload.due_date,
            )
        )
        logger.info("Task %s created for company %s", task.id, scope.company_id)
        who = _assignee_name(scope.employees, payload.assignee_id)
        return RouterOutcome(True, f'Task "{payload.title}" created and assigned to {who}.', task)
    outcome = await _apply_project_operation(payload, mutators, scope)
    if outcome.applied:
        logger.info("Project %s plan change applied: %s", scope.project_id, outcome.text)
    return outcome


async def render_document(action: TriggeredAction, encoder: DocumentEncoder) -> EncodedFile:
    """Encode a document action without recording anything."""
    if classify(action.kind) != ActionClass.DOCUMENT:
        raise ValueError(f"{action.kind.value} does not produce a document")
    validated = validate_action(action)
    if isinstance(validated, Rejection):
        raise ValueError(validated.reason)
    return await encoder.encode(validated)


async def save_document(
    action: TriggeredAction,
    encoder: DocumentEncoder,
    mutators: DomainMutators,
    employee: Employee,
    company_id: str,
    context_type: str,
    context_description: str,
) -> RouterOutcome:
    try:
        encoded = await render_document(action, encoder)
    except ValueError as exc:
        return RouterOutcome(False, str(exc))
    document = await mutators.add_generated_document(
        GeneratedDocument(
            company_id=company_id,
            file_name=encoded.file_name,
            base64_content=encoded.data,
            mime_type=encoded.mime_type,
            generated_by_employee_id=employee.id,
            generated_by_employee_name=employee.name,
            generated_by_employee_avatar_url=employee.avatar_url,
            context_type=context_type,
            context_description=context_description,
            source_data=action.payload,
        )
    )
    logger.info("Generated document %s saved for company %s", document.file_name, company_id)
    return RouterOutcome(
        True,
        f'I\'ve generated "{encoded.file_name}". You can find it in the Generated Documents panel.',
        document,
    )


async def persist_rich_document(
    action: TriggeredAction,
    mutators: DomainMutators,
    employee: Employee,
    company_id: str,
    project_id: Optional[str],
) -> Optional[AppFile]:
    """Store a generic Document action in the project's file tree; no-op outside a project."""
    if action.kind != ActionKind.DOCUMENT or not project_id:
        return None
    validated = validate_action(action)
    if isinstance(validated, Rejection):
        return None
    payload = validated.payload
    item = await mutators.add_file(
        AppFile(
            company_id=company_id,
            parent_id=project_id,
            parent_type="project",
            type="file",
            name=payload.file_name,
            content=json.dumps(payload.content),
            mime_type="application/json",
            author_id=employee.id,
            author_name=employee.name,
            status="Draft",
        )
    )
    logger.info("Document %s filed under project %s", item.name, project_id)
    return item
