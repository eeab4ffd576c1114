"""Typed payloads for every tool kind and the pure validation step.

``validate_action`` never raises: it returns either a ``ValidatedAction`` whose
payload is one of the models below or a ``Rejection`` carrying the
user-facing explanation.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt, ValidationError, field_validator

from .schemas import ActionKind, TriggeredAction, parse_timestamp, to_utc_iso


class _Payload(BaseModel):
    model_config = {"populate_by_name": True, "extra": "allow"}


def _iso_date(value: Any) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("expected an ISO date")
    return to_utc_iso(parsed)


# Document family


class WordDocumentPayload(_Payload):
    file_name: str = Field("document.docx", alias="fileName")
    content: List[Dict[str, Any]] = Field(min_length=1)


class PresentationPayload(_Payload):
    file_name: str = Field("presentation.pptx", alias="fileName")
    slides: List[Dict[str, Any]] = Field(min_length=1)


class SheetData(_Payload):
    name: str = "Sheet1"
    data: List[List[Any]] = Field(default_factory=list)


class SpreadsheetPayload(_Payload):
    file_name: str = Field("spreadsheet.xlsx", alias="fileName")
    sheets: List[SheetData] = Field(min_length=1)


# Canvas family


class RichDocumentPayload(_Payload):
    file_name: str = Field(min_length=1, alias="fileName")
    content: List[Any] = Field(min_length=1)


class DiagramPayload(_Payload):
    source: str = Field(min_length=1)


class KanbanColumn(_Payload):
    title: str
    tasks: List[Dict[str, Any]] = Field(default_factory=list)


class KanbanPayload(_Payload):
    columns: List[KanbanColumn] = Field(min_length=1)


class CodePayload(_Payload):
    language: str = "text"
    code: str = Field(min_length=1)


class ChartDataset(_Payload):
    label: str = ""
    data: List[float] = Field(default_factory=list)


class ChartPayload(_Payload):
    chart_type: Literal["pie", "bar", "line"] = Field(alias="chartType")
    title: str = ""
    labels: List[str] = Field(default_factory=list)
    datasets: List[ChartDataset] = Field(min_length=1)


# Data-mutation family


class CalendarPayload(_Payload):
    title: str = Field(min_length=1)
    description: str = ""
    type: str = "meeting"
    start: Optional[str] = None
    end: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list, alias="participantIds")

    @field_validator("start", "end", mode="before")
    @classmethod
    def normalize_time(cls, value: Any) -> Optional[str]:
        if value in (None, ""):
            return None
        return _iso_date(value)


class TaskPayload(_Payload):
    title: str = Field(min_length=1)
    description: str = ""
    project_id: Optional[str] = Field(None, alias="projectId")
    assignee_id: Optional[str] = Field(None, alias="assigneeId")
    priority: Literal["Low", "Medium", "High", "Urgent"] = "Medium"
    due_date: Optional[str] = Field(None, alias="dueDate")

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().capitalize() in ("Low", "Medium", "High", "Urgent"):
            return value.strip().capitalize()
        return "Medium"


class ProjectManagementPayload(_Payload):
    action: Optional[str] = None
    payload: Any = None


class PhaseDraft(_Payload):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    start_date: str = Field(alias="startDate")
    end_date: str = Field(alias="endDate")

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def normalize_dates(cls, value: Any) -> str:
        return _iso_date(value)


class AddPhase(BaseModel):
    op: Literal["add_phase"] = "add_phase"
    phase: PhaseDraft


class AddMultiplePhases(BaseModel):
    op: Literal["add_multiple_phases"] = "add_multiple_phases"
    phases: List[PhaseDraft]
    skipped: int = 0


class UpdatePhase(_Payload):
    op: Literal["update_phase"] = "update_phase"
    phase_id: str = Field(min_length=1, alias="phaseId")
    updates: Dict[str, Any] = Field(min_length=1)


class DeletePhase(_Payload):
    op: Literal["delete_phase"] = "delete_phase"
    phase_id: str = Field(min_length=1, alias="phaseId")


class SetBudget(_Payload):
    op: Literal["set_budget"] = "set_budget"
    total_budget: Union[StrictInt, StrictFloat] = Field(alias="totalBudget")


class AddExpense(_Payload):
    op: Literal["add_expense"] = "add_expense"
    description: str = Field(min_length=1)
    amount: Union[StrictInt, StrictFloat]
    category: str = "Uncategorized"
    date: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def positive_amount(cls, value: Union[int, float]) -> Union[int, float]:
        if value <= 0:
            raise ValueError("amount must be positive")
        return value

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, value: Any) -> str:
        return value if isinstance(value, str) and value.strip() else "Uncategorized"

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, value: Any) -> Optional[str]:
        if value in (None, ""):
            return None
        return _iso_date(value)


class QueryProject(BaseModel):
    op: Literal["query"] = "query"


ProjectOperation = Union[AddPhase, AddMultiplePhases, UpdatePhase, DeletePhase, SetBudget, AddExpense, QueryProject]


# Collaboration and image


class CollaborationPayload(_Payload):
    employee_id: str = Field(min_length=1, alias="employeeId")
    question: str = Field(min_length=1)


class ImagePayload(_Payload):
    prompt: str = Field(min_length=1)


PAYLOAD_SCHEMAS: Dict[ActionKind, Type[BaseModel]] = {
    ActionKind.WORD_DOCUMENT: WordDocumentPayload,
    ActionKind.POWERPOINT: PresentationPayload,
    ActionKind.EXCEL_SHEET: SpreadsheetPayload,
    ActionKind.DOCUMENT: RichDocumentPayload,
    ActionKind.WHITEBOARD: DiagramPayload,
    ActionKind.KANBAN: KanbanPayload,
    ActionKind.CODE: CodePayload,
    ActionKind.CHART: ChartPayload,
    ActionKind.CALENDAR: CalendarPayload,
    ActionKind.CREATE_TASK: TaskPayload,
    ActionKind.PROJECT_MANAGEMENT: ProjectManagementPayload,
    ActionKind.COLLABORATION: CollaborationPayload,
    ActionKind.IMAGE: ImagePayload,
}

REJECTION_TEXT: Dict[ActionKind, str] = {
    ActionKind.WORD_DOCUMENT: "I couldn't prepare that document. It needs at least one block of content.",
    ActionKind.POWERPOINT: "I couldn't prepare that presentation. It needs at least one slide.",
    ActionKind.EXCEL_SHEET: "I couldn't prepare that spreadsheet. It needs at least one sheet.",
    ActionKind.DOCUMENT: "I couldn't create that document. It needs a file name and some content.",
    ActionKind.WHITEBOARD: "The diagram I prepared was empty.",
    ActionKind.KANBAN: "The board I prepared has no columns.",
    ActionKind.CODE: "The code snippet I prepared was empty.",
    ActionKind.CHART: "The chart I prepared is missing its type or data.",
    ActionKind.CALENDAR: "I can't add an event to the calendar without a title.",
    ActionKind.CREATE_TASK: "I can't create a task without a title.",
    ActionKind.PROJECT_MANAGEMENT: "The project management request was not in a format I understand.",
    ActionKind.COLLABORATION: "I need a colleague and a question before I can ask for help.",
    ActionKind.IMAGE: "I need a description before I can generate an image.",
}

PHASE_FIELDS_MISSING = "I can't add a phase without a name, start date, and end date. Please provide more details."
PHASES_MALFORMED = "I couldn't add the new phases. The data seems to be missing or in the wrong format."
UPDATE_UNSPECIFIED = "I need to know which phase to update and what to change. Please be more specific."
DELETE_UNSPECIFIED = "I need to know which phase to delete. Please specify the ID."
BUDGET_NOT_NUMERIC = "To set the budget, please provide a valid number."
EXPENSE_INCOMPLETE = "To log an expense, please provide at least a description and a positive amount."


@dataclass
class Rejection:
    reason: str
    detail: Optional[str] = None


@dataclass
class ValidatedAction:
    kind: ActionKind
    payload: Any
    narration_text: str


def _unknown_project_action(action: Any) -> Rejection:
    return Rejection(f"I'm not sure how to handle that project management action: {action}.")


def validate_project_operation(request: ProjectManagementPayload) -> Union[ProjectOperation, Rejection]:
    action, payload = request.action, request.payload
    try:
        if action == "add_phase":
            if not isinstance(payload, dict):
                return Rejection(PHASE_FIELDS_MISSING)
            return AddPhase(phase=PhaseDraft.model_validate(payload))
        if action == "add_multiple_phases":
            if not isinstance(payload, list) or not payload:
                return Rejection(PHASES_MALFORMED)
            phases: List[PhaseDraft] = []
            for entry in payload:
                try:
                    phases.append(PhaseDraft.model_validate(entry))
                except ValidationError:
                    continue
            if not phases:
                return Rejection(PHASES_MALFORMED)
            return AddMultiplePhases(phases=phases, skipped=len(payload) - len(phases))
        if action == "update_phase":
            if not isinstance(payload, dict):
                return Rejection(UPDATE_UNSPECIFIED)
            return UpdatePhase.model_validate(payload)
        if action == "delete_phase":
            if not isinstance(payload, dict):
                return Rejection(DELETE_UNSPECIFIED)
            return DeletePhase.model_validate(payload)
        if action == "set_budget":
            if not isinstance(payload, dict):
                return Rejection(BUDGET_NOT_NUMERIC)
            return SetBudget.model_validate(payload)
        if action == "add_expense":
            if not isinstance(payload, dict):
                return Rejection(EXPENSE_INCOMPLETE)
            return AddExpense.model_validate(payload)
        if action == "query":
            return QueryProject()
    except ValidationError as exc:
        reason = {
            "add_phase": PHASE_FIELDS_MISSING,
            "update_phase": UPDATE_UNSPECIFIED,
            "delete_phase": DELETE_UNSPECIFIED,
            "set_budget": BUDGET_NOT_NUMERIC,
            "add_expense": EXPENSE_INCOMPLETE,
        }[action]
        return Rejection(reason, detail=str(exc))
    return _unknown_project_action(action)


def validate_action(action: TriggeredAction) -> Union[ValidatedAction, Rejection]:
    data = action.payload
    if action.kind == ActionKind.WHITEBOARD and isinstance(data, str):
        data = {"source": data}
    schema = PAYLOAD_SCHEMAS[action.kind]
    try:
        payload: Any = schema.model_validate(data)
    except ValidationError as exc:
        return Rejection(REJECTION_TEXT[action.kind], detail=str(exc))
    if isinstance(payload, ProjectManagementPayload):
        payload = validate_project_operation(payload)
        if isinstance(payload, Rejection):
            return payload
    return ValidatedAction(kind=action.kind, payload=payload, narration_text=action.narration_text)
