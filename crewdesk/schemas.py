import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


Role = Literal["user", "model"]
ContextType = Literal["general", "project"]
ActionStatus = Literal["Pending", "Committed", "Failed", "Dismissed"]
TaskStatus = Literal["To Do", "In Progress", "Done"]
TaskPriority = Literal["Low", "Medium", "High", "Urgent"]
PhaseStatus = Literal["Not Started", "In Progress", "Completed"]

GENERAL_CONTEXT = "general"
FACILITATOR_ID = "facilitator"
FACILITATOR_NAME = "System"
IMAGE_PENDING = "pending"


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO date or datetime string; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


class ActionKind(str, Enum):
    WHITEBOARD = "Whiteboard"
    KANBAN = "Kanban"
    CODE = "Code"
    CHART = "Chart"
    DOCUMENT = "Document"
    WORD_DOCUMENT = "Word Document"
    POWERPOINT = "PowerPoint Presentation"
    EXCEL_SHEET = "Excel Sheet"
    CALENDAR = "Calendar"
    CREATE_TASK = "Create Task"
    PROJECT_MANAGEMENT = "Project Management"
    COLLABORATION = "Collaboration"
    IMAGE = "Image"


class FileAttachment(BaseModel):
    name: str
    mime_type: str
    data: str


class TriggeredAction(BaseModel):
    kind: ActionKind
    payload: Any
    narration_text: str


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Role
    text: str = ""
    timestamp: str = Field(default_factory=utc_iso)
    file: Optional[FileAttachment] = None
    action: Optional[TriggeredAction] = None
    action_id: Optional[str] = None
    image: Optional[str] = None
    is_typing: bool = False
    employee_id: Optional[str] = None
    employee_name: Optional[str] = None
    employee_avatar_url: Optional[str] = None
    is_praised: bool = False

    @property
    def is_system(self) -> bool:
        return self.employee_id == FACILITATOR_ID


class OceanProfile(BaseModel):
    openness: int = 50
    conscientiousness: int = 50
    extraversion: int = 50
    agreeableness: int = 50
    neuroticism: int = 50


class Company(BaseModel):
    id: str = Field(default_factory=lambda: new_id("comp_"))
    name: str
    profile: str = ""
    objectives: Optional[str] = None
    policies: Optional[str] = None
    certifications: Optional[str] = None


class Employee(BaseModel):
    id: str = Field(default_factory=lambda: new_id("emp_"))
    company_id: str
    name: str
    job_profile: str
    system_instruction: str = ""
    gender: Literal["Male", "Female"] = "Female"
    avatar_url: str = ""
    ocean_profile: OceanProfile = Field(default_factory=OceanProfile)
    morale: int = 75

    @model_validator(mode="after")
    def clamp_morale(self) -> "Employee":
        self.morale = max(0, min(100, int(self.morale)))
        return self


class Client(BaseModel):
    id: str = Field(default_factory=lambda: new_id("client_"))
    company_id: str
    name: str
    contact_person: Optional[str] = None
    contact_email: Optional[str] = None
    status: Literal["Active", "Inactive", "Prospect"] = "Active"


class Project(BaseModel):
    id: str = Field(default_factory=lambda: new_id("proj_"))
    company_id: str
    name: str
    description: str = ""
    employee_ids: List[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    status: Literal["Active", "Completed"] = "Active"


class ProjectPhase(BaseModel):
    id: str = Field(default_factory=lambda: new_id("phase_"))
    project_id: str
    name: str
    description: str = ""
    start_date: str
    end_date: str
    status: PhaseStatus = "Not Started"


class ProjectBudget(BaseModel):
    project_id: str
    total_budget: float
    currency: str = "USD"


class ProjectExpense(BaseModel):
    id: str = Field(default_factory=lambda: new_id("exp_"))
    project_id: str
    description: str
    amount: float
    category: str = "Uncategorized"
    date: str = Field(default_factory=utc_iso)


class CalendarEvent(BaseModel):
    id: str = Field(default_factory=lambda: new_id("evt_"))
    company_id: str
    title: str
    description: str = ""
    start: str
    end: str
    participant_ids: List[str] = Field(default_factory=list)
    color: str = "bg-purple-500"
    type: str = "meeting"
    project_id: Optional[str] = None


class Task(BaseModel):
    id: str = Field(default_factory=lambda: new_id("task_"))
    company_id: str
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    title: str
    description: str = ""
    status: TaskStatus = "To Do"
    priority: TaskPriority = "Medium"
    due_date: Optional[str] = None


class MeetingMinute(BaseModel):
    id: str = Field(default_factory=lambda: new_id("min_"))
    company_id: str
    project_id: str
    title: str
    content: str
    timestamp: str = Field(default_factory=utc_iso)


class AppFile(BaseModel):
    id: str = Field(default_factory=lambda: new_id("file_"))
    company_id: str
    parent_id: str
    parent_type: Literal["project", "client"] = "project"
    type: Literal["file", "folder"] = "file"
    name: str
    content: Optional[str] = None
    mime_type: Optional[str] = None
    created_at: str = Field(default_factory=utc_iso)
    updated_at: str = Field(default_factory=utc_iso)
    is_archived: bool = False
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    status: Optional[Literal["Draft", "In Review", "Approved"]] = None


class GeneratedDocument(BaseModel):
    id: str = Field(default_factory=lambda: new_id("doc_"))
    company_id: str
    file_name: str
    base64_content: str
    mime_type: str
    created_at: str = Field(default_factory=utc_iso)
    generated_by_employee_id: str
    generated_by_employee_name: str
    generated_by_employee_avatar_url: str = ""
    context_type: Literal["direct", "brainstorm"] = "direct"
    context_description: str = ""
    source_data: Any = None


class BrainstormSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("bs_"))
    company_id: str
    topic: str
    description: str = ""
    context_type: ContextType = "general"
    context_id: str = GENERAL_CONTEXT
    participant_ids: List[str] = Field(default_factory=list)
    history: List[Message] = Field(default_factory=list)
    last_activity: str = Field(default_factory=utc_iso)


class PendingAction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("act_"))
    owner_type: Literal["chat", "brainstorm"]
    owner_id: str
    context_id: str
    message_id: str
    employee_id: str
    action: TriggeredAction
    status: ActionStatus = "Pending"
    outcome_text: Optional[str] = None
    created_at: str = Field(default_factory=utc_iso)
    updated_at: str = Field(default_factory=utc_iso)


class SendMessageRequest(BaseModel):
    text: str = ""
    file: Optional[FileAttachment] = None


class CreateSessionRequest(BaseModel):
    company_id: str
    topic: str
    description: str = ""
    context_type: ContextType = "general"
    context_id: Optional[str] = None
    participant_ids: List[str]

    @model_validator(mode="after")
    def default_context_id(self) -> "CreateSessionRequest":
        if self.context_type == "general":
            self.context_id = GENERAL_CONTEXT
        elif not self.context_id:
            raise ValueError("context_id is required for project sessions")
        return self
