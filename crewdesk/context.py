"""System-instruction assembly for employees, brainstorm participants and colleagues.

Every builder here is a pure function of its arguments. Fragments whose source
is empty are left out of the final instruction instead of being emitted blank.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .agents import (
    COLLABORATOR_SYSTEM,
    CURRENT_FOCUS,
    DOCUMENT_ANALYSIS_NOTE,
    FACILITATOR_SYSTEM,
    MORALE_STYLE,
    OPERATIONAL_MANDATE,
    PERSONAL_ASSISTANT,
    TOOL_DESCRIPTIONS,
    TOOLS_DIRECTIVE,
    tools_for_job_profile,
)
from .schemas import (
    ActionKind,
    AppFile,
    CalendarEvent,
    Client,
    Company,
    Employee,
    MeetingMinute,
    Project,
    ProjectBudget,
    ProjectExpense,
    ProjectPhase,
    Task,
    parse_timestamp,
)

MAX_PROJECT_MINUTES = 5
MAX_UPCOMING_EVENTS = 20


@dataclass
class ConversationScope:
    employees: List[Employee] = field(default_factory=list)
    project: Optional[Project] = None
    client: Optional[Client] = None
    project_minutes: List[MeetingMinute] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    clients: List[Client] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    all_minutes: List[MeetingMinute] = field(default_factory=list)
    events: List[CalendarEvent] = field(default_factory=list)
    # None outside a project scope; a list (possibly empty) inside one
    phases: Optional[List[ProjectPhase]] = None
    budget: Optional[ProjectBudget] = None
    expenses: List[ProjectExpense] = field(default_factory=list)
    files: List[AppFile] = field(default_factory=list)
    currency: str = "USD"
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _join(parts: Iterable[str]) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())


def _day(value: Any) -> str:
    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%d") if parsed else "Invalid Date"


def format_amount(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def format_currency(value: float, currency: str = "USD") -> str:
    return f"{value:,.2f} {currency}"


def calculate_task_priority(task: Task, now: datetime) -> str:
    due = parse_timestamp(task.due_date)
    if due is None:
        return "Low"
    remaining = due - now
    if remaining <= timedelta(0):
        return "Urgent"
    if remaining <= timedelta(hours=48):
        return "High"
    if remaining <= timedelta(days=14):
        return "Medium"
    return "Low"


def build_morale_context(employee: Employee) -> str:
    return MORALE_STYLE.format(morale=employee.morale)


def build_company_context(company: Company) -> str:
    if not (company.objectives or company.policies or company.certifications):
        return f'**Company Context:**\nCompany Profile: "{company.profile}"'
    parts = [f"- **Company Profile:** {company.profile}"]
    if company.objectives:
        parts.append(f"- **Objectives:**\n{company.objectives}")
    if company.policies:
        parts.append(f"- **Policies:**\n{company.policies}")
    if company.certifications:
        parts.append(f"- **Certifications:**\n{company.certifications}")
    return (
        "**Company-Wide Directives:**\n"
        "You must operate within the following company framework.\n"
        + "\n\n".join(parts)
        + "\n\n"
        + OPERATIONAL_MANDATE.strip()
    )


def build_project_context(project: Project, client: Optional[Client] = None) -> str:
    client_line = f'\n**Client:** This project is for "{client.name}".' if client else ""
    return (
        "---\n"
        "**CURRENT PROJECT CONTEXT:**\n"
        f'You are currently working on the "{project.name}" project.{client_line}\n'
        f'**Project Description:** "{project.description}"\n'
        "All your responses should be within the context of this project.\n"
        "---"
    )


def build_phases_context(phases: Sequence[ProjectPhase]) -> str:
    if not phases:
        return "---\n**PROJECT TIMELINE:**\nThis project currently has no planned phases.\n---"
    lines = [
        f"- **{p.name}** (ID: `{p.id}`) ({p.status}): From {p.start_date.split('T')[0]} to {p.end_date.split('T')[0]}"
        for p in phases
    ]
    return (
        "---\n"
        "**PROJECT TIMELINE & PHASE IDs:**\n"
        "This is the current timeline for the project. **You MUST use the provided ID when targeting a "
        "specific phase for an update or deletion.**\n" + "\n".join(lines) + "\n---"
    )


def build_budget_context(
    budget: Optional[ProjectBudget], expenses: Sequence[ProjectExpense], currency: str
) -> str:
    spent = sum(exp.amount for exp in expenses)
    lines = []
    if budget:
        lines.append(f"- Total Budget: {format_amount(budget.total_budget)} {currency}")
    else:
        lines.append("- No budget has been set for this project yet.")
    lines.append(f"- Total Spent So Far: {format_amount(spent)} {currency}")
    if budget:
        lines.append(f"- Remaining Budget: {format_amount(budget.total_budget - spent)} {currency}")
    return f"---\n**PROJECT BUDGET (in {currency}):**\n" + "\n".join(lines) + "\n---"


def _recent(minutes: Iterable[MeetingMinute], limit: int) -> List[MeetingMinute]:
    def sort_key(minute: MeetingMinute) -> float:
        parsed = parse_timestamp(minute.timestamp)
        return parsed.timestamp() if parsed else 0.0

    return sorted(minutes, key=sort_key, reverse=True)[:limit]


def build_minutes_context(minutes: Sequence[MeetingMinute]) -> str:
    if not minutes:
        return ""
    blocks = [
        f"### Meeting on {_day(m.timestamp)}: {m.title}\n{m.content}"
        for m in _recent(minutes, MAX_PROJECT_MINUTES)
    ]
    return (
        "---\n"
        "**RECENT MEETING MINUTES SUMMARY:**\n"
        "You have access to the minutes from recent meetings for this project. Use this information to "
        "inform your responses, maintain continuity, and understand past decisions.\n"
        + "\n\n---\n\n".join(blocks)
        + "\n---"
    )


def build_roster_context(employees: Sequence[Employee]) -> str:
    others = [e for e in employees if e.job_profile != PERSONAL_ASSISTANT]
    if not others:
        return "**Company Employee Roster:**\nThere are currently no other employees in the company."
    lines = [f"- **{e.name}** ({e.job_profile}) | ID: `{e.id}`" for e in others]
    return (
        "**Company Employee Roster:**\n"
        "This is the current list of employees in the company, along with their unique IDs. You can "
        "collaborate with them on tasks outside your expertise using the Collaboration tool.\n" + "\n".join(lines)
    )


def build_brainstorm_roster(participants: Sequence[Employee], employee: Employee) -> str:
    others = [p for p in participants if p.id != employee.id]
    if others:
        listing = "\n".join(f"- {p.name} ({p.job_profile})" for p in others)
    else:
        listing = "You are in this brainstorming session alone."
    return (
        "---\n"
        "**GROUP BRAINSTORMING SESSION**\n"
        "You are part of a group chat with your colleagues. The user can see messages from everyone.\n"
        f"You are **{employee.name}**.\n"
        "Your colleagues in this chat are:\n"
        f"{listing}\n"
        "---"
    )


def build_all_clients_context(clients: Sequence[Client]) -> str:
    if not clients:
        return "---\n**ALL COMPANY CLIENTS:**\nThere are currently no clients registered with the company.\n---"
    lines = [f"- **{c.name}**: Status: {c.status} (ID: `{c.id}`)" for c in clients]
    return "---\n**ALL COMPANY CLIENTS:**\nThis is a list of all company clients.\n" + "\n".join(lines) + "\n---"


def build_all_projects_context(projects: Sequence[Project], clients: Sequence[Client]) -> str:
    if not projects:
        return "---\n**ALL COMPANY PROJECTS:**\nThere are currently no active projects in the company.\n---"
    client_names = {c.id: c.name for c in clients}
    lines = []
    for p in projects:
        client_name = client_names.get(p.client_id) if p.client_id else None
        owner = f"for {client_name}" if client_name else "Internal Project"
        lines.append(f"- **{p.name} ({owner}) (ID: `{p.id}`)**: {p.description}")
    return (
        "---\n**ALL COMPANY PROJECTS:**\n"
        "This is a list of all projects within the company. You have full awareness of them.\n"
        + "\n".join(lines)
        + "\n---"
    )


def build_all_tasks_context(
    tasks: Sequence[Task], employees: Sequence[Employee], projects: Sequence[Project], now: datetime
) -> str:
    if not tasks:
        return "---\n**ALL COMPANY TASKS:**\nThere are currently no tasks on the company task board.\n---"
    names = {e.id: e.name for e in employees}
    project_names = {p.id: p.name for p in projects}
    lines = [
        f"- **{t.title}** (ID: `{t.id}`): Status: '{t.status}', "
        f"Priority: '{calculate_task_priority(t, now)}', "
        f"Project: '{project_names.get(t.project_id or '', 'N/A')}', "
        f"Assignee: '{names.get(t.assignee_id or '', 'Unassigned')}'"
        for t in tasks
    ]
    return (
        "---\n**ALL COMPANY TASKS:**\n"
        "This is a list of all tasks on the company task board. You have full awareness of them.\n"
        + "\n".join(lines)
        + "\n---"
    )


def build_all_minutes_context(minutes: Sequence[MeetingMinute], projects: Sequence[Project]) -> str:
    if not minutes:
        return "---\n**ALL MEETING MINUTES:**\nThere are no meeting minutes recorded for any project yet.\n---"
    by_project: Dict[str, List[MeetingMinute]] = {}
    for minute in minutes:
        by_project.setdefault(minute.project_id, []).append(minute)
    project_names = {p.id: p.name for p in projects}
    blocks = []
    for project_id, items in by_project.items():
        name = project_names.get(project_id, f"Unknown Project (ID: {project_id})")
        titles = "\n".join(f'  - "{m.title}" on {_day(m.timestamp)}' for m in _recent(items, MAX_PROJECT_MINUTES))
        blocks.append(f"- **Project: {name}**\n{titles}")
    return (
        "---\n**ALL MEETING MINUTES:**\n"
        "This is a summary of the most recent meeting minutes across all projects. You have full awareness "
        "of all of them, including their full content.\n" + "\n\n".join(blocks) + "\n---"
    )


def build_all_events_context(events: Sequence[CalendarEvent], now: datetime) -> str:
    upcoming = []
    for event in events:
        end = parse_timestamp(event.end)
        if end is not None and end >= now:
            upcoming.append(event)
    upcoming.sort(key=lambda e: parse_timestamp(e.start) or now)
    upcoming = upcoming[:MAX_UPCOMING_EVENTS]
    if not upcoming:
        return (
            "---\n**COMPANY CALENDAR:**\n"
            "The company calendar has no upcoming events. You are still aware of all past events.\n---"
        )
    lines = []
    for event in upcoming:
        start = parse_timestamp(event.start)
        if start is None:
            lines.append(f"- **{event.title}** ({event.type}) on an invalid date")
        else:
            lines.append(f"- **{event.title}** ({event.type}) on {start:%Y-%m-%d} at {start:%I:%M %p}")
    return (
        "---\n**COMPANY CALENDAR:**\n"
        "You have access to the entire company calendar. Here is a summary of upcoming events.\n"
        + "\n".join(lines)
        + "\n---"
    )


def render_rich_text(blocks: Any) -> str:
    """Render rich-text blocks as markdown. Non-list input is returned as text."""
    if not isinstance(blocks, list):
        return str(blocks)
    rendered = []
    for block in blocks:
        if not isinstance(block, dict):
            rendered.append(str(block))
            continue
        kind = block.get("type")
        content = block.get("content", block.get("text", ""))
        if kind == "table":
            rows = content.get("rows", []) if isinstance(content, dict) else []
            rendered.append("\n".join(" | ".join(str(cell) for cell in row) for row in rows))
            continue
        content = str(content or "")
        if kind == "heading1":
            rendered.append(f"# {content}")
        elif kind == "heading2":
            rendered.append(f"## {content}")
        elif kind in ("bulletList", "checkList"):
            rendered.append("\n".join(f"- {item}" for item in content.split("\n")))
        elif kind == "numberedList":
            rendered.append("\n".join(f"{i}. {item}" for i, item in enumerate(content.split("\n"), start=1)))
        elif kind == "codeBlock":
            rendered.append(f"```\n{content}\n```")
        elif kind == "blockQuote":
            rendered.append("> " + content.replace("\n", "\n> "))
        elif kind == "horizontalRule":
            rendered.append("---")
        else:
            rendered.append(content)
    return "\n\n".join(rendered)


def _file_text(item: AppFile) -> str:
    if item.type == "folder":
        return f'[This is a folder named "{item.name}".]'
    mime = item.mime_type or ""
    if not mime or mime == "application/json" or mime.startswith("text/"):
        if mime == "application/json" and item.content:
            try:
                return render_rich_text(json.loads(item.content))
            except ValueError:
                return item.content
        return item.content or ""
    if mime.startswith("image/"):
        return f'[This is an image file named "{item.name}". Its content cannot be displayed here.]'
    return f'[Content for file "{item.name}" is not available in a readable format.]'


def build_files_context(files: Sequence[AppFile]) -> str:
    active = [f for f in files if not f.is_archived]
    if not active:
        return ""
    blocks = [f"--- FILE START: {f.name} ---\n{_file_text(f)}\n--- FILE END: {f.name} ---" for f in active]
    return (
        "---\n**RELEVANT FILES:**\n"
        "The following files and their contents are associated with the current project or client. "
        "You MUST use this information as context for your responses.\n\n" + "\n\n".join(blocks) + "\n---"
    )


def build_tools_instructions(tools: Sequence[ActionKind]) -> str:
    if not tools:
        return ""
    descriptions = "\n".join(TOOL_DESCRIPTIONS[tool] for tool in tools if tool in TOOL_DESCRIPTIONS)
    return TOOLS_DIRECTIVE.format(tool_descriptions=descriptions)


def build_instruction(employee: Employee, company: Company, scope: ConversationScope) -> str:
    """Layer persona, morale, company, capabilities, scoped data, files and tools."""
    parts = [
        employee.system_instruction,
        build_morale_context(employee),
        build_company_context(company),
        DOCUMENT_ANALYSIS_NOTE,
    ]
    if employee.job_profile == PERSONAL_ASSISTANT:
        parts.extend(
            [
                build_roster_context(scope.employees),
                build_all_clients_context(scope.clients),
                build_all_projects_context(scope.projects, scope.clients),
                build_all_tasks_context(scope.tasks, scope.employees, scope.projects, scope.now),
                build_all_minutes_context(scope.all_minutes, scope.projects),
                build_all_events_context(scope.events, scope.now),
            ]
        )
        if scope.project:
            parts.append(CURRENT_FOCUS.format(project_name=scope.project.name))
    elif scope.project:
        parts.append(build_project_context(scope.project, scope.client))
        parts.append(build_minutes_context(scope.project_minutes))
    if scope.phases is not None:
        parts.append(build_phases_context(scope.phases))
        parts.append(build_budget_context(scope.budget, scope.expenses, scope.currency))
    parts.append(build_files_context(scope.files))
    parts.append(build_tools_instructions(tools_for_job_profile(employee.job_profile)))
    return _join(parts)


def build_brainstorm_instruction(
    employee: Employee,
    company: Company,
    participants: Sequence[Employee],
    project: Optional[Project] = None,
    minutes: Sequence[MeetingMinute] = (),
    files: Sequence[AppFile] = (),
) -> str:
    roster = build_brainstorm_roster(participants, employee)
    if employee.job_profile == PERSONAL_ASSISTANT:
        # The facilitator gets no tools in a brainstorm.
        return _join([FACILITATOR_SYSTEM.format(name=employee.name), build_company_context(company), roster])
    return _join(
        [
            employee.system_instruction,
            build_company_context(company),
            build_project_context(project) if project else "",
            build_minutes_context(minutes),
            build_files_context(files),
            roster,
            build_tools_instructions(tools_for_job_profile(employee.job_profile)),
        ]
    )


def build_collaborator_instruction(collaborator: Employee, company: Company) -> str:
    return COLLABORATOR_SYSTEM.format(
        persona=collaborator.system_instruction,
        company_context=build_company_context(company),
    ).strip()
