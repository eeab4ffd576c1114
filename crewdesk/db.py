import json
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import aiosqlite
from pydantic import BaseModel

from .schemas import (
    AppFile,
    BrainstormSession,
    CalendarEvent,
    Client,
    Company,
    Employee,
    GeneratedDocument,
    MeetingMinute,
    Message,
    PendingAction,
    Project,
    ProjectBudget,
    ProjectExpense,
    ProjectPhase,
    Task,
    utc_iso,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Record tables share one layout: id, one owner column, the model as JSON.
RECORD_TABLES: Dict[str, str] = {
    "companies": "owner_id",
    "employees": "company_id",
    "clients": "company_id",
    "projects": "company_id",
    "phases": "project_id",
    "expenses": "project_id",
    "calendar_events": "company_id",
    "tasks": "company_id",
    "meeting_minutes": "project_id",
    "files": "parent_id",
    "generated_documents": "company_id",
    "brainstorm_sessions": "company_id",
}

PHASE_UPDATE_FIELDS = {
    "name": "name",
    "description": "description",
    "startDate": "start_date",
    "start_date": "start_date",
    "endDate": "end_date",
    "end_date": "end_date",
    "status": "status",
}


def _record_table_sql() -> str:
    statements = []
    for table, owner in RECORD_TABLES.items():
        statements.append(
            f"""
            CREATE TABLE IF NOT EXISTS {table}(
                id TEXT PRIMARY KEY,
                {owner} TEXT,
                payload_json TEXT,
                created_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}({owner});
            """
        )
    return "\n".join(statements)


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                "PRAGMA journal_mode=WAL;"
                + _record_table_sql()
                + """
                CREATE TABLE IF NOT EXISTS budgets(
                    project_id TEXT PRIMARY KEY,
                    payload_json TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS conversation_messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id TEXT,
                    context_id TEXT,
                    message_id TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversation_pair
                    ON conversation_messages(employee_id, context_id);
                CREATE TABLE IF NOT EXISTS pending_actions(
                    id TEXT PRIMARY KEY,
                    owner_type TEXT,
                    owner_id TEXT,
                    status TEXT,
                    outcome_text TEXT,
                    payload_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stream_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_stream ON events(stream_id, seq);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Generic record helpers

    async def _put(self, table: str, owner_value: Optional[str], record: BaseModel) -> None:
        owner = RECORD_TABLES[table]
        now = utc_iso()
        await self.execute(
            f"INSERT INTO {table}(id, {owner}, payload_json, created_at, updated_at) VALUES (?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET "
            f"{owner}=excluded.{owner}, payload_json=excluded.payload_json, updated_at=excluded.updated_at",
            (getattr(record, "id"), owner_value, record.model_dump_json(), now, now),
        )

    async def _get(self, table: str, model: Type[ModelT], record_id: str) -> Optional[ModelT]:
        row = await self.fetchone(f"SELECT payload_json FROM {table} WHERE id=?", (record_id,))
        if not row:
            return None
        return model.model_validate_json(row["payload_json"])

    async def _list(self, table: str, model: Type[ModelT], owner_value: Optional[str] = None) -> List[ModelT]:
        if owner_value is None:
            rows = await self.fetchall(f"SELECT payload_json FROM {table} ORDER BY rowid ASC")
        else:
            owner = RECORD_TABLES[table]
            rows = await self.fetchall(
                f"SELECT payload_json FROM {table} WHERE {owner}=? ORDER BY rowid ASC", (owner_value,)
            )
        return [model.model_validate_json(row["payload_json"]) for row in rows]

    async def _delete(self, table: str, record_id: str) -> bool:
        return await self.execute(f"DELETE FROM {table} WHERE id=?", (record_id,)) > 0

    # Companies, people, projects

    async def save_company(self, company: Company) -> Company:
        await self._put("companies", None, company)
        return company

    async def get_company(self, company_id: str) -> Optional[Company]:
        return await self._get("companies", Company, company_id)

    async def save_employee(self, employee: Employee) -> Employee:
        await self._put("employees", employee.company_id, employee)
        return employee

    async def get_employee(self, employee_id: str) -> Optional[Employee]:
        return await self._get("employees", Employee, employee_id)

    async def list_employees(self, company_id: str) -> List[Employee]:
        return await self._list("employees", Employee, company_id)

    async def adjust_morale(self, employee_id: str, delta: int) -> Optional[Employee]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT payload_json FROM employees WHERE id=?", (employee_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                await db.rollback()
                return None
            employee = Employee.model_validate_json(row["payload_json"])
            employee.morale = max(0, min(100, employee.morale + delta))
            await db.execute(
                "UPDATE employees SET payload_json=?, updated_at=? WHERE id=?",
                (employee.model_dump_json(), utc_iso(), employee_id),
            )
            await db.commit()
            return employee

    async def save_client(self, client: Client) -> Client:
        await self._put("clients", client.company_id, client)
        return client

    async def get_client(self, client_id: str) -> Optional[Client]:
        return await self._get("clients", Client, client_id)

    async def list_clients(self, company_id: str) -> List[Client]:
        return await self._list("clients", Client, company_id)

    async def save_project(self, project: Project) -> Project:
        await self._put("projects", project.company_id, project)
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._get("projects", Project, project_id)

    async def list_projects(self, company_id: str) -> List[Project]:
        return await self._list("projects", Project, company_id)

    # Project plan and budget

    async def add_phase(self, phase: ProjectPhase) -> ProjectPhase:
        await self._put("phases", phase.project_id, phase)
        return phase

    async def list_phases(self, project_id: str) -> List[ProjectPhase]:
        phases = await self._list("phases", ProjectPhase, project_id)
        return sorted(phases, key=lambda p: p.start_date)

    async def update_phase(self, phase_id: str, updates: Dict[str, Any]) -> Optional[ProjectPhase]:
        phase = await self._get("phases", ProjectPhase, phase_id)
        if phase is None:
            return None
        data = phase.model_dump()
        for key, value in updates.items():
            field = PHASE_UPDATE_FIELDS.get(key)
            if field:
                data[field] = value
        updated = ProjectPhase.model_validate(data)
        await self._put("phases", updated.project_id, updated)
        return updated

    async def delete_phase(self, phase_id: str) -> bool:
        return await self._delete("phases", phase_id)

    async def set_budget(self, budget: ProjectBudget) -> ProjectBudget:
        await self.execute(
            "INSERT INTO budgets(project_id, payload_json, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(project_id) DO UPDATE SET payload_json=excluded.payload_json, updated_at=excluded.updated_at",
            (budget.project_id, budget.model_dump_json(), utc_iso()),
        )
        return budget

    async def get_budget(self, project_id: str) -> Optional[ProjectBudget]:
        row = await self.fetchone("SELECT payload_json FROM budgets WHERE project_id=?", (project_id,))
        return ProjectBudget.model_validate_json(row["payload_json"]) if row else None

    async def add_expense(self, expense: ProjectExpense) -> ProjectExpense:
        await self._put("expenses", expense.project_id, expense)
        return expense

    async def list_expenses(self, project_id: str) -> List[ProjectExpense]:
        return await self._list("expenses", ProjectExpense, project_id)

    # Calendar, tasks, minutes, files, documents

    async def add_calendar_event(self, event: CalendarEvent) -> CalendarEvent:
        await self._put("calendar_events", event.company_id, event)
        return event

    async def list_calendar_events(self, company_id: str) -> List[CalendarEvent]:
        return await self._list("calendar_events", CalendarEvent, company_id)

    async def add_task(self, task: Task) -> Task:
        await self._put("tasks", task.company_id, task)
        return task

    async def list_tasks(self, company_id: str) -> List[Task]:
        return await self._list("tasks", Task, company_id)

    async def add_meeting_minute(self, minute: MeetingMinute) -> MeetingMinute:
        await self._put("meeting_minutes", minute.project_id, minute)
        return minute

    async def list_project_minutes(self, project_id: str) -> List[MeetingMinute]:
        return await self._list("meeting_minutes", MeetingMinute, project_id)

    async def list_company_minutes(self, company_id: str) -> List[MeetingMinute]:
        minutes = await self._list("meeting_minutes", MeetingMinute)
        return [m for m in minutes if m.company_id == company_id]

    async def add_file(self, item: AppFile) -> AppFile:
        await self._put("files", item.parent_id, item)
        return item

    async def list_files(self, parent_id: str) -> List[AppFile]:
        return await self._list("files", AppFile, parent_id)

    async def add_generated_document(self, document: GeneratedDocument) -> GeneratedDocument:
        await self._put("generated_documents", document.company_id, document)
        return document

    async def list_generated_documents(self, company_id: str) -> List[GeneratedDocument]:
        return await self._list("generated_documents", GeneratedDocument, company_id)

    # Conversation logs keyed by (employee_id, context_id)

    async def get_conversation(self, employee_id: str, context_id: str) -> List[Message]:
        rows = await self.fetchall(
            "SELECT payload_json FROM conversation_messages WHERE employee_id=? AND context_id=? ORDER BY id ASC",
            (employee_id, context_id),
        )
        return [Message.model_validate_json(row["payload_json"]) for row in rows]

    async def append_messages(self, employee_id: str, context_id: str, messages: List[Message]) -> None:
        if not messages:
            return
        async with aiosqlite.connect(self.path) as db:
            await db.executemany(
                "INSERT INTO conversation_messages(employee_id, context_id, message_id, payload_json, created_at) "
                "VALUES (?,?,?,?,?)",
                [(employee_id, context_id, m.id, m.model_dump_json(), m.timestamp) for m in messages],
            )
            await db.commit()

    async def append_message(self, employee_id: str, context_id: str, message: Message) -> None:
        await self.append_messages(employee_id, context_id, [message])

    async def replace_message(self, employee_id: str, context_id: str, message: Message) -> bool:
        count = await self.execute(
            "UPDATE conversation_messages SET payload_json=? WHERE employee_id=? AND context_id=? AND message_id=?",
            (message.model_dump_json(), employee_id, context_id, message.id),
        )
        return count > 0

    # Brainstorm sessions

    async def save_session(self, session: BrainstormSession) -> BrainstormSession:
        await self._put("brainstorm_sessions", session.company_id, session)
        return session

    async def get_session(self, session_id: str) -> Optional[BrainstormSession]:
        return await self._get("brainstorm_sessions", BrainstormSession, session_id)

    async def list_sessions(self, company_id: str) -> List[BrainstormSession]:
        sessions = await self._list("brainstorm_sessions", BrainstormSession, company_id)
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    # Pending actions

    async def add_pending_action(self, pending: PendingAction) -> PendingAction:
        await self.execute(
            "INSERT INTO pending_actions(id, owner_type, owner_id, status, outcome_text, payload_json, created_at, "
            "updated_at) VALUES (?,?,?,?,?,?,?,?)",
            (
                pending.id,
                pending.owner_type,
                pending.owner_id,
                pending.status,
                pending.outcome_text,
                pending.model_dump_json(),
                pending.created_at,
                pending.updated_at,
            ),
        )
        return pending

    async def get_pending_action(self, action_id: str) -> Optional[PendingAction]:
        row = await self.fetchone(
            "SELECT status, outcome_text, payload_json, updated_at FROM pending_actions WHERE id=?", (action_id,)
        )
        if not row:
            return None
        pending = PendingAction.model_validate_json(row["payload_json"])
        pending.status = row["status"]
        pending.outcome_text = row["outcome_text"]
        pending.updated_at = row["updated_at"]
        return pending

    async def transition_pending_action(
        self,
        action_id: str,
        from_status: str,
        to_status: str,
        outcome_text: Optional[str] = None,
    ) -> bool:
        """Move an action between states only if it is still in ``from_status``."""
        count = await self.execute(
            "UPDATE pending_actions SET status=?, outcome_text=?, updated_at=? WHERE id=? AND status=?",
            (to_status, outcome_text, utc_iso(), action_id, from_status),
        )
        return count == 1

    # Event stream

    async def add_event(self, stream_id: str, event_type: str, payload: dict) -> dict:
        created_at = utc_iso()
        # seq allocation and insert share one write transaction
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT MAX(seq) as max_seq FROM events WHERE stream_id=?", (stream_id,))
            row = await cursor.fetchone()
            await cursor.close()
            seq = int(row["max_seq"] or 0) + 1
            await db.execute(
                "INSERT INTO events(stream_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                (stream_id, seq, event_type, json.dumps(payload), created_at),
            )
            await db.commit()
        return {"stream_id": stream_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, stream_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE stream_id=? AND seq>? ORDER BY seq ASC",
            (stream_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
