import asyncio
import base64
import binascii
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError

from .approvals import ActionConflict, ActionDesk, ActionNotFound
from .brainstorm import BrainstormController, SessionConflict, SessionNotFound
from .chat import ConversationController, ConversationNotFound
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .encoder import DocumentEncoder, TextDocumentEncoder
from .events import EventBus
from .llm import GatewayClient, ServiceError
from .schemas import (
    Client,
    Company,
    CreateSessionRequest,
    Employee,
    FileAttachment,
    Project,
    ProjectPhase,
    SendMessageRequest,
    parse_timestamp,
    to_utc_iso,
)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_lm_client(request: Request) -> GatewayClient:
    return request.app.state.lm_client


def get_chat(request: Request) -> ConversationController:
    return request.app.state.chat


def get_brainstorm(request: Request) -> BrainstormController:
    return request.app.state.brainstorm


def get_desk(request: Request) -> ActionDesk:
    return request.app.state.desk


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_attachment(file: Optional[FileAttachment], settings: AppSettings) -> None:
    if file is None:
        return
    safe_name = Path(file.name).name
    if not file.name or safe_name != file.name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    if file.mime_type not in settings.allowed_upload_mimes:
        raise HTTPException(status_code=400, detail=f"Attachments of type {file.mime_type} are not allowed.")
    try:
        raw = base64.b64decode(file.data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Attachment data must be base64 encoded.")
    if len(raw) > settings.upload_max_mb * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")


router = APIRouter()


@router.get("/health")
async def health(lm_client: GatewayClient = Depends(get_lm_client)):
    try:
        models = await lm_client.list_models()
        ids = [m.get("id") for m in models.get("data", []) if m.get("id")]
        return {"ok": True, "gateway": {"ok": True, "available": ids}}
    except Exception as exc:
        return {"ok": True, "gateway": {"ok": False, "error": str(exc)}}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    merged = settings.model_dump()
    gateway = {**merged["gateway"], **(payload.pop("gateway", None) or {})}
    if gateway.get("api_key") == "********":
        gateway["api_key"] = settings.gateway.api_key
    try:
        new_settings = AppSettings(**{**merged, **payload, "gateway": gateway})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path)
    request.app.state.settings = new_settings
    old_client = request.app.state.lm_client
    request.app.state.lm_client = GatewayClient(
        new_settings.gateway,
        max_output_tokens=new_settings.max_output_tokens,
        temperature=new_settings.temperature,
    )
    request.app.state.chat.lm_client = request.app.state.lm_client
    request.app.state.brainstorm.lm_client = request.app.state.lm_client
    request.app.state.chat.currency = new_settings.currency
    request.app.state.desk.currency = new_settings.currency
    await old_client.close()
    return {"ok": True, "settings": new_settings.to_safe_dict()}


# Company records


@router.post("/api/companies")
async def create_company(company: Company, db: Database = Depends(get_db)):
    return await db.save_company(company)


@router.get("/api/companies/{company_id}")
async def get_company(company_id: str, db: Database = Depends(get_db)):
    company = await db.get_company(company_id)
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")
    employees = await db.list_employees(company_id)
    projects = await db.list_projects(company_id)
    return {"company": company, "employees": employees, "projects": projects}


async def _require_company(db: Database, company_id: str) -> Company:
    company = await db.get_company(company_id)
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")
    return company


@router.post("/api/employees")
async def create_employee(employee: Employee, db: Database = Depends(get_db)):
    company = await _require_company(db, employee.company_id)
    if not employee.system_instruction.strip():
        employee.system_instruction = (
            f"You are {employee.name}, the {employee.job_profile} at {company.name}. "
            "Stay in character and answer as a capable, professional colleague."
        )
    return await db.save_employee(employee)


@router.get("/api/employees/{employee_id}")
async def get_employee(employee_id: str, db: Database = Depends(get_db)):
    employee = await db.get_employee(employee_id)
    if not employee:
        raise HTTPException(status_code=404, detail="Employee not found")
    return employee


@router.post("/api/clients")
async def create_client(client: Client, db: Database = Depends(get_db)):
    await _require_company(db, client.company_id)
    return await db.save_client(client)


@router.post("/api/projects")
async def create_project(project: Project, db: Database = Depends(get_db)):
    await _require_company(db, project.company_id)
    return await db.save_project(project)


async def _require_project(db: Database, project_id: str) -> Project:
    project = await db.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.post("/api/projects/{project_id}/phases")
async def create_phase(project_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    await _require_project(db, project_id)
    start = parse_timestamp(payload.get("start_date") or payload.get("startDate"))
    end = parse_timestamp(payload.get("end_date") or payload.get("endDate"))
    if not payload.get("name") or start is None or end is None:
        raise HTTPException(status_code=400, detail="A phase needs a name, start date and end date.")
    phase = ProjectPhase(
        project_id=project_id,
        name=payload["name"],
        description=payload.get("description") or "",
        start_date=to_utc_iso(start),
        end_date=to_utc_iso(end),
    )
    return await db.add_phase(phase)


@router.get("/api/projects/{project_id}/phases")
async def list_phases(project_id: str, db: Database = Depends(get_db)):
    await _require_project(db, project_id)
    return {"phases": await db.list_phases(project_id)}


@router.get("/api/projects/{project_id}/budget")
async def get_budget(project_id: str, db: Database = Depends(get_db)):
    await _require_project(db, project_id)
    budget = await db.get_budget(project_id)
    expenses = await db.list_expenses(project_id)
    spent = sum(e.amount for e in expenses)
    total = budget.total_budget if budget else None
    return {
        "budget": budget,
        "expenses": expenses,
        "spent": spent,
        "remaining": (total - spent) if total is not None else None,
    }


@router.get("/api/projects/{project_id}/files")
async def list_files(project_id: str, db: Database = Depends(get_db)):
    await _require_project(db, project_id)
    return {"files": await db.list_files(project_id)}


@router.get("/api/projects/{project_id}/minutes")
async def list_minutes(project_id: str, db: Database = Depends(get_db)):
    await _require_project(db, project_id)
    return {"minutes": await db.list_project_minutes(project_id)}


@router.get("/api/companies/{company_id}/tasks")
async def list_tasks(company_id: str, db: Database = Depends(get_db)):
    await _require_company(db, company_id)
    return {"tasks": await db.list_tasks(company_id)}


@router.get("/api/companies/{company_id}/events")
async def list_calendar(company_id: str, db: Database = Depends(get_db)):
    await _require_company(db, company_id)
    return {"events": await db.list_calendar_events(company_id)}


@router.get("/api/companies/{company_id}/documents")
async def list_documents(company_id: str, db: Database = Depends(get_db)):
    await _require_company(db, company_id)
    return {"documents": await db.list_generated_documents(company_id)}


@router.get("/api/companies/{company_id}/sessions")
async def list_sessions(company_id: str, db: Database = Depends(get_db)):
    await _require_company(db, company_id)
    return {"sessions": await db.list_sessions(company_id)}


# One-on-one chats


@router.get("/api/employees/{employee_id}/chats/{context_id}")
async def get_chat_thread(employee_id: str, context_id: str, chat: ConversationController = Depends(get_chat)):
    try:
        view = await chat.get_thread(employee_id, context_id)
    except ConversationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"messages": view.messages, "error": view.error}


@router.post("/api/employees/{employee_id}/chats/{context_id}/messages")
async def send_chat_message(
    employee_id: str,
    context_id: str,
    payload: SendMessageRequest,
    chat: ConversationController = Depends(get_chat),
    settings: AppSettings = Depends(get_settings),
):
    validate_attachment(payload.file, settings)
    try:
        messages = await chat.send(employee_id, context_id, payload)
    except ConversationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"messages": messages}


@router.post("/api/employees/{employee_id}/chats/{context_id}/messages/{message_id}/praise")
async def praise_message(
    employee_id: str,
    context_id: str,
    message_id: str,
    chat: ConversationController = Depends(get_chat),
    db: Database = Depends(get_db),
):
    try:
        message = await chat.praise(employee_id, context_id, message_id)
    except ConversationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    employee = await db.get_employee(employee_id)
    return {"message": message, "morale": employee.morale if employee else None}


# Proposed actions


@router.get("/api/actions/{action_id}")
async def get_action(action_id: str, desk: ActionDesk = Depends(get_desk)):
    try:
        pending = await desk.get(action_id)
        preview = await desk.preview(action_id)
    except ActionNotFound:
        raise HTTPException(status_code=404, detail="Action not found")
    return {
        "action": pending,
        "preview": {
            "kind": preview.kind,
            "action_class": preview.action_class,
            "valid": preview.valid,
            "summary": preview.summary,
            "reason": preview.reason,
        },
    }


@router.post("/api/actions/{action_id}/approve")
async def approve_action(action_id: str, desk: ActionDesk = Depends(get_desk)):
    try:
        result = await desk.approve(action_id)
    except ActionNotFound:
        raise HTTPException(status_code=404, detail="Action not found")
    except ActionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"action": result.pending, "message": result.message, "repeated": result.repeated}


@router.post("/api/actions/{action_id}/dismiss")
async def dismiss_action(action_id: str, desk: ActionDesk = Depends(get_desk)):
    try:
        pending = await desk.dismiss(action_id)
    except ActionNotFound:
        raise HTTPException(status_code=404, detail="Action not found")
    except ActionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"action": pending}


@router.post("/api/actions/{action_id}/save")
async def save_action_document(action_id: str, desk: ActionDesk = Depends(get_desk)):
    try:
        result = await desk.save(action_id)
    except ActionNotFound:
        raise HTTPException(status_code=404, detail="Action not found")
    except ActionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"action": result.pending, "message": result.message, "repeated": result.repeated}


@router.get("/api/actions/{action_id}/render")
async def render_action_document(action_id: str, desk: ActionDesk = Depends(get_desk)):
    try:
        encoded = await desk.render(action_id)
    except ActionNotFound:
        raise HTTPException(status_code=404, detail="Action not found")
    except ActionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return Response(
        content=encoded.raw_bytes(),
        media_type=encoded.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{encoded.file_name}"'},
    )


# Brainstorm sessions


@router.post("/api/sessions")
async def create_session(payload: CreateSessionRequest, brainstorm: BrainstormController = Depends(get_brainstorm)):
    try:
        return await brainstorm.create_session(payload)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except SessionConflict as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, brainstorm: BrainstormController = Depends(get_brainstorm)):
    try:
        return await brainstorm.get_session(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.post("/api/sessions/{session_id}/messages")
async def submit_session_message(
    session_id: str,
    payload: SendMessageRequest,
    brainstorm: BrainstormController = Depends(get_brainstorm),
    settings: AppSettings = Depends(get_settings),
):
    validate_attachment(payload.file, settings)
    try:
        return await brainstorm.submit(session_id, payload)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/api/sessions/{session_id}/minutes")
async def create_session_minutes(session_id: str, brainstorm: BrainstormController = Depends(get_brainstorm)):
    try:
        message = await brainstorm.generate_minutes(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ServiceError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message)
    return {"message": message}


@router.get("/api/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    after_seq: int = 0,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    if not await db.get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    # Replay stored events then follow live ones
    async def event_generator():
        queue = await bus.subscribe(session_id)
        try:
            past = await db.list_events(session_id, after_seq=after_seq)
            for ev in past:
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(session_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[GatewayClient] = None,
    encoder: Optional[DocumentEncoder] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.lm_client.close()

    app = FastAPI(title="CrewDesk", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or GatewayClient(
        settings.gateway,
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
    )
    app.state.bus = EventBus(app.state.db)
    app.state.desk = ActionDesk(app.state.db, encoder or TextDocumentEncoder(), currency=settings.currency)
    app.state.chat = ConversationController(
        app.state.db, app.state.lm_client, app.state.desk, currency=settings.currency
    )
    app.state.brainstorm = BrainstormController(app.state.db, app.state.lm_client, app.state.desk, app.state.bus)
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CREWDESK_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "crewdesk.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
