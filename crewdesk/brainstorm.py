"""Multi-participant brainstorm sessions.

A submission fans out one gateway call per participant. Each reply replaces
that participant's typing placeholder as it arrives; image requests are
fulfilled once every participant has answered, and the round is appended to
the stored history in one write at the end.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from . import router
from .actions import ImagePayload, Rejection, validate_action
from .agents import PERSONAL_ASSISTANT
from .approvals import ActionDesk
from .context import build_brainstorm_instruction
from .db import Database
from .events import EventBus
from .extractor import extract
from .llm import GatewayClient, ServiceError
from .router import ActionClass
from .schemas import (
    FACILITATOR_ID,
    FACILITATOR_NAME,
    IMAGE_PENDING,
    ActionKind,
    AppFile,
    BrainstormSession,
    Company,
    CreateSessionRequest,
    Employee,
    MeetingMinute,
    Message,
    PendingAction,
    Project,
    SendMessageRequest,
    TriggeredAction,
    utc_iso,
)

logger = logging.getLogger("uvicorn.error")

GENERAL_FAILURE = "A general error occurred during the brainstorm session."
MINUTES_SAVED = (
    "I have generated and saved the meeting minutes for this session. "
    "You can find them in the project's \"Meeting Minutes\" tab."
)
MINUTES_PROJECT_ONLY = "Meeting minutes can only be saved for project-specific meetings."


class SessionNotFound(LookupError):
    pass


class SessionConflict(ValueError):
    pass


@dataclass
class ParticipantReply:
    employee: Employee
    status: Literal["fulfilled", "rejected"]
    text: str
    action: Optional[TriggeredAction] = None


ReplyHandler = Callable[[ParticipantReply], Awaitable[None]]


async def get_brainstorm_responses_stream(
    lm_client: GatewayClient,
    history: Sequence[Message],
    participants: Sequence[Employee],
    company: Company,
    on_each: ReplyHandler,
    project: Optional[Project] = None,
    minutes: Sequence[MeetingMinute] = (),
    files: Sequence[AppFile] = (),
) -> List[ParticipantReply]:
    """Ask every participant concurrently, reporting each reply as soon as it lands."""

    async def ask(employee: Employee) -> ParticipantReply:
        instruction = build_brainstorm_instruction(employee, company, participants, project, minutes, files)
        try:
            text = await lm_client.continue_conversation(history, instruction)
        except ServiceError as exc:
            reply = ParticipantReply(employee, "rejected", exc.user_message)
        else:
            extraction = extract(text)
            reply = ParticipantReply(employee, "fulfilled", extraction.narration_text or "No response.", extraction.action)
        await on_each(reply)
        return reply

    tasks = [asyncio.ensure_future(ask(employee)) for employee in participants]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        # Let the other participants settle before the failure surfaces.
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def typing_placeholders(participants: Sequence[Employee]) -> List[Message]:
    """One placeholder per participant; the facilitator goes last."""
    ordered = [p for p in participants if p.job_profile != PERSONAL_ASSISTANT]
    ordered += [p for p in participants if p.job_profile == PERSONAL_ASSISTANT]
    return [
        Message(
            role="model",
            is_typing=True,
            employee_id=p.id,
            employee_name=p.name,
            employee_avatar_url=p.avatar_url,
        )
        for p in ordered
    ]


def resolve_placeholder(history: List[Message], message: Message) -> List[Message]:
    """Swap the sender's typing placeholder for ``message`` in place of it."""
    for index, existing in enumerate(history):
        if existing.is_typing and existing.employee_id == message.employee_id:
            return history[:index] + [message] + history[index + 1 :]
    return history + [message]


def replace_by_id(history: List[Message], message: Message) -> List[Message]:
    return [message if existing.id == message.id else existing for existing in history]


def facilitator_message(text: str) -> Message:
    return Message(role="model", text=text, employee_id=FACILITATOR_ID, employee_name=FACILITATOR_NAME)


class BrainstormController:
    def __init__(self, db: Database, lm_client: GatewayClient, desk: ActionDesk, bus: EventBus):
        self.db = db
        self.lm_client = lm_client
        self.desk = desk
        self.bus = bus
        # Guards each session's read-modify-write; never held across gateway calls.
        self.locks: Dict[str, asyncio.Lock] = {}
        desk.register_owner("brainstorm", self._post_outcome)

    async def get_session(self, session_id: str) -> BrainstormSession:
        session = await self.db.get_session(session_id)
        if not session:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def _participants(self, session: BrainstormSession) -> List[Employee]:
        participants = []
        for employee_id in session.participant_ids:
            employee = await self.db.get_employee(employee_id)
            if employee:
                participants.append(employee)
        return participants

    async def _company(self, company_id: str) -> Company:
        company = await self.db.get_company(company_id)
        if not company:
            raise SessionNotFound(f"Company {company_id} not found")
        return company

    async def create_session(self, request: CreateSessionRequest) -> BrainstormSession:
        await self._company(request.company_id)
        if request.context_type == "project":
            project = await self.db.get_project(request.context_id)
            if not project or project.company_id != request.company_id:
                raise SessionNotFound(f"Project {request.context_id} not found")
        if not request.participant_ids:
            raise SessionConflict("A brainstorm needs at least one participant.")
        for employee_id in request.participant_ids:
            employee = await self.db.get_employee(employee_id)
            if not employee or employee.company_id != request.company_id:
                raise SessionNotFound(f"Employee {employee_id} not found")
        session = BrainstormSession(
            company_id=request.company_id,
            topic=request.topic,
            description=request.description,
            context_type=request.context_type,
            context_id=request.context_id,
            participant_ids=list(dict.fromkeys(request.participant_ids)),
        )
        await self.db.save_session(session)
        logger.info("Brainstorm session %s created on %r", session.id, session.topic)
        return session

    async def _append(self, session_id: str, messages: Sequence[Message]) -> BrainstormSession:
        """Append to the stored history, re-read under the session lock."""
        lock = self.locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = await self.get_session(session_id)
            session.history = session.history + list(messages)
            session.last_activity = utc_iso()
            await self.db.save_session(session)
            return session

    async def _post_outcome(self, pending: PendingAction, message: Message) -> None:
        session = await self._append(pending.owner_id, [message])
        await self.bus.emit(session.id, "brainstorm_message", {"message": message.model_dump(mode="json")})

    async def _fulfill_image(self, message: Message) -> Message:
        validated = validate_action(message.action) if message.action else None
        if validated is None or isinstance(validated, Rejection) or not isinstance(validated.payload, ImagePayload):
            return message.model_copy(update={"image": None, "text": "I need a description before I can generate an image."})
        prompt = validated.payload.prompt
        try:
            image = await self.lm_client.generate_image(prompt)
        except ServiceError as exc:
            logger.warning("Brainstorm image for %s failed: %s", message.employee_id, exc.original or exc)
            return message.model_copy(update={"image": None, "text": exc.user_message})
        return message.model_copy(update={"image": image, "text": f'Here\'s an image for: "{prompt}"'})

    async def submit(self, session_id: str, request: SendMessageRequest) -> BrainstormSession:
        if not request.text.strip() and request.file is None:
            raise ValueError("A message needs text or an attachment.")
        session = await self.get_session(session_id)
        company = await self._company(session.company_id)
        participants = await self._participants(session)
        project = None
        minutes: List[MeetingMinute] = []
        files: List[AppFile] = []
        if session.context_type == "project":
            project = await self.db.get_project(session.context_id)
            minutes = await self.db.list_project_minutes(session.context_id)
            files = await self.db.list_files(session.context_id)
        project_id = project.id if project else None

        user_message = Message(role="user", text=request.text, file=request.file)
        round_start = len(session.history)
        shared = session.history + [user_message]
        placeholders = typing_placeholders(participants)
        history = shared + placeholders
        await self.bus.emit(session.id, "brainstorm_message", {"message": user_message.model_dump(mode="json")})
        for placeholder in placeholders:
            await self.bus.emit(session.id, "brainstorm_placeholder", {"message": placeholder.model_dump(mode="json")})

        async def on_each(reply: ParticipantReply) -> None:
            nonlocal history
            message = Message(
                role="model",
                text=reply.text,
                employee_id=reply.employee.id,
                employee_name=reply.employee.name,
                employee_avatar_url=reply.employee.avatar_url,
                action=reply.action,
            )
            if reply.action is not None:
                action_class = router.classify(reply.action.kind)
                if action_class == ActionClass.IMAGE:
                    message.image = IMAGE_PENDING
                elif reply.action.kind == ActionKind.DOCUMENT:
                    await router.persist_rich_document(reply.action, self.db, reply.employee, company.id, project_id)
                elif action_class in (ActionClass.DATA_MUTATION, ActionClass.DOCUMENT):
                    await self.desk.propose("brainstorm", session.id, session.context_id, message, reply.employee)
            history = resolve_placeholder(history, message)
            await self.bus.emit(session.id, "brainstorm_message", {"message": message.model_dump(mode="json")})

        try:
            await get_brainstorm_responses_stream(
                self.lm_client, shared, participants, company, on_each, project, minutes, files
            )
            pending_images = [m for m in history if m.image == IMAGE_PENDING]
            fulfilled = await asyncio.gather(*(self._fulfill_image(m) for m in pending_images))
            for message in fulfilled:
                history = replace_by_id(history, message)
                await self.bus.emit(session.id, "brainstorm_message", {"message": message.model_dump(mode="json")})
        except Exception as exc:
            logger.warning("Brainstorm session %s failed: %s", session.id, exc)
            failure = facilitator_message(GENERAL_FAILURE)
            history = [m for m in history if not m.is_typing] + [failure]
            await self.bus.emit(session.id, "brainstorm_message", {"message": failure.model_dump(mode="json")})

        # Writes made to the session during the round (approvals, minutes) stay ahead of it.
        session = await self._append(session.id, history[round_start:])
        await self.bus.emit(session.id, "brainstorm_settled", {"last_activity": session.last_activity})
        return session

    async def generate_minutes(self, session_id: str) -> Message:
        session = await self.get_session(session_id)
        if session.context_type != "project":
            raise SessionConflict(MINUTES_PROJECT_ONLY)
        company = await self._company(session.company_id)
        participants = await self._participants(session)
        summary = await self.lm_client.summarize_brainstorm_session(
            session.history, session.topic, participants, company.profile
        )
        minute = await self.db.add_meeting_minute(
            MeetingMinute(
                company_id=session.company_id,
                project_id=session.context_id,
                title=summary["title"],
                content=summary["content"],
            )
        )
        logger.info("Minutes %s saved for project %s", minute.id, session.context_id)
        confirmation = facilitator_message(MINUTES_SAVED)
        await self._append(session.id, [confirmation])
        await self.bus.emit(session.id, "brainstorm_message", {"message": confirmation.model_dump(mode="json")})
        return confirmation
