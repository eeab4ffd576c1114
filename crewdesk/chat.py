"""One-on-one conversations between the user and a simulated employee."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple

from . import router
from .actions import CollaborationPayload, ImagePayload, Rejection, validate_action
from .agents import COLLABORATION_FOLLOW_UP, PERSONAL_ASSISTANT, SEED_GREETING
from .approvals import ActionDesk
from .context import ConversationScope, build_instruction
from .db import Database
from .extractor import Extraction, extract
from .llm import GatewayClient, ServiceError
from .router import ActionClass
from .schemas import (
    GENERAL_CONTEXT,
    ActionKind,
    Company,
    Employee,
    Message,
    PendingAction,
    SendMessageRequest,
    TriggeredAction,
)

logger = logging.getLogger("uvicorn.error")

PRAISE_MORALE = 5
INTERACTION_MORALE = 1
COLLEAGUE_UNAVAILABLE = "I tried to find a colleague to help, but they seem to be unavailable right now."


class ConversationNotFound(LookupError):
    pass


@dataclass
class ThreadView:
    messages: List[Message]
    error: Optional[str] = None


class ConversationController:
    def __init__(self, db: Database, lm_client: GatewayClient, desk: ActionDesk, currency: str = "USD"):
        self.db = db
        self.lm_client = lm_client
        self.desk = desk
        self.currency = currency
        # (employee_id, context_id) pairs with a seed in flight
        self.seeded: Set[Tuple[str, str]] = set()
        desk.register_owner("chat", self._post_outcome)

    async def _post_outcome(self, pending: PendingAction, message: Message) -> None:
        await self.db.append_message(pending.employee_id, pending.context_id, message)

    async def _load(self, employee_id: str) -> Tuple[Employee, Company]:
        employee = await self.db.get_employee(employee_id)
        if not employee:
            raise ConversationNotFound(f"Employee {employee_id} not found")
        company = await self.db.get_company(employee.company_id)
        if not company:
            raise ConversationNotFound(f"Company {employee.company_id} not found")
        return employee, company

    async def build_scope(self, employee: Employee, context_id: str, now: Optional[datetime] = None) -> ConversationScope:
        company_id = employee.company_id
        scope = ConversationScope(
            employees=await self.db.list_employees(company_id),
            currency=self.currency,
            now=now or datetime.now(timezone.utc),
        )
        if context_id != GENERAL_CONTEXT:
            scope.project = await self.db.get_project(context_id)
        if employee.job_profile == PERSONAL_ASSISTANT:
            scope.projects = await self.db.list_projects(company_id)
            scope.clients = await self.db.list_clients(company_id)
            scope.tasks = await self.db.list_tasks(company_id)
            scope.all_minutes = await self.db.list_company_minutes(company_id)
            scope.events = await self.db.list_calendar_events(company_id)
        project = scope.project
        if project:
            if project.client_id:
                scope.client = await self.db.get_client(project.client_id)
            scope.project_minutes = await self.db.list_project_minutes(project.id)
            scope.phases = await self.db.list_phases(project.id)
            scope.budget = await self.db.get_budget(project.id)
            scope.expenses = await self.db.list_expenses(project.id)
            scope.files = await self.db.list_files(project.id)
        return scope

    async def instruction_for(self, employee: Employee, company: Company, context_id: str) -> str:
        scope = await self.build_scope(employee, context_id)
        return build_instruction(employee, company, scope)

    def _model_message(self, employee: Employee, text: str, **extra) -> Message:
        return Message(
            role="model",
            text=text,
            employee_id=employee.id,
            employee_name=employee.name,
            employee_avatar_url=employee.avatar_url,
            **extra,
        )

    async def get_thread(self, employee_id: str, context_id: str) -> ThreadView:
        """Return the log for a pair, seeding a greeting exchange when it is fresh."""
        employee, company = await self._load(employee_id)
        messages = await self.db.get_conversation(employee.id, context_id)
        key = (employee.id, context_id)
        if messages or key in self.seeded:
            return ThreadView(messages)
        self.seeded.add(key)
        greeting = Message(role="user", text=SEED_GREETING)
        try:
            instruction = await self.instruction_for(employee, company, context_id)
            reply = await self.lm_client.continue_conversation([greeting], instruction)
        except ServiceError as exc:
            self.seeded.discard(key)
            logger.warning("Seeding chat %s/%s failed: %s", employee.id, context_id, exc.original or exc)
            return ThreadView([], error=exc.user_message)
        seeded = [greeting, self._model_message(employee, extract(reply).narration_text)]
        try:
            await self.db.append_messages(employee.id, context_id, seeded)
        finally:
            self.seeded.discard(key)
        return ThreadView(seeded)

    async def send(self, employee_id: str, context_id: str, request: SendMessageRequest) -> List[Message]:
        """Run one user turn and return every message it appended."""
        if not request.text.strip() and request.file is None:
            raise ValueError("A message needs text or an attachment.")
        employee, company = await self._load(employee_id)
        history = await self.db.get_conversation(employee.id, context_id)
        user_message = Message(role="user", text=request.text, file=request.file)
        await self.db.append_message(employee.id, context_id, user_message)
        history.append(user_message)
        employee = await self.db.adjust_morale(employee.id, INTERACTION_MORALE) or employee

        appended: List[Message] = [user_message]
        instruction = await self.instruction_for(employee, company, context_id)
        try:
            reply = await self.lm_client.continue_conversation(history, instruction)
        except ServiceError as exc:
            appended.append(self._model_message(employee, exc.user_message))
            await self.db.append_messages(employee.id, context_id, appended[1:])
            return appended

        extraction = extract(reply)
        action = extraction.action
        if action is not None and action.kind == ActionKind.COLLABORATION:
            produced = await self._collaborate(employee, company, context_id, history, extraction, instruction)
        else:
            produced = await self._settle(employee, company, context_id, extraction)
        await self.db.append_messages(employee.id, context_id, produced)
        appended.extend(produced)
        return appended

    async def _settle(
        self,
        employee: Employee,
        company: Company,
        context_id: str,
        extraction: Extraction,
    ) -> List[Message]:
        """Turn an extraction into log messages, handling its action if any."""
        message = self._model_message(employee, extraction.narration_text, action=extraction.action)
        action = extraction.action
        if action is None:
            return [message]
        action_class = router.classify(action.kind)
        if action_class == ActionClass.IMAGE:
            return [message] + await self._generate_image(employee, action.payload)
        if action.kind == ActionKind.DOCUMENT:
            project_id = None if context_id == GENERAL_CONTEXT else context_id
            await router.persist_rich_document(action, self.db, employee, company.id, project_id)
        elif action_class in (ActionClass.DATA_MUTATION, ActionClass.DOCUMENT):
            await self.desk.propose("chat", employee.id, context_id, message, employee)
        return [message]

    async def _generate_image(self, employee: Employee, payload) -> List[Message]:
        validated = validate_action(TriggeredAction(kind=ActionKind.IMAGE, payload=payload, narration_text=""))
        if isinstance(validated, Rejection):
            return [self._model_message(employee, validated.reason)]
        prompt = validated.payload.prompt if isinstance(validated.payload, ImagePayload) else ""
        try:
            image = await self.lm_client.generate_image(prompt)
        except ServiceError as exc:
            logger.warning("Image generation for %s failed: %s", employee.id, exc.original or exc)
            return [self._model_message(employee, exc.user_message)]
        return [self._model_message(employee, f'Here is the image I generated for: "{prompt}"', image=image)]

    async def _collaborate(
        self,
        employee: Employee,
        company: Company,
        context_id: str,
        history: List[Message],
        extraction: Extraction,
        instruction: str,
    ) -> List[Message]:
        validated = validate_action(extraction.action)
        colleague = None
        if not isinstance(validated, Rejection) and isinstance(validated.payload, CollaborationPayload):
            candidate = await self.db.get_employee(validated.payload.employee_id)
            if candidate and candidate.company_id == company.id and candidate.id != employee.id:
                colleague = candidate
        if colleague is None:
            return [self._model_message(employee, COLLEAGUE_UNAVAILABLE)]

        question = validated.payload.question
        asking = self._model_message(employee, extraction.narration_text)
        try:
            answer = await self.lm_client.get_collaborator_response(colleague, question, company)
            follow_up = Message(
                role="user",
                text=COLLABORATION_FOLLOW_UP.format(
                    name=colleague.name,
                    question=question,
                    answer=answer,
                    original=history[-1].text,
                ),
            )
            reply = await self.lm_client.continue_conversation(history + [follow_up], instruction)
        except ServiceError as exc:
            return [asking, self._model_message(employee, exc.user_message)]
        logger.info("%s consulted %s", employee.name, colleague.name)

        final = extract(reply)
        if final.action is not None and final.action.kind == ActionKind.COLLABORATION:
            final = Extraction(narration_text=final.narration_text)
        return [asking] + await self._settle(employee, company, context_id, final)

    async def praise(self, employee_id: str, context_id: str, message_id: str) -> Message:
        messages = await self.db.get_conversation(employee_id, context_id)
        for message in messages:
            if message.id != message_id:
                continue
            if message.is_praised:
                return message
            message.is_praised = True
            await self.db.replace_message(employee_id, context_id, message)
            await self.db.adjust_morale(employee_id, PRAISE_MORALE)
            return message
        raise ConversationNotFound(f"Message {message_id} not found")
