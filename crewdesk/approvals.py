import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from . import router
from .db import Database
from .encoder import DocumentEncoder, EncodedFile
from .router import ActionClass, ActionPreview, RouteScope
from .schemas import GENERAL_CONTEXT, Employee, Message, PendingAction

logger = logging.getLogger("uvicorn.error")

APPLY_FAILED = "I couldn't apply that change because of an unexpected error. Please try again."

OutcomePoster = Callable[[PendingAction, Message], Awaitable[None]]


class ActionNotFound(LookupError):
    pass


class ActionConflict(ValueError):
    pass


@dataclass
class ApprovalResult:
    pending: PendingAction
    message: Optional[Message] = None
    repeated: bool = False


class ActionDesk:
    """Approval, dismissal and document saves for proposed actions.

    Owners (one-on-one chats and brainstorm sessions) register a poster that
    appends the outcome message to their own log.
    """

    def __init__(self, db: Database, encoder: DocumentEncoder, currency: str = "USD"):
        self.db = db
        self.encoder = encoder
        self.currency = currency
        self.posters: Dict[str, OutcomePoster] = {}

    def register_owner(self, owner_type: str, poster: OutcomePoster) -> None:
        self.posters[owner_type] = poster

    async def propose(
        self,
        owner_type: str,
        owner_id: str,
        context_id: str,
        message: Message,
        employee: Employee,
    ) -> Optional[PendingAction]:
        """Record a pending action for data-mutating and document proposals."""
        if message.action is None:
            return None
        if router.classify(message.action.kind) not in (ActionClass.DATA_MUTATION, ActionClass.DOCUMENT):
            return None
        pending = PendingAction(
            owner_type=owner_type,
            owner_id=owner_id,
            context_id=context_id,
            message_id=message.id,
            employee_id=employee.id,
            action=message.action,
        )
        await self.db.add_pending_action(pending)
        message.action_id = pending.id
        return pending

    async def get(self, action_id: str) -> PendingAction:
        pending = await self.db.get_pending_action(action_id)
        if not pending:
            raise ActionNotFound(action_id)
        return pending

    async def _employee(self, pending: PendingAction) -> Employee:
        employee = await self.db.get_employee(pending.employee_id)
        if not employee:
            raise ActionNotFound(pending.employee_id)
        return employee

    async def route_scope(self, pending: PendingAction, employee: Employee) -> RouteScope:
        project_id = None
        phases = []
        if pending.context_id != GENERAL_CONTEXT:
            project = await self.db.get_project(pending.context_id)
            if project:
                project_id = project.id
                phases = await self.db.list_phases(project.id)
        return RouteScope(
            company_id=employee.company_id,
            project_id=project_id,
            phases=phases,
            employees=await self.db.list_employees(employee.company_id),
            currency=self.currency,
        )

    async def preview(self, action_id: str) -> ActionPreview:
        pending = await self.get(action_id)
        employee = await self._employee(pending)
        return router.preview(pending.action, await self.route_scope(pending, employee))

    async def _post(self, pending: PendingAction, message: Message) -> None:
        poster = self.posters.get(pending.owner_type)
        if poster is None:
            raise ActionConflict(f"No log registered for {pending.owner_type} actions")
        await poster(pending, message)

    async def approve(self, action_id: str) -> ApprovalResult:
        pending = await self.get(action_id)
        if pending.status in ("Committed", "Failed"):
            return ApprovalResult(pending, repeated=True)
        if pending.status == "Dismissed":
            raise ActionConflict("This action was dismissed and can no longer be approved.")
        if router.classify(pending.action.kind) != ActionClass.DATA_MUTATION:
            raise ActionConflict("Only data changes can be approved. Save documents instead.")
        employee = await self._employee(pending)
        # Phases are re-resolved here; a rejected apply settles as Failed with its explanation.
        scope = await self.route_scope(pending, employee)
        if not await self.db.transition_pending_action(pending.id, "Pending", "Committed"):
            return ApprovalResult(await self.get(action_id), repeated=True)
        try:
            outcome = await router.apply(pending.action, self.db, scope)
        except Exception as exc:
            logger.warning("Applying action %s failed: %s", pending.id, exc)
            outcome = router.RouterOutcome(False, APPLY_FAILED)
        status = "Committed" if outcome.applied else "Failed"
        await self.db.transition_pending_action(pending.id, "Committed", status, outcome.text)
        message = router.system_message(outcome.text)
        await self._post(pending, message)
        return ApprovalResult(await self.get(action_id), message=message)

    async def dismiss(self, action_id: str) -> PendingAction:
        pending = await self.get(action_id)
        if pending.status == "Dismissed":
            return pending
        if not await self.db.transition_pending_action(pending.id, "Pending", "Dismissed"):
            raise ActionConflict("This action has already been resolved.")
        return await self.get(action_id)

    def _require_document(self, pending: PendingAction) -> None:
        if router.classify(pending.action.kind) != ActionClass.DOCUMENT:
            raise ActionConflict("This action does not produce a document.")

    async def render(self, action_id: str) -> EncodedFile:
        pending = await self.get(action_id)
        self._require_document(pending)
        try:
            return await router.render_document(pending.action, self.encoder)
        except ValueError as exc:
            raise ActionConflict(str(exc)) from exc

    async def save(self, action_id: str) -> ApprovalResult:
        pending = await self.get(action_id)
        self._require_document(pending)
        if pending.status == "Committed":
            return ApprovalResult(pending, repeated=True)
        if pending.status != "Pending":
            raise ActionConflict("This document can no longer be saved.")
        employee = await self._employee(pending)
        if not await self.db.transition_pending_action(pending.id, "Pending", "Committed"):
            return ApprovalResult(await self.get(action_id), repeated=True)
        context_type = "brainstorm" if pending.owner_type == "brainstorm" else "direct"
        description = (
            "Generated in a brainstorm session"
            if context_type == "brainstorm"
            else f"Generated in a chat with {employee.name}"
        )
        try:
            outcome = await router.save_document(
                pending.action,
                self.encoder,
                self.db,
                employee,
                employee.company_id,
                context_type,
                description,
            )
        except Exception as exc:
            logger.warning("Saving document for action %s failed: %s", pending.id, exc)
            outcome = router.RouterOutcome(False, APPLY_FAILED)
        status = "Committed" if outcome.applied else "Failed"
        await self.db.transition_pending_action(pending.id, "Committed", status, outcome.text)
        message = router.system_message(outcome.text)
        await self._post(pending, message)
        return ApprovalResult(await self.get(action_id), message=message)
