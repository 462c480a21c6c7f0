"""
Approval workflow engine - the state machine that routes a form through its stage sequence.

Each form type carries an ordered list of approver roles. A record starts waiting
on the first stage; every accepted approve moves it one stage forward until the
last stage approves it, and any reject ends it immediately. Approved and Rejected
are absorbing. All writes go through the store's compare_and_update keyed on the
stage the caller observed, so concurrent decisions on one record have one winner.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from util.logging import audit_event, logger

from . import authz, config
from .authz import AuthorizationGate
from .errors import ConflictError, WorkflowError, WorkflowValidationError
from .forms import FormType, build_form_types
from .notify import (
    ADVANCED, APPROVED as NOTIFY_APPROVED, PROGRESS, REJECTED as NOTIFY_REJECTED, SUBMITTED,
    Notification, NotificationDispatcher, QUEUED, build_notifier,
)
from .roles import RoleDirectory
from .schema import (
    APPROVED, COMPLETED, PENDING, REJECTED, AuditEntry, FormRecord, Principal, User, pending_label,
)
from .store import FormStore

APPROVE = "approve"
REJECT = "reject"
ACTIONS = (APPROVE, REJECT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def approver_roles(form_types: Dict[str, FormType]) -> List[str]:
    """Every role that appears in some stage sequence."""
    roles = []
    for form_type in form_types.values():
        roles.extend(s for s in form_type.stages if s not in roles)
    return roles


def record_stages(record: FormRecord) -> List[str]:
    """Stage sequence snapshotted on the record at submission (dict order is stage order)."""
    return list(record.stage_statuses.keys())


@dataclass
class WorkflowResult:
    form: FormRecord
    notification: str  # queued | skipped | disabled


class WorkflowEngine:
    """Creates form records and applies approve/reject decisions to them."""

    def __init__(self, store: FormStore, directory: RoleDirectory, dispatcher: NotificationDispatcher,
                 form_types: Dict[str, FormType] = None, gate: AuthorizationGate = None,
                 require_rejection_reason: bool = False, clock: Callable[[], datetime] = None):
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.form_types = form_types or build_form_types()
        self.gate = gate or AuthorizationGate(approver_roles(self.form_types))
        self.require_rejection_reason = require_rejection_reason
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, form_type: str, principal: Principal, payload: Dict[str, Any]) -> WorkflowResult:
        """Create a record waiting on the first stage and notify that stage's holders."""
        self.gate.check(principal, authz.SUBMIT)
        definition = self._form_type(form_type)
        clean_payload = definition.validate_payload(payload)

        now = self.clock()
        first_stage = definition.stages[0]
        record = FormRecord(
            id=str(uuid.uuid4()),
            form_type=definition.name,
            submitted_by=principal.username,
            payload=clean_payload,
            status=pending_label(first_stage),
            current_approver=first_stage,
            stage_statuses={stage: PENDING for stage in definition.stages},
            created_at=now,
            updated_at=now,
        )
        record = self.store.create(record)

        logger.log_form_submitted(record.id, record.form_type, record.submitted_by, first_stage)
        audit_event("form.submitted", {"form_id": record.id, "form_type": record.form_type},
                    payload=clean_payload)

        disposition = self._notify_role(first_stage, SUBMITTED, record, submitted_by=principal.username)
        return WorkflowResult(form=record, notification=disposition)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def decide(self, form_id: str, principal: Principal, action: str, reason: Optional[str] = None) -> WorkflowResult:
        """Approve or reject the record's current stage on behalf of `principal`."""
        action = self._validate_action(action)
        reason = reason.strip() if reason and reason.strip() else None
        if action == REJECT and self.require_rejection_reason and not reason:
            raise WorkflowValidationError("A reason is required to reject a form",
                                          [{"field": "reason", "message": "required when action is reject"}])

        form = self.store.get(form_id)
        if form.is_terminal:
            logger.log_decision_conflict(form_id, form.current_approver, "already finalized")
            raise ConflictError(f"Form {form_id} is already {form.status}",
                                {"status": form.status})

        stage_status = form.stage_statuses.get(principal.role) if principal else None
        if stage_status is not None and stage_status != PENDING:
            # Someone holding this role already decided its stage
            logger.log_decision_conflict(form_id, principal.role, "stage already decided")
            raise ConflictError(f"Stage '{principal.role}' of form {form_id} has already been decided",
                                {"stage": principal.role, "current_approver": form.current_approver})

        acting_role = self.gate.authorize_decision(principal, form)

        def apply(record: FormRecord):
            stages = record_stages(record)
            index = stages.index(acting_role)
            now = self.clock()

            if action == APPROVE:
                record.stage_statuses[acting_role] = APPROVED
                if index < len(stages) - 1:
                    next_stage = stages[index + 1]
                    record.current_approver = next_stage
                    record.status = pending_label(next_stage)
                else:
                    record.current_approver = COMPLETED
                    record.status = APPROVED
            else:
                record.stage_statuses[acting_role] = REJECTED
                record.current_approver = COMPLETED
                record.status = REJECTED
                record.rejection_reason = reason

            record.audit_trail.append(AuditEntry(
                role=acting_role,
                action=APPROVED if action == APPROVE else REJECTED,
                performed_by=principal.username,
                timestamp=now,
                reason=reason,
            ))
            record.updated_at = now

        try:
            updated = self.store.compare_and_update(form_id, acting_role, apply)
        except ConflictError as e:
            logger.log_decision_conflict(form_id, acting_role, e.message)
            raise

        logger.log_decision(updated.id, acting_role, updated.audit_trail[-1].action,
                            principal.username, updated.status, reason)

        if updated.current_approver != COMPLETED:
            disposition = self._notify_role(updated.current_approver, ADVANCED, updated,
                                            performed_by=principal.username)
            # The submitter hears about progress; the disposition stays with the next approver
            self._notify_submitter(PROGRESS, updated, performed_by=principal.username)
        else:
            kind = NOTIFY_APPROVED if updated.status == APPROVED else NOTIFY_REJECTED
            disposition = self._notify_submitter(kind, updated, performed_by=principal.username, reason=reason)

        return WorkflowResult(form=updated, notification=disposition)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_form(self, form_id: str, principal: Principal) -> FormRecord:
        form = self.store.get(form_id)
        self.gate.authorize_view(principal, form, record_stages(form))
        return form

    def list_forms(self, principal: Principal) -> List[FormRecord]:
        """Administrators see every form, everyone else only their own."""
        if principal is not None and principal.is_admin:
            self.gate.check(principal, authz.LIST_ALL)
            return self.store.list_all()
        self.gate.check(principal, authz.LIST_OWN)
        return self.store.list_by_owner(principal.username)

    def list_pending(self, principal: Principal) -> List[FormRecord]:
        """Non-terminal forms waiting on the caller's role."""
        self.gate.check(principal, authz.LIST_PENDING)
        return self.store.list_pending_for(principal.role)

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------
    def assign_role(self, principal: Principal, username: str, role: str, email: str = None) -> Tuple[User, bool]:
        """Grant `role` to `username` (administrators only). Returns (user, created)."""
        self.gate.check(principal, authz.ASSIGN_ROLE)
        user, created = self.directory.assign_role(username, role, email)
        logger.log_role_assignment(user.username, user.role, principal.username, created)
        return user, created

    def list_users(self, principal: Principal) -> List[User]:
        self.gate.check(principal, authz.LIST_USERS)
        return self.directory.list_users()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _form_type(self, name: str) -> FormType:
        definition = self.form_types.get((name or "").lower())
        if definition is None:
            raise WorkflowValidationError(
                f"Unknown form type: {name}",
                [{"field": "form_type", "message": f"must be one of: {sorted(self.form_types)}"}]
            )
        return definition

    @staticmethod
    def _validate_action(action: str) -> str:
        normalized = (action or "").strip().lower()
        if normalized not in ACTIONS:
            raise WorkflowValidationError(
                'Invalid action. Use "approve" or "reject".',
                [{"field": "action", "message": f"must be one of: {list(ACTIONS)}"}]
            )
        return normalized

    def _context(self, record: FormRecord, **extra) -> Dict[str, Any]:
        definition = self.form_types.get(record.form_type)
        context = {
            "form_id": record.id,
            "form_type": record.form_type,
            "title": definition.title(record.payload) if definition else record.form_type,
            "status": record.status,
            "submitted_by": record.submitted_by,
        }
        context.update({k: v for k, v in extra.items() if v is not None})
        return context

    def _notify_role(self, role: str, event_kind: str, record: FormRecord, **extra) -> str:
        try:
            holders = [u for u in self.directory.resolve(role) if u.email]
        except WorkflowError as e:
            # The transition is committed; a directory outage only costs the email
            return self.dispatcher.record_skipped(event_kind, record.id, f"role directory error: {e.message}")

        if not holders:
            return self.dispatcher.record_skipped(event_kind, record.id, f"no holder with an email for role '{role}'")

        dispositions = [
            self.dispatcher.dispatch(Notification(
                address=user.email,
                event_kind=event_kind,
                form_id=record.id,
                context=self._context(record, recipient_name=user.username, **extra),
            ))
            for user in holders
        ]
        return QUEUED if QUEUED in dispositions else dispositions[0]

    def _notify_submitter(self, event_kind: str, record: FormRecord, **extra) -> str:
        try:
            user = self.directory.lookup(record.submitted_by)
        except WorkflowError as e:
            return self.dispatcher.record_skipped(event_kind, record.id, f"role directory error: {e.message}")

        if user is None or not user.email:
            return self.dispatcher.record_skipped(event_kind, record.id,
                                                  f"no email on file for submitter '{record.submitted_by}'")

        return self.dispatcher.dispatch(Notification(
            address=user.email,
            event_kind=event_kind,
            form_id=record.id,
            context=self._context(record, recipient_name=user.username, **extra),
        ))


def build_engine(db_path: str = None, notifier=None) -> WorkflowEngine:
    """Wire an engine from configuration."""
    form_types = build_form_types()
    return WorkflowEngine(
        store=config.get_form_store(db_path),
        directory=config.get_role_directory(db_path),
        dispatcher=NotificationDispatcher(notifier or build_notifier(), enabled=config.NOTIFICATIONS_ENABLED),
        form_types=form_types,
        gate=AuthorizationGate(approver_roles(form_types), admin_override=config.ADMIN_OVERRIDE_ENABLED),
        require_rejection_reason=config.REQUIRE_REJECTION_REASON,
    )
