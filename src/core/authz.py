"""
Authorization gate - decides whether a principal may invoke a workflow operation.
Denials raise ForbiddenError and never touch stored state.
"""

from typing import Iterable, Optional

from util.logging import logger

from .config import ADMIN_ROLE
from .errors import ForbiddenError
from .schema import FormRecord, Principal

SUBMIT = "submit"
DECIDE = "decide"
VIEW = "view"
LIST_OWN = "list_own"
LIST_ALL = "list_all"
LIST_PENDING = "list_pending"
ASSIGN_ROLE = "assign_role"
LIST_USERS = "list_users"

ADMIN_ONLY = {LIST_ALL, ASSIGN_ROLE, LIST_USERS}
AUTHENTICATED_ONLY = {SUBMIT, LIST_OWN}


class AuthorizationGate:
    """Maps (principal role, operation) to allow/deny."""

    def __init__(self, approver_roles: Iterable[str], admin_override: bool = False):
        self.approver_roles = set(approver_roles)
        self.admin_override = admin_override

    def check(self, principal: Principal, operation: str):
        """Authorize an operation that is not scoped to a single record."""
        self._require_authenticated(principal, operation)

        if operation in AUTHENTICATED_ONLY:
            return
        if operation in ADMIN_ONLY:
            if principal.role != ADMIN_ROLE:
                self._deny(principal, operation, "Access denied. Administrator only.")
            return
        if operation == LIST_PENDING:
            if principal.role not in self.approver_roles:
                self._deny(principal, operation, "Access denied. Approvers only.")
            return

        raise ValueError(f"Unknown operation: {operation}")

    def authorize_decision(self, principal: Principal, form: FormRecord) -> str:
        """Return the stage role the principal acts as on `form`, or raise ForbiddenError."""
        self._require_authenticated(principal, DECIDE, form.id)

        if principal.role == form.current_approver:
            return form.current_approver
        if self.admin_override and principal.role == ADMIN_ROLE:
            return form.current_approver

        self._deny(principal, DECIDE, "You are not authorized to act on this form at its current stage.",
                   form_id=form.id, current_approver=form.current_approver)

    def authorize_view(self, principal: Principal, form: FormRecord, stages: Iterable[str]):
        """Owner, administrators and the form type's approvers may read a record."""
        self._require_authenticated(principal, VIEW, form.id)

        if principal.username == form.submitted_by or principal.role == ADMIN_ROLE:
            return
        if principal.role in set(stages):
            return

        self._deny(principal, VIEW, "You are not allowed to view this form.", form_id=form.id)

    def _require_authenticated(self, principal: Optional[Principal], operation: str, form_id: str = None):
        if principal is None or not principal.username or not principal.role:
            logger.log_authorization_denied("anonymous", "", operation, form_id)
            raise ForbiddenError("Authentication required")

    @staticmethod
    def _deny(principal: Principal, operation: str, message: str, form_id: str = None, **details):
        logger.log_authorization_denied(principal.username, principal.role, operation, form_id)
        raise ForbiddenError(message, {"operation": operation, "role": principal.role, **details})
