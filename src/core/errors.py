"""
Error taxonomy for the approval workflow.
The HTTP layer maps each class to a status code; the core only raises them.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    error_type = "WORKFLOW_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(WorkflowError):
    """Unknown form id."""

    error_type = "NOT_FOUND"
    status_code = 404


class ForbiddenError(WorkflowError):
    """Caller's role is not allowed to perform the operation."""

    error_type = "FORBIDDEN"
    status_code = 403


class ConflictError(WorkflowError):
    """Record already terminal, or its stage changed under the caller."""

    error_type = "CONFLICT"
    status_code = 409


class WorkflowValidationError(WorkflowError):
    """Malformed action or payload. Carries field-level errors."""

    error_type = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class DependencyFailureError(WorkflowError):
    """The store (or another required collaborator) is unavailable."""

    error_type = "DEPENDENCY_FAILURE"
    status_code = 503
