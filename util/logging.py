"""
Structured logging for the approval service.
Workflow, authorization and notification events share one line format so they can be audited.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['password', 'secret', 'token', 'signature', 'adminSignature', 'payload']


class StructuredLogger:
    """Structured logger for form workflow operations."""

    def __init__(self, name: str = "form_approvals"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("denied", "skipped", "conflict"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_form_submitted(self, form_id: str, form_type: str, submitted_by: str, first_stage: str):
        """Log creation of a form record."""
        self.log_operation("form.submitted", "pending", {
            "form_id": form_id,
            "form_type": form_type,
            "submitted_by": submitted_by,
            "current_approver": first_stage
        })

    def log_decision(self, form_id: str, role: str, action: str, performed_by: str,
                     new_status: str, reason: str = None):
        """Log an accepted approve/reject call."""
        details = {
            "form_id": form_id,
            "role": role,
            "action": action,
            "performed_by": performed_by,
            "new_status": new_status
        }
        if reason:
            details["reason"] = reason[:100]
        self.log_operation("form.decision", action.lower(), details)

    def log_decision_conflict(self, form_id: str, expected_stage: str, reason: str):
        """Log a decide call that lost a race or hit a terminal record."""
        self.log_operation("form.decision", "conflict", {
            "form_id": form_id,
            "expected_stage": expected_stage,
            "reason": reason
        })

    def log_authorization_denied(self, username: str, role: str, operation: str, form_id: str = None):
        """Log a denied authorization check."""
        details = {"username": username, "role": role, "operation": operation}
        if form_id:
            details["form_id"] = form_id
        self.log_operation("authz.check", "denied", details)

    def log_notification(self, event_kind: str, form_id: str, recipient: str = None,
                         status: str = "queued", error: str = None):
        """Log notification enqueue, delivery, skip or failure."""
        details = {"event_kind": event_kind, "form_id": form_id}
        if recipient:
            details["recipient"] = recipient
        if error:
            details["error"] = str(error)[:100]
        self.log_operation("notification", status, details)

    def log_role_assignment(self, username: str, role: str, assigned_by: str, created: bool):
        """Log an administrator role assignment."""
        self.log_operation("roles.assign", "created" if created else "updated", {
            "username": username,
            "role": role,
            "assigned_by": assigned_by
        })

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with payload redaction."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
