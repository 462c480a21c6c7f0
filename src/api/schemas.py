"""
Request/response models for the form approval API.
"""

from pydantic import BaseModel, field_validator, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.config import ROLES
from ..core.schema import FormRecord, User


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    store_provider: str
    notifications: Dict[str, int]


# Error envelopes shared by every endpoint
class ValidationFieldError(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationErrorResponse(BaseModel):
    error_type: str = "VALIDATION_ERROR"
    message: str
    errors: List[ValidationFieldError]
    timestamp: datetime = None

    def __init__(self, **data):
        super().__init__(timestamp=datetime.now(), **data)


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    timestamp: datetime = None
    details: Optional[Dict[str, Any]] = None

    def __init__(self, **data):
        super().__init__(timestamp=datetime.now(), **data)


# Forms
class DecisionRequest(BaseModel):
    action: str
    reason: Optional[str] = None

    @field_validator('action')
    @classmethod
    def action_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('action cannot be empty')
        return v


class AuditEntryResponse(BaseModel):
    role: str
    action: str
    performed_by: str
    timestamp: datetime
    reason: Optional[str] = None


class FormResponse(BaseModel):
    id: str
    form_type: str
    submitted_by: str
    payload: Dict[str, Any]
    status: str
    current_approver: str
    stage_statuses: Dict[str, str]
    audit_trail: List[AuditEntryResponse]
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: FormRecord) -> 'FormResponse':
        return cls(
            id=record.id,
            form_type=record.form_type,
            submitted_by=record.submitted_by,
            payload=record.payload,
            status=record.status,
            current_approver=record.current_approver,
            stage_statuses=record.stage_statuses,
            audit_trail=[
                AuditEntryResponse(role=e.role, action=e.action, performed_by=e.performed_by,
                                   timestamp=e.timestamp, reason=e.reason)
                for e in record.audit_trail
            ],
            rejection_reason=record.rejection_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SubmitResponse(BaseModel):
    message: str
    form: FormResponse
    notification: str


class DecisionResponse(BaseModel):
    message: str
    form: FormResponse
    notification: str


class FormListResponse(BaseModel):
    forms: List[FormResponse]


# Administration
class AssignRoleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str
    role: str
    email: Optional[str] = None

    @field_validator('username')
    @classmethod
    def username_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('username cannot be empty')
        return v.strip()

    @field_validator('role')
    @classmethod
    def role_must_be_valid(cls, v):
        if v not in ROLES:
            raise ValueError(f'role must be one of: {ROLES}')
        return v


class UserResponse(BaseModel):
    username: str
    email: Optional[str] = None
    role: str
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> 'UserResponse':
        return cls(username=user.username, email=user.email, role=user.role, updated_at=user.updated_at)


class AssignRoleResponse(BaseModel):
    message: str
    user: UserResponse
    created: bool


class UserListResponse(BaseModel):
    users: List[UserResponse]
