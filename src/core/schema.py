"""
Record types shared by the store, the role directory and the workflow engine.
"""

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

# Per-stage sub-status values
PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"

# Terminal sentinel for current_approver
COMPLETED = "completed"

TERMINAL_STATUSES = (APPROVED, REJECTED)


def pending_label(stage: str) -> str:
    """Status label for a form waiting on `stage`, e.g. 'Pending Finance'."""
    return f"Pending {stage.capitalize()}"


@dataclass
class AuditEntry:
    role: str
    action: str  # Approved | Rejected
    performed_by: str
    timestamp: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'AuditEntry':
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)


@dataclass
class FormRecord:
    id: str
    form_type: str
    submitted_by: str
    payload: Dict[str, Any]
    status: str
    current_approver: str
    stage_statuses: Dict[str, str]
    created_at: datetime
    updated_at: datetime
    audit_trail: List[AuditEntry] = field(default_factory=list)
    rejection_reason: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.current_approver == COMPLETED

    def copy(self) -> 'FormRecord':
        """Deep copy, so callers never share mutable state with a store."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage and responses."""
        return {
            'id': self.id,
            'form_type': self.form_type,
            'submitted_by': self.submitted_by,
            'payload': self.payload,
            'status': self.status,
            'current_approver': self.current_approver,
            'stage_statuses': dict(self.stage_statuses),
            'audit_trail': [entry.to_dict() for entry in self.audit_trail],
            'rejection_reason': self.rejection_reason,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'FormRecord':
        """Create from dictionary (for loading from storage)."""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['audit_trail'] = [AuditEntry.from_dict(e) for e in data.get('audit_trail', [])]
        return cls(**data)


@dataclass
class User:
    username: str
    email: Optional[str]
    role: str
    updated_at: Optional[datetime] = None


@dataclass
class Principal:
    """Authenticated caller as supplied by the authenticator."""
    principal_id: str
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "administrator"
