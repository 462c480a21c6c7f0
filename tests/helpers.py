"""
Test helpers: principals, sample payloads and a recording notifier.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from src.core.notify import Notifier
from src.core.schema import APPROVED, PENDING, AuditEntry, FormRecord, Principal

COC_STAGES = ["finance", "manager", "vp"]
CERTIFICATION_STAGES = ["manager", "finance", "vp", "administrator"]


class RecordingNotifier(Notifier):
    """Collects sends instead of delivering them."""

    def __init__(self, fail_for: List[str] = None):
        self.sent = []
        self.fail_for = set(fail_for or [])

    async def send(self, address: str, event_kind: str, context: Dict[str, Any]) -> bool:
        if address in self.fail_for:
            raise ConnectionError(f"mail server refused {address}")
        self.sent.append((address, event_kind, context))
        return True


def principal(username: str, role: str) -> Principal:
    return Principal(principal_id=f"id-{username}", username=username, role=role)


def coc_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "course_name": "Workplace Safety",
        "completion_date": "2024-03-01",
        "score": 92,
        "comments": "Completed with distinction",
    }
    payload.update(overrides)
    return payload


def certification_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "manager": "mgr1",
        "vendorName": "Acme Supplies",
        "contractName": "Office Fit-out",
        "contractPeriod": 12,
        "contractNumber": "C-2024-001",
        "invoiceNumber": "INV-889",
        "invoicePeriodFrom": "2024-01-01",
        "invoicePeriodTo": "2024-01-31",
        "claimAmountNumber": 15000.5,
        "claimAmountText": "Fifteen thousand and fifty cents",
        "pages": 3,
        "departmentName": "Facilities",
        "adminSignature": "J. Admin",
        "projectManager": "P. Manager",
        "vpName": "V. President",
        "ssvpName": "S. Vice",
        "descriptions": [
            {"description": f"Line {i}", "quantityRequested": 10, "quantitySupplied": 10,
             "totalBeforeVAT": 100, "totalAfterVAT": 115}
            for i in range(1, 5)
        ],
    }
    payload.update(overrides)
    return payload




BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def make_record(form_id="form-1", submitted_by="alice", current_approver="finance", minutes=0) -> FormRecord:
    created = BASE_TIME + timedelta(minutes=minutes)
    return FormRecord(
        id=form_id,
        form_type="coc",
        submitted_by=submitted_by,
        payload={"course_name": "Safety", "score": 90},
        status=f"Pending {current_approver.capitalize()}",
        current_approver=current_approver,
        stage_statuses={"finance": PENDING, "manager": PENDING, "vp": PENDING},
        created_at=created,
        updated_at=created,
    )


def advance_to(stage):
    """Store mutator that approves the current stage and moves to `stage`."""
    def mutator(record):
        previous = record.current_approver
        record.stage_statuses[previous] = APPROVED
        record.current_approver = stage
        record.audit_trail.append(AuditEntry(role=previous, action=APPROVED, performed_by="tester",
                                             timestamp=BASE_TIME))
    return mutator
