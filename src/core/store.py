"""
Form record store - durable storage of submitted forms and their workflow state.

The only write path after creation is compare_and_update(), which applies a
mutator to the record if and only if its current approver still equals the
stage the caller observed. Two racing decisions against one record therefore
produce exactly one winner; the loser gets ConflictError.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .db import get_db, init_db
from .errors import ConflictError, DependencyFailureError, NotFoundError, WorkflowError
from .schema import AuditEntry, FormRecord, TERMINAL_STATUSES

Mutator = Callable[[FormRecord], None]


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _check_append_only(before: List[AuditEntry], after: List[AuditEntry]):
    """Raise if a mutator rewrote or removed existing audit entries."""
    if len(after) < len(before) or after[:len(before)] != before:
        raise WorkflowError("Audit trail is append-only")


class FormStore(ABC):
    """Abstract interface for form record storage."""

    @abstractmethod
    def get(self, form_id: str) -> FormRecord:
        """Return the record or raise NotFoundError."""
        pass

    @abstractmethod
    def create(self, record: FormRecord) -> FormRecord:
        """Persist a new record."""
        pass

    @abstractmethod
    def compare_and_update(self, form_id: str, expected_stage: str, mutator: Mutator) -> FormRecord:
        """Atomically apply `mutator` if the record still waits on `expected_stage`."""
        pass

    @abstractmethod
    def list_by_owner(self, username: str) -> List[FormRecord]:
        """Forms submitted by `username`, newest first."""
        pass

    @abstractmethod
    def list_pending_for(self, role: str) -> List[FormRecord]:
        """Non-terminal forms whose current approver is `role`, newest first."""
        pass

    @abstractmethod
    def list_all(self) -> List[FormRecord]:
        """Every form, newest first."""
        pass


class InMemoryFormStore(FormStore):
    """Process-local store; the lock makes compare_and_update atomic."""

    def __init__(self):
        self._records: Dict[str, FormRecord] = {}
        self._lock = threading.Lock()

    def get(self, form_id: str) -> FormRecord:
        with self._lock:
            record = self._records.get(form_id)
            if record is None:
                raise NotFoundError(f"Form {form_id} not found")
            return record.copy()

    def create(self, record: FormRecord) -> FormRecord:
        with self._lock:
            if record.id in self._records:
                raise ConflictError(f"Form {record.id} already exists")
            self._records[record.id] = record.copy()
            return record.copy()

    def compare_and_update(self, form_id: str, expected_stage: str, mutator: Mutator) -> FormRecord:
        with self._lock:
            current = self._records.get(form_id)
            if current is None:
                raise NotFoundError(f"Form {form_id} not found")
            if current.current_approver != expected_stage:
                raise ConflictError(
                    f"Form {form_id} is no longer waiting on '{expected_stage}'",
                    {"current_approver": current.current_approver}
                )

            updated = current.copy()
            mutator(updated)
            _check_append_only(current.audit_trail, updated.audit_trail)
            updated.version = current.version + 1

            self._records[form_id] = updated
            return updated.copy()

    def list_by_owner(self, username: str) -> List[FormRecord]:
        return self._select(lambda r: r.submitted_by == username)

    def list_pending_for(self, role: str) -> List[FormRecord]:
        return self._select(lambda r: r.current_approver == role and r.status not in TERMINAL_STATUSES)

    def list_all(self) -> List[FormRecord]:
        return self._select(lambda r: True)

    def _select(self, predicate) -> List[FormRecord]:
        with self._lock:
            matches = [r.copy() for r in self._records.values() if predicate(r)]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)


class SQLiteFormStore(FormStore):
    """SQLite-backed store. BEGIN IMMEDIATE serializes writers on the same file."""

    FORM_COLUMNS = ("id, form_type, submitted_by, payload, status, current_approver, "
                    "stage_statuses, rejection_reason, created_at, updated_at, version")

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def get(self, form_id: str) -> FormRecord:
        try:
            with get_db(self.db_path) as conn:
                record = self._load(conn, form_id)
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Form store unavailable: {e}")

        if record is None:
            raise NotFoundError(f"Form {form_id} not found")
        return record

    def create(self, record: FormRecord) -> FormRecord:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"INSERT INTO forms ({self.FORM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._form_row(record)
                )
                self._insert_audit(cursor, record.id, record.audit_trail, start=0)
                conn.commit()
        except sqlite3.IntegrityError:
            raise ConflictError(f"Form {record.id} already exists")
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Form store unavailable: {e}")

        return record.copy()

    def compare_and_update(self, form_id: str, expected_stage: str, mutator: Mutator) -> FormRecord:
        try:
            with get_db(self.db_path) as conn:
                # Take the write lock before reading so the check and the write see the same row
                conn.execute("BEGIN IMMEDIATE")

                current = self._load(conn, form_id)
                if current is None:
                    conn.rollback()
                    raise NotFoundError(f"Form {form_id} not found")
                if current.current_approver != expected_stage:
                    conn.rollback()
                    raise ConflictError(
                        f"Form {form_id} is no longer waiting on '{expected_stage}'",
                        {"current_approver": current.current_approver}
                    )

                updated = current.copy()
                mutator(updated)
                _check_append_only(current.audit_trail, updated.audit_trail)
                updated.version = current.version + 1

                cursor = conn.cursor()
                cursor.execute(
                    '''UPDATE forms
                       SET payload = ?, status = ?, current_approver = ?, stage_statuses = ?,
                           rejection_reason = ?, updated_at = ?, version = ?
                       WHERE id = ? AND version = ?''',
                    (json.dumps(updated.payload), updated.status, updated.current_approver,
                     json.dumps(updated.stage_statuses), updated.rejection_reason,
                     updated.updated_at.isoformat(), updated.version, form_id, current.version)
                )
                if cursor.rowcount != 1:
                    conn.rollback()
                    raise ConflictError(f"Form {form_id} was modified concurrently")

                new_entries = updated.audit_trail[len(current.audit_trail):]
                self._insert_audit(cursor, form_id, new_entries, start=len(current.audit_trail))
                conn.commit()
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Form store unavailable: {e}")

        return updated

    def list_by_owner(self, username: str) -> List[FormRecord]:
        return self._query("WHERE submitted_by = ?", (username,))

    def list_pending_for(self, role: str) -> List[FormRecord]:
        return self._query(
            "WHERE current_approver = ? AND status NOT IN (?, ?)",
            (role,) + tuple(TERMINAL_STATUSES)
        )

    def list_all(self) -> List[FormRecord]:
        return self._query("", ())

    def _query(self, where: str, params: tuple) -> List[FormRecord]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {self.FORM_COLUMNS} FROM forms {where} ORDER BY created_at DESC",
                    params
                )
                rows = cursor.fetchall()
                return [self._row_to_record(row, self._load_audit(conn, row[0])) for row in rows]
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Form store unavailable: {e}")

    def _load(self, conn: sqlite3.Connection, form_id: str) -> Optional[FormRecord]:
        cursor = conn.cursor()
        cursor.execute(f"SELECT {self.FORM_COLUMNS} FROM forms WHERE id = ?", (form_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row, self._load_audit(conn, form_id))

    @staticmethod
    def _load_audit(conn: sqlite3.Connection, form_id: str) -> List[AuditEntry]:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT role, action, performed_by, ts, reason FROM audit_trail WHERE form_id = ? ORDER BY seq",
            (form_id,)
        )
        return [
            AuditEntry(role=role, action=action, performed_by=performed_by,
                       timestamp=_parse_ts(ts), reason=reason)
            for role, action, performed_by, ts, reason in cursor.fetchall()
        ]

    @staticmethod
    def _insert_audit(cursor: sqlite3.Cursor, form_id: str, entries: List[AuditEntry], start: int):
        for offset, entry in enumerate(entries):
            cursor.execute(
                "INSERT INTO audit_trail (form_id, seq, role, action, performed_by, ts, reason) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (form_id, start + offset, entry.role, entry.action, entry.performed_by,
                 entry.timestamp.isoformat(), entry.reason)
            )

    @staticmethod
    def _form_row(record: FormRecord) -> tuple:
        return (
            record.id, record.form_type, record.submitted_by, json.dumps(record.payload),
            record.status, record.current_approver, json.dumps(record.stage_statuses),
            record.rejection_reason, record.created_at.isoformat(), record.updated_at.isoformat(),
            record.version
        )

    @staticmethod
    def _row_to_record(row: tuple, audit_trail: List[AuditEntry]) -> FormRecord:
        (form_id, form_type, submitted_by, payload, status, current_approver,
         stage_statuses, rejection_reason, created_at, updated_at, version) = row
        return FormRecord(
            id=form_id,
            form_type=form_type,
            submitted_by=submitted_by,
            payload=json.loads(payload),
            status=status,
            current_approver=current_approver,
            stage_statuses=json.loads(stage_statuses),
            created_at=_parse_ts(created_at),
            updated_at=_parse_ts(updated_at),
            audit_trail=audit_trail,
            rejection_reason=rejection_reason,
            version=version,
        )
