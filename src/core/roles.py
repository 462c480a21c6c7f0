"""
Role directory - resolves approver role tokens to the people who currently hold them.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .config import ROLES
from .db import get_db, init_db
from .errors import DependencyFailureError, WorkflowValidationError
from .schema import User


def validate_assignment(username: str, role: str):
    """Field-level checks shared by every directory implementation."""
    errors = []
    if not username or not username.strip():
        errors.append({"field": "username", "message": "username is required"})
    if role not in ROLES:
        errors.append({"field": "role", "message": f"role must be one of: {ROLES}"})
    if errors:
        raise WorkflowValidationError("Invalid role assignment", errors)


class RoleDirectory(ABC):
    """Abstract interface for role holder lookup and administration."""

    @abstractmethod
    def resolve(self, role: str) -> List[User]:
        """Holders of `role`. Empty when nobody holds it."""
        pass

    @abstractmethod
    def lookup(self, username: str) -> Optional[User]:
        """User record for `username`, if known."""
        pass

    @abstractmethod
    def assign_role(self, username: str, role: str, email: str = None) -> Tuple[User, bool]:
        """Create or update a user's role. Returns (user, created)."""
        pass

    @abstractmethod
    def list_users(self) -> List[User]:
        """Every known user, ordered by username."""
        pass


class InMemoryRoleDirectory(RoleDirectory):
    """Directory kept in a dict, for tests and single-process deployments."""

    def __init__(self, users: List[User] = None):
        self._users: Dict[str, User] = {u.username: u for u in (users or [])}
        self._lock = threading.Lock()

    def resolve(self, role: str) -> List[User]:
        with self._lock:
            return sorted((u for u in self._users.values() if u.role == role), key=lambda u: u.username)

    def lookup(self, username: str) -> Optional[User]:
        with self._lock:
            return self._users.get(username)

    def assign_role(self, username: str, role: str, email: str = None) -> Tuple[User, bool]:
        validate_assignment(username, role)
        with self._lock:
            existing = self._users.get(username)
            user = User(
                username=username,
                email=email or (existing.email if existing else None),
                role=role,
                updated_at=datetime.now(timezone.utc)
            )
            self._users[username] = user
            return user, existing is None

    def list_users(self) -> List[User]:
        with self._lock:
            return sorted(self._users.values(), key=lambda u: u.username)


class SQLiteRoleDirectory(RoleDirectory):
    """Directory backed by the `users` table."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def resolve(self, role: str) -> List[User]:
        return self._query("SELECT username, email, role, updated_at FROM users WHERE role = ? ORDER BY username",
                           (role,))

    def lookup(self, username: str) -> Optional[User]:
        users = self._query("SELECT username, email, role, updated_at FROM users WHERE username = ?", (username,))
        return users[0] if users else None

    def assign_role(self, username: str, role: str, email: str = None) -> Tuple[User, bool]:
        validate_assignment(username, role)
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT email FROM users WHERE username = ?", (username,))
                row = cursor.fetchone()
                if row:
                    cursor.execute(
                        "UPDATE users SET role = ?, email = COALESCE(?, email), updated_at = CURRENT_TIMESTAMP "
                        "WHERE username = ?",
                        (role, email, username)
                    )
                else:
                    cursor.execute(
                        "INSERT INTO users (username, email, role) VALUES (?, ?, ?)",
                        (username, email, role)
                    )
                conn.commit()
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Role directory unavailable: {e}")

        return self.lookup(username), row is None

    def list_users(self) -> List[User]:
        return self._query("SELECT username, email, role, updated_at FROM users ORDER BY username", ())

    def _query(self, sql: str, params: tuple) -> List[User]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return [
                    User(username=username, email=email, role=role,
                         updated_at=datetime.fromisoformat(updated_at) if updated_at else None)
                    for username, email, role, updated_at in cursor.fetchall()
                ]
        except sqlite3.Error as e:
            raise DependencyFailureError(f"Role directory unavailable: {e}")
