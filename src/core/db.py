"""
SQLite connection management and schema for form records, audit trail and role holders.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import DB_PATH, ensure_db_directory

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT_SEC = 10.0

REQUIRED_TABLES = ['forms', 'audit_trail', 'users']


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=BUSY_TIMEOUT_SEC)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS forms (
                id TEXT PRIMARY KEY,
                form_type TEXT NOT NULL,
                submitted_by TEXT NOT NULL,
                payload TEXT NOT NULL,            -- JSON, opaque to the engine
                status TEXT NOT NULL,
                current_approver TEXT NOT NULL,   -- stage role or 'completed'
                stage_statuses TEXT NOT NULL,     -- JSON {role: Pending|Approved|Rejected}
                rejection_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        # Append-only; rows are only ever inserted
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_trail (
                form_id TEXT NOT NULL REFERENCES forms(id),
                seq INTEGER NOT NULL,
                role TEXT NOT NULL,
                action TEXT NOT NULL,
                performed_by TEXT NOT NULL,
                ts TEXT NOT NULL,
                reason TEXT,
                PRIMARY KEY (form_id, seq)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                username TEXT PRIMARY KEY,
                email TEXT,
                role TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Indexes for the owner and "pending for me" listings
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_forms_owner ON forms(submitted_by, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_forms_approver ON forms(current_approver, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)')

        conn.commit()


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
