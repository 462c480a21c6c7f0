"""
Service configuration - read once from the environment (and an optional .env file) at process start.
"""

import os
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/forms.db")
STORE_PROVIDER = os.getenv("STORE_PROVIDER", "sqlite")  # sqlite|memory

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Token verification (issuance happens upstream)
JWT_SECRET = os.getenv("JWT_SECRET", "dev-only-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# Approval stage sequences per form type, comma separated role tokens
COC_STAGES = os.getenv("COC_STAGES", "finance,manager,vp")
CERTIFICATION_STAGES = os.getenv("CERTIFICATION_STAGES", "manager,finance,vp,administrator")

# Workflow policy
REQUIRE_REJECTION_REASON = os.getenv("REQUIRE_REJECTION_REASON", "false").lower() == "true"
ADMIN_OVERRIDE_ENABLED = os.getenv("ADMIN_OVERRIDE_ENABLED", "false").lower() == "true"

# Notifications
NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_SECURE = os.getenv("SMTP_SECURE", "false").lower() == "true"  # true for 465
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@localhost")
APP_NAME = os.getenv("APP_NAME", "Certification App")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

# Version string
VERSION = "1.0.0"

ROLES = ["user", "manager", "finance", "vp", "administrator"]
ADMIN_ROLE = "administrator"


def parse_stages(raw: str) -> List[str]:
    """Split a comma separated stage list into lower-case role tokens."""
    return [token.strip().lower() for token in raw.split(",") if token.strip()]


def get_stage_sequences() -> Dict[str, List[str]]:
    """Get the configured approval stage sequence for every form type."""
    return {
        "coc": parse_stages(COC_STAGES),
        "certification": parse_stages(CERTIFICATION_STAGES),
    }


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def smtp_configured() -> bool:
    """Check if enough SMTP settings exist to send real mail."""
    return bool(SMTP_HOST)


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate workflow configuration and return any issues."""
    issues = []

    if STORE_PROVIDER not in ["sqlite", "memory"]:
        issues.append(f"Invalid STORE_PROVIDER: {STORE_PROVIDER}")

    for form_type, stages in get_stage_sequences().items():
        if not stages:
            issues.append(f"Empty stage sequence for form type '{form_type}'")
        unknown = [s for s in stages if s not in ROLES or s == "user"]
        if unknown:
            issues.append(f"Unknown approver roles for '{form_type}': {unknown}")
        if len(set(stages)) != len(stages):
            issues.append(f"Duplicate stages for '{form_type}': {stages}")

    if SMTP_PORT < 1:
        issues.append("SMTP_PORT must be >= 1")

    return issues


def get_form_store(db_path: str = None):
    """Get configured form store implementation."""
    if STORE_PROVIDER == "memory":
        from .store import InMemoryFormStore
        return InMemoryFormStore()

    from .store import SQLiteFormStore
    path = db_path or DB_PATH
    ensure_db_directory(path)
    return SQLiteFormStore(path)


def get_role_directory(db_path: str = None):
    """Get configured role directory implementation; shares the store's database."""
    if STORE_PROVIDER == "memory":
        from .roles import InMemoryRoleDirectory
        return InMemoryRoleDirectory()

    from .roles import SQLiteRoleDirectory
    path = db_path or DB_PATH
    ensure_db_directory(path)
    return SQLiteRoleDirectory(path)
