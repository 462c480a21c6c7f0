"""
Shared fixtures for the approval workflow tests.
"""

import pytest

from helpers import CERTIFICATION_STAGES, COC_STAGES, RecordingNotifier
from src.core.forms import build_form_types
from src.core.notify import NotificationDispatcher
from src.core.roles import InMemoryRoleDirectory, SQLiteRoleDirectory
from src.core.store import InMemoryFormStore, SQLiteFormStore
from src.core.workflow import WorkflowEngine

DEFAULT_USERS = [
    ("alice", "user", "alice@example.com"),
    ("fin1", "finance", "fin1@example.com"),
    ("mgr1", "manager", "mgr1@example.com"),
    ("vp1", "vp", "vp1@example.com"),
    ("admin1", "administrator", "admin1@example.com"),
]


@pytest.fixture
def form_types():
    return build_form_types({"coc": COC_STAGES, "certification": CERTIFICATION_STAGES})


@pytest.fixture(params=["memory", "sqlite"])
def store_kind(request):
    return request.param


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "forms.db")


@pytest.fixture
def store(store_kind, db_path):
    if store_kind == "memory":
        return InMemoryFormStore()
    return SQLiteFormStore(db_path)


@pytest.fixture
def directory(store_kind, db_path):
    if store_kind == "memory":
        directory = InMemoryRoleDirectory()
    else:
        directory = SQLiteRoleDirectory(db_path)
    for username, role, email in DEFAULT_USERS:
        directory.assign_role(username, role, email)
    return directory


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    dispatcher = NotificationDispatcher(notifier)
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def engine(store, directory, dispatcher, form_types):
    return WorkflowEngine(store=store, directory=directory, dispatcher=dispatcher, form_types=form_types)
