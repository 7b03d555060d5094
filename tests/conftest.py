"""
TaskHub Test Suite — Shared fixtures and configuration.

Unit tests run against a temporary SQLite database and an in-memory
session store; nothing here needs Redis or PostgreSQL.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import fnmatch
import io
import json
from typing import Any, Dict, Optional, Set

import pytest

from taskhub.engine.config import TaskHubConfig

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"
PASSWORD = "Secret123"


class FakeSessionStore:
    """
    In-memory stand-in for the RedisCache session store.

    Implements the subset of the RedisCache surface the services use.
    """

    def __init__(self, prefix: str = "taskhub:session:"):
        self.prefix = prefix
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.published = []

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.values.get(key)
        return json.loads(raw) if raw is not None else None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.values[key] = json.dumps(value, default=str)
        return True

    def delete(self, key: str) -> bool:
        removed = self.values.pop(key, None) is not None
        removed = self.sets.pop(key, None) is not None or removed
        return removed

    def exists(self, key: str) -> bool:
        return key in self.values or key in self.sets

    def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    def srem(self, key: str, *members: str) -> int:
        bucket = self.sets.get(key, set())
        before = len(bucket)
        bucket.difference_update(members)
        return before - len(bucket)

    def smembers(self, key: str) -> Set[str]:
        return set(self.sets.get(key, set()))

    def scard(self, key: str) -> int:
        return len(self.sets.get(key, set()))

    def keys(self, pattern: str = "*"):
        return [k for k in self.values if fnmatch.fnmatch(k, pattern)]

    def ping(self) -> bool:
        return True

    def publish(self, channel: str, message: Any) -> int:
        self.published.append((channel, message))
        return 0

    def pubsub(self):
        return None

    def channel_name(self, channel: str) -> str:
        return f"taskhub:{channel}"


# ---------------------------------------------------------------------------
# Config / database
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset global singletons between tests."""
    import taskhub.engine.config as cfg_mod
    import taskhub.engine.logging as log_mod

    cfg_mod._config = None
    yield
    cfg_mod._config = None
    if log_mod._global_queue is not None:
        log_mod.shutdown_logging()


@pytest.fixture
def config(tmp_path) -> TaskHubConfig:
    return TaskHubConfig(
        environment="dev",
        database={"url": f"sqlite:///{tmp_path / 'taskhub.db'}"},
        security={"bcrypt_rounds": 4, "max_concurrent_sessions": 3},
        logging={"directory": str(tmp_path / "logs")},
        documents={
            "upload_dir": str(tmp_path / "uploads"),
            "staging_dir": str(tmp_path / "staging"),
            "max_file_size_mb": 1,
        },
        realtime={"redis_relay": False},
    )


@pytest.fixture
def session_factory(config):
    from taskhub.db.session import close_db, init_db

    factory = init_db(config.database.url, create_tables=True)
    yield factory
    close_db()


@pytest.fixture
def session_store():
    return FakeSessionStore()


@pytest.fixture
def container(config, session_factory, session_store):
    from taskhub.api.app import build_container

    return build_container(config, session_factory=session_factory, session_store=session_store)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

def make_user(factory, email: str, role: str = "user", first_name: str = "Test", last_name: str = "User"):
    """Insert a user row directly and return its Actor."""
    from taskhub.db.models import User
    from taskhub.db.session import session_scope
    from taskhub.engine.context import Actor
    from taskhub.engine.security import hash_password

    with session_scope(factory) as session:
        user = User(
            email=email,
            password_hash=hash_password(PASSWORD, rounds=4),
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=True,
        )
        session.add(user)
        session.flush()
        return Actor.from_user(user)


def make_task(factory, created_by: str, assigned_to: Optional[str] = None, title: str = "Task", **extra):
    """Insert a task row directly and return its id."""
    from taskhub.db.models import Task
    from taskhub.db.session import session_scope

    with session_scope(factory) as session:
        task = Task(title=title, created_by=created_by, assigned_to=assigned_to, **extra)
        session.add(task)
        session.flush()
        return task.id


def pdf_upload(name: str = "doc.pdf", data: bytes = PDF_BYTES, content_type: str = "application/pdf"):
    from taskhub.documents.service import Upload

    return Upload(filename=name, content_type=content_type, stream=io.BytesIO(data))


@pytest.fixture
def admin(session_factory):
    return make_user(session_factory, "admin@example.com", role="admin", first_name="Ada", last_name="Admin")


@pytest.fixture
def u1(session_factory):
    return make_user(session_factory, "u1@example.com", first_name="Una", last_name="One")


@pytest.fixture
def u2(session_factory):
    return make_user(session_factory, "u2@example.com", first_name="Tom", last_name="Two")


@pytest.fixture
def u3(session_factory):
    return make_user(session_factory, "u3@example.com", first_name="Tia", last_name="Three")


@pytest.fixture
def task_id(session_factory, u1, u2):
    """Task created by u1 and assigned to u2."""
    return make_task(session_factory, created_by=u1.id, assigned_to=u2.id, title="Quarterly report")


@pytest.fixture
def user_factory(session_factory):
    return lambda email, **kw: make_user(session_factory, email, **kw)


@pytest.fixture
def task_factory(session_factory):
    return lambda created_by, **kw: make_task(session_factory, created_by, **kw)


@pytest.fixture
def pdf():
    return pdf_upload
