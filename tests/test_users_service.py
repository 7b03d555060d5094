"""Unit tests for taskhub.users.service — admin operations and self-service."""

import asyncio

import pytest
from sqlalchemy import select

from taskhub.db.models import Document, Task, User
from taskhub.db.session import session_scope
from taskhub.engine.context import Role
from taskhub.engine.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
)
from taskhub.engine.security import verify_password
from taskhub.schemas import UserQuery

PASSWORD = "Secret123"


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


class TestList:

    def test_admin_only(self, container, u1):
        with pytest.raises(ForbiddenError, match="Admin access required"):
            container.users.list(u1, UserQuery())

    def test_filters_and_pagination(self, container, admin, u1, u2, u3):
        page = container.users.list(admin, UserQuery(role=Role.USER, sort_by="first_name", sort_order="ASC", limit=2))
        assert [u.first_name for u in page.users] == ["Tia", "Tom"]
        assert page.pagination.total_items == 3
        assert page.pagination.total_pages == 2

    def test_search(self, container, admin, u1, u2):
        page = container.users.list(admin, UserQuery(search="una"))
        assert [u.id for u in page.users] == [u1.id]

    def test_inactive_filter(self, container, admin, u1, u2):
        container.users.deactivate(admin, u2.id)
        page = container.users.list(admin, UserQuery(is_active=False))
        assert [u.id for u in page.users] == [u2.id]


class TestGet:

    def test_self_sees_task_summaries(self, container, task_id, u1, u2):
        detail = container.users.get(u2, u2.id)
        assert [t.id for t in detail.assigned_tasks] == [task_id]
        assert detail.created_tasks == []
        assert "passwordHash" not in detail.dump()

    def test_other_user_forbidden(self, container, u1, u2):
        with pytest.raises(ForbiddenError):
            container.users.get(u1, u2.id)

    def test_missing(self, container, admin):
        with pytest.raises(NotFoundError):
            container.users.get(admin, "nope")


class TestUpdate:

    def test_user_cannot_grant_self_admin(self, container, u1):
        out = container.users.update(u1, u1.id, {"role": "admin", "is_active": False, "first_name": " Uma "})
        assert out.first_name == "Uma"
        assert out.role == "user"
        assert out.is_active is True

    def test_user_cannot_update_others(self, container, u1, u2):
        with pytest.raises(ForbiddenError, match="Access denied"):
            container.users.update(u1, u2.id, {"first_name": "X"})

    def test_email_normalised_and_unique(self, container, u1, u2):
        out = container.users.update(u1, u1.id, {"email": " Una.New@Example.COM "})
        assert out.email == "una.new@example.com"
        with pytest.raises(ValidationFailedError, match="Email already in use"):
            container.users.update(u1, u1.id, {"email": "u2@example.com"})

    def test_admin_role_change_reaches_open_sockets(self, container, admin, u1, loop):
        sub = container.hub.register(u1, loop=loop)
        out = container.users.update(admin, u1.id, {"role": "admin"})
        assert out.role == "admin"
        assert sub.actor.role is Role.ADMIN

    def test_role_change_applies_to_existing_session(self, container, admin, u1):
        token = container.auth.authenticate("u1@example.com", PASSWORD)["token"]
        container.users.update(admin, u1.id, {"role": "admin"})
        assert container.auth.resolve_actor(token).role is Role.ADMIN

    def test_admin_cannot_deactivate_self_through_update(self, container, admin):
        with pytest.raises(ForbiddenError, match="Cannot deactivate your own account"):
            container.users.update(admin, admin.id, {"is_active": False})

    def test_admin_may_demote_self(self, container, admin):
        assert container.users.update(admin, admin.id, {"role": "user"}).role == "user"


class TestActivation:

    def test_cannot_deactivate_self(self, container, admin):
        with pytest.raises(ForbiddenError, match="Cannot deactivate your own account"):
            container.users.deactivate(admin, admin.id)

    def test_user_cannot_deactivate(self, container, u1, u2):
        with pytest.raises(ForbiddenError):
            container.users.deactivate(u1, u2.id)

    def test_deactivate_ends_sessions_and_sockets(self, container, admin, u1, loop):
        token = container.auth.authenticate("u1@example.com", PASSWORD)["token"]
        sub = container.hub.register(u1, loop=loop)

        out = container.users.deactivate(admin, u1.id)

        assert out.is_active is False
        assert sub.closed is True
        with pytest.raises(AuthenticationError):
            container.auth.resolve_actor(token)
        with pytest.raises(AuthenticationError, match="deactivated"):
            container.auth.authenticate("u1@example.com", PASSWORD)

    def test_activate_restores_login(self, container, admin, u1):
        container.users.deactivate(admin, u1.id)
        container.users.activate(admin, u1.id)
        assert container.auth.authenticate("u1@example.com", PASSWORD)["token"].startswith("sess_")


class TestDelete:

    def test_cannot_delete_self(self, container, admin):
        with pytest.raises(ForbiddenError, match="Cannot delete your own account"):
            container.users.delete(admin, admin.id)

    def test_user_cannot_delete(self, container, u1, u2):
        with pytest.raises(ForbiddenError, match="Access denied"):
            container.users.delete(u1, u2.id)

    def test_missing(self, container, admin):
        with pytest.raises(NotFoundError):
            container.users.delete(admin, "nope")

    def test_cascades_created_tasks_and_unassigns(self, container, session_factory, task_factory, admin, u1, u2, task_id, pdf):
        """u1 created task_id (assigned to u2); u2 created another task assigned to u1."""
        other = task_factory(u2.id, assigned_to=u1.id, title="Other")
        doc = container.documents.upload(u1, task_id, [pdf()])[0]

        container.users.delete(admin, u1.id)

        with session_scope(session_factory) as session:
            assert session.get(User, u1.id) is None
            assert session.get(Task, task_id) is None
            assert session.get(Task, other).assigned_to is None
            assert session.scalars(select(Document)).all() == []
        assert not (container.file_store.upload_dir / doc.file_name).exists()

    def test_sessions_cleared(self, container, admin, u1):
        token = container.auth.authenticate("u1@example.com", PASSWORD)["token"]
        container.users.delete(admin, u1.id)
        with pytest.raises(AuthenticationError):
            container.auth.resolve_actor(token)


class TestChangePassword:

    def test_self_requires_current(self, container, u1):
        with pytest.raises(ValidationFailedError, match="Current password is incorrect"):
            container.users.change_password(u1, u1.id, "wrong", "NewPass1")
        with pytest.raises(ValidationFailedError, match="Current password is incorrect"):
            container.users.change_password(u1, u1.id, None, "NewPass1")

    def test_self_change(self, container, session_factory, u1):
        container.users.change_password(u1, u1.id, PASSWORD, "NewPass1")
        with session_scope(session_factory) as session:
            assert verify_password("NewPass1", session.get(User, u1.id).password_hash)

    def test_policy_applies(self, container, u1):
        with pytest.raises(ValidationFailedError):
            container.users.change_password(u1, u1.id, PASSWORD, "short")

    def test_admin_resets_without_current(self, container, session_factory, admin, u1):
        container.users.change_password(admin, u1.id, None, "Reset123")
        with session_scope(session_factory) as session:
            assert verify_password("Reset123", session.get(User, u1.id).password_hash)

    def test_other_user_forbidden(self, container, u1, u2):
        with pytest.raises(ForbiddenError):
            container.users.change_password(u1, u2.id, PASSWORD, "NewPass1")
