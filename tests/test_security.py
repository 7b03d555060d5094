"""Unit tests for taskhub.engine.security — AuthService sessions, password utilities."""

import pytest
from sqlalchemy import select

from taskhub.db.models import LoginAuditLog, User
from taskhub.db.session import session_scope
from taskhub.engine.context import Role
from taskhub.engine.errors import AuthenticationError, ValidationFailedError
from taskhub.engine.security import (
    AuthService,
    hash_password,
    normalize_email,
    validate_password_policy,
    verify_password,
)

PASSWORD = "Secret123"


class TestPasswordUtils:

    def test_hash_and_verify(self):
        hashed = hash_password(PASSWORD, rounds=4)
        assert hashed.startswith("$2")
        assert verify_password(PASSWORD, hashed) is True
        assert verify_password("wrong", hashed) is False

    def test_malformed_hash_never_matches(self):
        assert verify_password(PASSWORD, "not-a-hash") is False
        assert verify_password("", hash_password(PASSWORD, rounds=4)) is False

    def test_policy_accepts(self):
        validate_password_policy("Abcde1")

    def test_policy_lists_every_problem(self):
        with pytest.raises(ValidationFailedError) as exc_info:
            validate_password_policy("abc")
        messages = [e["message"] for e in exc_info.value.validation_errors]
        assert "must be at least 6 characters" in messages
        assert "must contain an uppercase letter" in messages
        assert "must contain a digit" in messages

    def test_normalize_email(self):
        assert normalize_email("  Ann@Example.COM ") == "ann@example.com"
        with pytest.raises(ValidationFailedError, match="valid email"):
            normalize_email("not-an-email")


class TestAuthService:

    @pytest.fixture
    def auth(self, session_factory, session_store):
        return AuthService(
            session_store,
            session_factory,
            session_timeout=600,
            max_concurrent_sessions=2,
            bcrypt_rounds=4,
        )

    def test_register_creates_plain_user(self, auth, session_factory):
        user = auth.register("New@Example.com", PASSWORD, " Ann ", "Lee")
        assert user.email == "new@example.com"
        assert user.role == Role.USER.value
        assert user.first_name == "Ann"
        with session_scope(session_factory) as session:
            stored = session.get(User, user.id)
            assert stored.password_hash != PASSWORD
            assert verify_password(PASSWORD, stored.password_hash)

    def test_register_duplicate(self, auth):
        auth.register("dup@example.com", PASSWORD, "A", "B")
        with pytest.raises(ValidationFailedError, match="already exists"):
            auth.register("DUP@example.com", PASSWORD, "A", "B")

    def test_register_weak_password(self, auth):
        with pytest.raises(ValidationFailedError, match="Password does not meet requirements"):
            auth.register("weak@example.com", "abc", "A", "B")

    def test_authenticate_and_resolve(self, auth, session_store):
        auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        result = auth.authenticate("ann@example.com", PASSWORD, ip_address="10.0.0.1")
        token = result["token"]

        assert token.startswith("sess_")
        assert result["user"].last_login is not None
        assert session_store.get_json(token)["user_id"] == result["user"].id
        actor = auth.resolve_actor(token)
        assert actor.id == result["user"].id
        assert actor.role is Role.USER

    def test_login_attempts_audited(self, auth, session_factory):
        auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        auth.authenticate("ann@example.com", PASSWORD)
        with pytest.raises(AuthenticationError, match="Invalid credentials"):
            auth.authenticate("ann@example.com", "Wrong999")
        with pytest.raises(AuthenticationError, match="Invalid credentials"):
            auth.authenticate("ghost@example.com", PASSWORD)

        with session_scope(session_factory) as session:
            rows = session.scalars(select(LoginAuditLog).order_by(LoginAuditLog.id)).all()
            assert [r.success for r in rows] == [True, False, False]
            assert [r.failure_reason for r in rows] == [None, "invalid_password", "invalid_email"]

    def test_deactivated_account_cannot_login(self, auth, session_factory):
        user = auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        with session_scope(session_factory) as session:
            session.get(User, user.id).is_active = False
        with pytest.raises(AuthenticationError, match="deactivated"):
            auth.authenticate("ann@example.com", PASSWORD)

    @pytest.mark.parametrize("token,message", [(None, "Access token required"), ("sess_bogus", "Invalid or expired")])
    def test_resolve_rejects(self, auth, token, message):
        with pytest.raises(AuthenticationError, match=message):
            auth.resolve_actor(token)

    def test_role_read_from_database(self, auth, session_factory):
        user = auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        token = auth.authenticate("ann@example.com", PASSWORD)["token"]
        with session_scope(session_factory) as session:
            session.get(User, user.id).role = Role.ADMIN.value
        assert auth.resolve_actor(token).is_admin is True

    def test_deactivation_invalidates_session(self, auth, session_factory, session_store):
        user = auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        token = auth.authenticate("ann@example.com", PASSWORD)["token"]
        with session_scope(session_factory) as session:
            session.get(User, user.id).is_active = False
        with pytest.raises(AuthenticationError, match="not active"):
            auth.resolve_actor(token)
        assert session_store.get_json(token) is None

    def test_logout(self, auth):
        auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        token = auth.authenticate("ann@example.com", PASSWORD)["token"]
        auth.logout(token)
        assert auth.validate_session(token) is None

    def test_session_limit_evicts_oldest(self, auth, session_store):
        user = auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        tokens = [auth.authenticate("ann@example.com", PASSWORD)["token"] for _ in range(3)]
        active = {t for t in tokens if auth.validate_session(t) is not None}
        assert active == set(tokens[1:])
        assert session_store.smembers(f"user_sessions:{user.id}") == active

    def test_logout_all(self, auth):
        user = auth.register("ann@example.com", PASSWORD, "Ann", "Lee")
        t1 = auth.authenticate("ann@example.com", PASSWORD)["token"]
        t2 = auth.authenticate("ann@example.com", PASSWORD)["token"]
        assert auth.logout_all(user.id) == 2
        assert auth.validate_session(t1) is None
        assert auth.validate_session(t2) is None
