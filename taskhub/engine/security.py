"""
TaskHub Authentication — Redis-backed sessions, login audit, password utilities.

Flow:
1. User logs in → a ``sess_<hex>`` token is stored in the session store
2. Client presents it as ``Authorization: Bearer <token>`` (or ``?token=`` on the socket)
3. Each request → session lookup → user row re-read → Actor
4. Logout / timeout / deactivation → session deleted

The session payload holds the user id only. Role and active flag are read
from the database on every request so a role change or deactivation takes
effect immediately.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import bcrypt
from sqlalchemy.orm import Session, sessionmaker

from taskhub.db.base import utcnow
from taskhub.db.models import LoginAuditLog, User
from taskhub.db.session import session_scope
from taskhub.engine.cache import RedisCache
from taskhub.engine.context import Actor, Role
from taskhub.engine.errors import AuthenticationError, ValidationFailedError

logger = logging.getLogger("taskhub.engine.security")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthService:
    """
    Session-based authentication with a Redis-backed session store.

    ``session_store`` is a RedisCache (DB 4); anything with the same
    get_json/set_json/delete/sadd/srem/smembers/scard surface works.
    """

    def __init__(
        self,
        session_store: RedisCache,
        session_factory: sessionmaker,
        session_timeout: int = 3600,
        max_concurrent_sessions: int = 5,
        bcrypt_rounds: int = 12,
        password_min_length: int = 6,
    ):
        self._sessions = session_store
        self._session_factory = session_factory
        self._session_timeout = session_timeout
        self._max_concurrent = max_concurrent_sessions
        self._bcrypt_rounds = bcrypt_rounds
        self._password_min_length = password_min_length

    @property
    def bcrypt_rounds(self) -> int:
        return self._bcrypt_rounds

    @property
    def password_min_length(self) -> int:
        return self._password_min_length

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> User:
        """
        Create a regular (non-admin) account.

        Raises:
            ValidationFailedError on a malformed email, weak password or
            duplicate email.
        """
        email = normalize_email(email)
        validate_password_policy(password, self._password_min_length)

        with session_scope(self._session_factory) as session:
            if session.query(User).filter_by(email=email).first() is not None:
                raise ValidationFailedError(
                    "User with this email already exists",
                    resource="user",
                    validation_errors=[{"field": "email", "message": "already registered"}],
                )
            user = User(
                email=email,
                password_hash=hash_password(password, self._bcrypt_rounds),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=Role.USER.value,
                is_active=True,
            )
            session.add(user)
            session.flush()

        logger.info(f"User registered: {user.email} ({user.id})")
        return user

    def authenticate(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify credentials and create a session.

        Returns:
            Dict with ``token`` and the ``user`` row.

        Raises:
            AuthenticationError on invalid credentials or a disabled account.
        """
        email = (email or "").strip().lower()
        failure: Optional[str] = None

        with session_scope(self._session_factory) as session:
            user = session.query(User).filter_by(email=email).first()

            if user is None:
                failure = "invalid_email"
            elif not user.is_active:
                failure = "account_disabled"
            elif not verify_password(password, user.password_hash):
                failure = "invalid_password"
            else:
                user.last_login = utcnow()

            self._log_login(
                session,
                email,
                user.id if user is not None else None,
                failure is None,
                ip_address,
                user_agent,
                failure,
            )

        if failure == "account_disabled":
            raise AuthenticationError("Account is deactivated", resource="user", actor_id=user.id)
        if failure is not None:
            raise AuthenticationError(
                "Invalid credentials",
                resource="user",
                actor_id=user.id if user is not None else None,
                reason=failure,
            )

        token = f"sess_{uuid.uuid4().hex}"
        now = datetime.now(timezone.utc).isoformat()
        session_data = {
            "user_id": user.id,
            "login_at": now,
            "last_activity": now,
            "ip_address": ip_address,
        }

        self._enforce_session_limit(user.id, token)
        self._sessions.set_json(token, session_data, ttl=self._session_timeout)
        self._sessions.sadd(f"user_sessions:{user.id}", token)

        logger.info(f"User '{email}' authenticated (session: {token[:16]}...)")
        return {"token": token, "user": user}

    def validate_session(self, token: Optional[str]) -> Optional[str]:
        """
        Look up a session token and refresh its TTL.

        Returns:
            The user id, or None when the token is unknown or expired.
        """
        if not token:
            return None

        session_data = self._sessions.get_json(token)
        if session_data is None:
            return None

        session_data["last_activity"] = datetime.now(timezone.utc).isoformat()
        self._sessions.set_json(token, session_data, ttl=self._session_timeout)
        return session_data.get("user_id")

    def resolve_actor(self, token: Optional[str]) -> Actor:
        """
        Turn a bearer token into an Actor by re-reading the user row.

        Raises:
            AuthenticationError if the token is missing/expired, or the
            user no longer exists or is deactivated.
        """
        if not token:
            raise AuthenticationError("Access token required")

        user_id = self.validate_session(token)
        if user_id is None:
            raise AuthenticationError("Invalid or expired token")

        with session_scope(self._session_factory) as session:
            user = session.get(User, user_id)
            if user is None or not user.is_active:
                self.logout(token)
                raise AuthenticationError("Account is not active", actor_id=user_id)
            return Actor.from_user(user)

    def logout(self, token: str) -> bool:
        """Destroy a session."""
        session_data = self._sessions.get_json(token)
        if session_data:
            user_id = session_data.get("user_id")
            if user_id:
                self._sessions.srem(f"user_sessions:{user_id}", token)
        self._sessions.delete(token)
        logger.info(f"Session destroyed: {token[:16]}...")
        return True

    def logout_all(self, user_id: str) -> int:
        """Destroy every session of a user. Returns the number destroyed."""
        tokens = self._sessions.smembers(f"user_sessions:{user_id}")
        for token in tokens:
            self._sessions.delete(token)
        self._sessions.delete(f"user_sessions:{user_id}")
        if tokens:
            logger.info(f"Destroyed {len(tokens)} session(s) of user {user_id}")
        return len(tokens)

    def _enforce_session_limit(self, user_id: str, new_token: str) -> None:
        """Evict oldest session(s) if over limit."""
        current_count = self._sessions.scard(f"user_sessions:{user_id}")
        if current_count < self._max_concurrent:
            return

        sessions_with_time = []
        for token in self._sessions.smembers(f"user_sessions:{user_id}"):
            data = self._sessions.get_json(token)
            if data:
                sessions_with_time.append((token, data.get("login_at", "")))
            else:
                self._sessions.srem(f"user_sessions:{user_id}", token)

        sessions_with_time.sort(key=lambda x: x[1])
        to_evict = len(sessions_with_time) - self._max_concurrent + 1
        for token, _ in sessions_with_time[:max(0, to_evict)]:
            self.logout(token)

    def _log_login(
        self,
        session: Session,
        email: str,
        user_id: Optional[str],
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        """Record a login attempt in login_audit_log (committed with the caller's scope)."""
        session.add(
            LoginAuditLog(
                email=email[:255],
                user_id=user_id,
                success=success,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason=failure_reason,
            )
        )


# ---------------------------------------------------------------------------
# Password Utilities
# ---------------------------------------------------------------------------

def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its bcrypt hash. A malformed hash never matches."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password_policy(password: str, min_length: int = 6) -> None:
    """
    At least ``min_length`` characters with one lowercase letter, one
    uppercase letter and one digit.

    Raises:
        ValidationFailedError listing every rule the password breaks.
    """
    problems = []
    password = password or ""
    if len(password) < min_length:
        problems.append(f"must be at least {min_length} characters")
    if not re.search(r"[a-z]", password):
        problems.append("must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("must contain an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("must contain a digit")
    if problems:
        raise ValidationFailedError(
            "Password does not meet requirements",
            validation_errors=[{"field": "password", "message": p} for p in problems],
        )


def normalize_email(email: str) -> str:
    """Lower-case and trim an email address, rejecting obviously malformed ones."""
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email) or len(email) > 255:
        raise ValidationFailedError(
            "Please provide a valid email",
            validation_errors=[{"field": "email", "message": "invalid email"}],
        )
    return email
