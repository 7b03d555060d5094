"""
TaskHub User Service — account administration and self-service profile changes.

Security:
- list / change role / activate / deactivate / delete — admin only
- get / update / change password — admin or self
- delete and deactivate never apply to the acting admin's own account
- non-admin updates silently lose ``role`` and ``is_active``

Role changes and deactivation take effect immediately: sessions are
re-read from the database on every request, open sockets get the new actor
(or are closed).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, true
from sqlalchemy.orm import Session, selectinload, sessionmaker

from taskhub.db.models import Task, User
from taskhub.db.session import session_scope
from taskhub.db.transforms import hash_password_change
from taskhub.documents.storage import FileStore
from taskhub.engine.context import Actor, Role
from taskhub.engine.errors import ForbiddenError, NotFoundError, ValidationFailedError
from taskhub.engine.logging import log, log_user_event
from taskhub.engine.security import AuthService, normalize_email, validate_password_policy, verify_password
from taskhub.realtime.notifier import ChangeNotifier, EventKind
from taskhub.schemas import Pagination, TaskSummary, UserDetailOut, UserOut, UserPage, UserQuery
from taskhub.security.permissions import UserOperation, can_list_users, can_manage_user, project_user_update

logger = logging.getLogger("taskhub.users.service")

_SORT_COLUMNS = {
    "created_at": User.created_at,
    "updated_at": User.updated_at,
    "first_name": User.first_name,
    "last_name": User.last_name,
    "email": User.email,
    "last_login": User.last_login,
}


class UserService:
    def __init__(
        self,
        session_factory: sessionmaker,
        auth: AuthService,
        notifier: ChangeNotifier,
        file_store: FileStore,
    ):
        self._session_factory = session_factory
        self._auth = auth
        self._notifier = notifier
        self._store = file_store

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def list(self, actor: Actor, query: UserQuery) -> UserPage:
        if not can_list_users(actor):
            raise ForbiddenError(
                "Admin access required",
                resource="user",
                actor_id=actor.id,
                operation=UserOperation.VIEW_LIST.value,
            )

        conditions = [true()]
        if query.role is not None:
            conditions.append(User.role == query.role.value)
        if query.is_active is not None:
            conditions.append(User.is_active.is_(query.is_active))
        if query.search:
            pattern = f"%{query.search.strip()}%"
            conditions.append(or_(
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
                User.email.ilike(pattern),
            ))
        where = and_(*conditions)
        sort_col = _SORT_COLUMNS[query.sort_by]
        order = sort_col.asc() if query.sort_order == "ASC" else sort_col.desc()

        with session_scope(self._session_factory) as session:
            total = session.scalar(select(func.count(User.id)).where(where))
            rows = session.scalars(
                select(User)
                .where(where)
                .order_by(order, User.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).all()
            users = [UserOut.model_validate(u) for u in rows]

        return UserPage(users=users, pagination=Pagination.build(query.page, query.limit, total))

    def get(self, actor: Actor, user_id: str) -> UserDetailOut:
        """A user with summaries of the tasks assigned to and created by them."""
        with session_scope(self._session_factory) as session:
            user = session.scalars(
                select(User)
                .where(User.id == user_id)
                .options(selectinload(User.assigned_tasks), selectinload(User.created_tasks))
            ).first()
            if user is None:
                raise NotFoundError("User not found", resource="user", resource_id=user_id)
            self._require(actor, user_id, UserOperation.VIEW_ONE)
            return UserDetailOut(
                **dict(UserOut.model_validate(user)),
                assigned_tasks=[TaskSummary.model_validate(t) for t in user.assigned_tasks],
                created_tasks=[TaskSummary.model_validate(t) for t in user.created_tasks],
            )

    def profile(self, user_id: str) -> UserOut:
        """The caller's own profile (``/auth/me``)."""
        with session_scope(self._session_factory) as session:
            return UserOut.model_validate(self._load(session, user_id))

    def display_name(self, user_id: str) -> str:
        with session_scope(self._session_factory) as session:
            user = session.get(User, user_id)
            return user.full_name if user is not None else ""

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def update(self, actor: Actor, user_id: str, changes: Dict[str, Any]) -> UserOut:
        """
        Update profile fields.

        Non-admins keep only first_name / last_name / email. Admins may also
        change ``role`` (any account) and ``is_active`` (not their own).
        """
        with session_scope(self._session_factory) as session:
            user = self._load(session, user_id)
            self._require(actor, user_id, UserOperation.UPDATE)

            projected = project_user_update(actor, changes)
            if "role" in projected and projected["role"] is not None and projected["role"] != user.role:
                self._require(actor, user_id, UserOperation.CHANGE_ROLE)
            if "is_active" in projected and projected["is_active"] is not None and projected["is_active"] != user.is_active:
                self._require(
                    actor,
                    user_id,
                    UserOperation.CHANGE_ACTIVE,
                    message="Cannot deactivate your own account",
                )

            if projected.get("email") is not None:
                email = normalize_email(projected["email"])
                if email != user.email:
                    clash = session.scalars(select(User).where(User.email == email)).first()
                    if clash is not None:
                        raise ValidationFailedError(
                            "Email already in use",
                            resource="user",
                            resource_id=user_id,
                            validation_errors=[{"field": "email", "message": "Email already in use"}],
                        )
                projected["email"] = email

            changed: List[str] = []
            for field, value in projected.items():
                if value is None:
                    continue
                if isinstance(value, str):
                    value = value.strip()
                if getattr(user, field) != value:
                    setattr(user, field, value)
                    changed.append(field)

            session.flush()
            out = UserOut.model_validate(user)

        self._after_identity_change(user_id, out, changed)
        logger.info(f"User updated: {user_id} by {actor.id} ({', '.join(changed) or 'no changes'})")
        log(log_user_event("user_updated", user_id, actor.id, request_id=actor.request_id, fields_changed=changed))
        self._notifier.notify_user(EventKind.USER_UPDATED, user_id, {"user": out.dump(), "action": "updated"})
        return out

    def set_active(self, actor: Actor, user_id: str, active: bool) -> UserOut:
        """Activate or deactivate an account (admin only, never on self)."""
        with session_scope(self._session_factory) as session:
            user = self._load(session, user_id)
            self._require(
                actor,
                user_id,
                UserOperation.CHANGE_ACTIVE,
                message="Cannot deactivate your own account",
            )
            changed = ["is_active"] if user.is_active != active else []
            user.is_active = active
            session.flush()
            out = UserOut.model_validate(user)

        self._after_identity_change(user_id, out, changed)
        event = "user_activated" if active else "user_deactivated"
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'} by {actor.id}")
        log(log_user_event(event, user_id, actor.id, request_id=actor.request_id, fields_changed=changed))
        self._notifier.notify_user(
            EventKind.USER_UPDATED,
            user_id,
            {"user": out.dump(), "action": "activated" if active else "deactivated"},
        )
        return out

    def deactivate(self, actor: Actor, user_id: str) -> UserOut:
        return self.set_active(actor, user_id, False)

    def activate(self, actor: Actor, user_id: str) -> UserOut:
        return self.set_active(actor, user_id, True)

    def delete(self, actor: Actor, user_id: str) -> None:
        """
        Delete an account with the tasks it created and the documents it
        uploaded; tasks assigned to it become unassigned. Files of the
        removed documents are purged after commit.
        """
        with session_scope(self._session_factory) as session:
            user = self._load(session, user_id)
            self._require(
                actor,
                user_id,
                UserOperation.DELETE,
                message="Cannot delete your own account",
            )

            file_paths = {d.file_path for d in user.uploaded_documents}
            for task in user.created_tasks:
                file_paths.update(d.file_path for d in task.documents)
                session.delete(task)
            for task in user.assigned_tasks:
                if task.created_by != user_id:
                    task.assigned_to = None
            session.delete(user)

        purged = self._store.purge_paths(sorted(file_paths))
        self._auth.logout_all(user_id)
        self._notifier.hub.disconnect_user(user_id)

        logger.info(f"User deleted: {user_id} by {actor.id} ({purged} file(s) purged)")
        log(log_user_event("user_deleted", user_id, actor.id, request_id=actor.request_id))
        self._notifier.notify_user(EventKind.USER_UPDATED, user_id, {"user": {"id": user_id}, "action": "deleted"})

    def change_password(
        self,
        actor: Actor,
        user_id: str,
        current_password: Optional[str],
        new_password: str,
    ) -> None:
        """
        Self-service requires the current password; an admin resetting
        another account does not.
        """
        with session_scope(self._session_factory) as session:
            user = self._load(session, user_id)
            self._require(actor, user_id, UserOperation.CHANGE_PASSWORD)

            if actor.id == user_id and not verify_password(current_password or "", user.password_hash):
                raise ValidationFailedError(
                    "Current password is incorrect",
                    resource="user",
                    resource_id=user_id,
                    validation_errors=[{"field": "currentPassword", "message": "incorrect"}],
                )
            validate_password_policy(new_password, self._auth.password_min_length)
            hash_password_change(user, new_password, self._auth.bcrypt_rounds)

        logger.info(f"Password changed for {user_id} by {actor.id}")
        log(log_user_event("password_changed", user_id, actor.id, request_id=actor.request_id))

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", resource="user", resource_id=user_id)
        return user

    @staticmethod
    def _require(
        actor: Actor,
        user_id: str,
        op: UserOperation,
        message: Optional[str] = None,
    ) -> None:
        if can_manage_user(actor, user_id, op):
            return
        if message is None or actor.id != user_id:
            message = "Access denied"
        raise ForbiddenError(
            message,
            resource="user",
            resource_id=user_id,
            actor_id=actor.id,
            operation=op.value,
        )

    def _after_identity_change(self, user_id: str, out: UserOut, changed: List[str]) -> None:
        """Push role / active changes to live sessions and sockets."""
        hub = self._notifier.hub
        if "role" in changed:
            hub.update_actor(user_id, Actor(id=user_id, role=Role(out.role)))
        if "is_active" in changed and not out.is_active:
            self._auth.logout_all(user_id)
            hub.disconnect_user(user_id)
