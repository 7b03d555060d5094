"""
TaskHub Access Control — Row-level authorization decisions.

Every decision is a pure function of (actor, resource snapshot, operation):
no I/O, no caching, no logging. Callers check existence first (NotFound),
then call these, then map ``False`` to ForbiddenError.

Rules:
    Tasks
        admin                         → everything
        read / update / upload        → creator or assignee
        delete                        → creator
        reassign (change assigned_to) → creator
    Documents
        admin                         → everything
        read (download / view)        → same as task read
        delete                        → uploader or task creator
    Users
        view_list / change_role / change_active / delete → admin
        view_one / update / change_password              → admin or self
        delete / change_active on self                   → never, not even admin

Resources may be ORM rows or the TaskRef / DocumentRef snapshots below;
only ``id``, ``created_by``, ``assigned_to``, ``task_id`` and ``uploaded_by``
are read.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy import or_, true
from sqlalchemy.sql.elements import ColumnElement

from taskhub.db.models import Task
from taskhub.engine.context import Actor


class TaskOperation(str, Enum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    UPLOAD_DOCUMENT = "upload_document"


class DocumentOperation(str, Enum):
    READ = "read"
    DELETE = "delete"


class UserOperation(str, Enum):
    VIEW_LIST = "view_list"
    VIEW_ONE = "view_one"
    UPDATE = "update"
    DELETE = "delete"
    CHANGE_ROLE = "change_role"
    CHANGE_ACTIVE = "change_active"
    CHANGE_PASSWORD = "change_password"


@dataclass(frozen=True)
class TaskRef:
    """Ownership snapshot of a task."""

    id: str
    created_by: str
    assigned_to: Optional[str] = None

    @classmethod
    def of(cls, task: Any) -> "TaskRef":
        return cls(id=task.id, created_by=task.created_by, assigned_to=task.assigned_to)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "created_by": self.created_by, "assigned_to": self.assigned_to}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRef":
        return cls(id=data["id"], created_by=data["created_by"], assigned_to=data.get("assigned_to"))


@dataclass(frozen=True)
class DocumentRef:
    """Ownership snapshot of a document."""

    id: str
    task_id: str
    uploaded_by: str

    @classmethod
    def of(cls, document: Any) -> "DocumentRef":
        return cls(id=document.id, task_id=document.task_id, uploaded_by=document.uploaded_by)


# Fields a user may change through the generic update path.
SELF_EDITABLE_FIELDS = frozenset({"first_name", "last_name", "email"})
ADMIN_ONLY_FIELDS = frozenset({"role", "is_active"})


def _coerce(enum_cls, op):
    try:
        return enum_cls(op)
    except ValueError:
        return None


def _is_owner(actor: Actor, task: Any) -> bool:
    return actor.id == task.created_by or (
        task.assigned_to is not None and actor.id == task.assigned_to
    )


def can_access_task(actor: Actor, task: Any, op: Union[TaskOperation, str]) -> bool:
    op = _coerce(TaskOperation, op)
    if op is None:
        return False
    if actor.is_admin:
        return True
    if op is TaskOperation.DELETE:
        return actor.id == task.created_by
    return _is_owner(actor, task)


def can_reassign_task(actor: Actor, task: Any) -> bool:
    """Changing ``assigned_to`` is reserved to the creator (and admins)."""
    return actor.is_admin or actor.id == task.created_by


def can_access_document(
    actor: Actor,
    document: Any,
    task: Any,
    op: Union[DocumentOperation, str],
) -> bool:
    """``task`` must be the document's parent task; inactive documents are the caller's concern."""
    op = _coerce(DocumentOperation, op)
    if op is None:
        return False
    if actor.is_admin:
        return True
    if op is DocumentOperation.READ:
        return _is_owner(actor, task)
    return actor.id == document.uploaded_by or actor.id == task.created_by


def can_manage_user(
    actor: Actor,
    target_user_id: Optional[str],
    op: Union[UserOperation, str],
) -> bool:
    op = _coerce(UserOperation, op)
    if op is None:
        return False
    is_self = target_user_id is not None and actor.id == target_user_id

    if op in (UserOperation.DELETE, UserOperation.CHANGE_ACTIVE):
        return actor.is_admin and not is_self
    if op in (UserOperation.VIEW_LIST, UserOperation.CHANGE_ROLE):
        return actor.is_admin
    # view_one, update, change_password
    return actor.is_admin or is_self


def can_list_users(actor: Actor) -> bool:
    return can_manage_user(actor, None, UserOperation.VIEW_LIST)


def project_user_update(actor: Actor, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keep only the fields ``actor`` may write.

    Non-admins lose ``role`` and ``is_active`` silently. Unknown fields are
    dropped for everyone. Whether an admin may touch role/is_active on a
    particular target is decided separately by ``can_manage_user``.
    """
    allowed = SELF_EDITABLE_FIELDS | ADMIN_ONLY_FIELDS if actor.is_admin else SELF_EDITABLE_FIELDS
    return {k: v for k, v in changes.items() if k in allowed}


def task_visibility_clause(actor: Actor) -> ColumnElement:
    """SQL form of the task read rule, for list queries."""
    if actor.is_admin:
        return true()
    return or_(Task.created_by == actor.id, Task.assigned_to == actor.id)
