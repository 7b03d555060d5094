"""
TaskHub Task Service — list, read, create, update and delete tasks.

Every operation follows the same order: load the task (NotFoundError),
ask the access evaluator (ForbiddenError), validate the change
(ValidationFailedError), commit, then notify subscribers.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from taskhub.db.base import as_utc, utcnow
from taskhub.db.models import PRIORITY_RANK, Task, TaskStatus, User
from taskhub.db.session import session_scope
from taskhub.db.transforms import apply_status_transition
from taskhub.documents.storage import FileStore
from taskhub.engine.context import Actor
from taskhub.engine.errors import ForbiddenError, NotFoundError, ValidationFailedError
from taskhub.engine.logging import log, log_task_event
from taskhub.realtime.notifier import ChangeNotifier, EventKind
from taskhub.realtime.hub import user_scope
from taskhub.schemas import Pagination, TaskCreate, TaskDetailOut, TaskPage, TaskQuery
from taskhub.security.permissions import (
    TaskOperation,
    TaskRef,
    can_access_task,
    can_reassign_task,
    task_visibility_clause,
)

logger = logging.getLogger("taskhub.tasks.service")

UPDATABLE_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "assigned_to",
    "estimated_hours",
    "actual_hours",
    "tags",
)

# Columns an update may change but never clear
NOT_NULL_FIELDS = ("status", "priority")

_SORT_COLUMNS = {
    "created_at": Task.created_at,
    "updated_at": Task.updated_at,
    "due_date": Task.due_date,
    "status": Task.status,
    "title": Task.title,
    "priority": case(PRIORITY_RANK, value=Task.priority, else_=0),
}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _hours(value: Optional[float]) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value)).quantize(Decimal("0.01"))


class TaskService:
    """Task CRUD with row-level authorization and change notification."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: ChangeNotifier,
        file_store: FileStore,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._store = file_store

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def list(self, actor: Actor, query: TaskQuery) -> TaskPage:
        """
        Page through the tasks ``actor`` may read.

        The visibility rule is always ANDed with the filters, including
        free-text search.
        """
        conditions = [task_visibility_clause(actor)]
        if query.status:
            conditions.append(Task.status == _plain(query.status))
        if query.priority:
            conditions.append(Task.priority == _plain(query.priority))
        if query.assigned_to:
            conditions.append(Task.assigned_to == query.assigned_to)
        if query.created_by:
            conditions.append(Task.created_by == query.created_by)
        if query.search:
            pattern = f"%{query.search.strip()}%"
            conditions.append(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))
        if query.overdue:
            conditions.append(Task.due_date < utcnow())
            conditions.append(Task.status != TaskStatus.COMPLETED.value)
        else:
            if query.due_date_from:
                conditions.append(Task.due_date >= as_utc(query.due_date_from))
            if query.due_date_to:
                conditions.append(Task.due_date <= as_utc(query.due_date_to))

        where = and_(*conditions)
        sort_col = _SORT_COLUMNS[query.sort_by]
        order = sort_col.asc() if query.sort_order == "ASC" else sort_col.desc()

        with session_scope(self._session_factory) as session:
            total = session.scalar(select(func.count(Task.id)).where(where))
            rows = session.scalars(
                select(Task)
                .where(where)
                .options(
                    selectinload(Task.creator),
                    selectinload(Task.assignee),
                    selectinload(Task.documents),
                )
                .order_by(order, Task.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).all()
            tasks = [TaskDetailOut.of(t) for t in rows]

        return TaskPage(tasks=tasks, pagination=Pagination.build(query.page, query.limit, total))

    def get(self, actor: Actor, task_id: str) -> TaskDetailOut:
        with session_scope(self._session_factory) as session:
            task = self._load(session, task_id)
            self._require(actor, task, TaskOperation.READ)
            return TaskDetailOut.of(task)

    def get_ref(self, task_id: str) -> TaskRef:
        """Ownership snapshot for realtime room checks."""
        with session_scope(self._session_factory) as session:
            return TaskRef.of(self._load(session, task_id))

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def create(self, actor: Actor, data: TaskCreate) -> TaskDetailOut:
        due_date = self._check_due_date(data.due_date)

        with session_scope(self._session_factory) as session:
            if data.assigned_to:
                self._require_assignee(session, data.assigned_to)
            task = Task(
                title=data.title,
                description=data.description,
                status=TaskStatus.TODO.value,
                priority=_plain(data.priority),
                due_date=due_date,
                assigned_to=data.assigned_to or None,
                created_by=actor.id,
                estimated_hours=_hours(data.estimated_hours),
                actual_hours=_hours(data.actual_hours),
                tags=list(data.tags),
            )
            apply_status_transition(task, _plain(data.status))
            session.add(task)
            session.flush()
            out = TaskDetailOut.of(task)
            ref = TaskRef.of(task)

        logger.info(f"Task created: {ref.id} by {actor.id}")
        log(log_task_event("task_created", ref.id, actor.id, request_id=actor.request_id))

        self._notifier.notify_task(EventKind.TASK_CREATED, ref, out.dump())
        if ref.assigned_to and ref.assigned_to != actor.id:
            self._notify_assigned(ref, actor)
        return out

    def update(self, actor: Actor, task_id: str, changes: Dict[str, Any]) -> TaskDetailOut:
        """
        Apply a partial update.

        Changing ``assigned_to`` additionally requires the creator (or an
        admin). Status changes go through the completed_at transform.
        """
        changes = {k: _plain(v) for k, v in changes.items() if k in UPDATABLE_FIELDS}

        with session_scope(self._session_factory) as session:
            task = self._load(session, task_id)
            self._require(actor, task, TaskOperation.UPDATE)

            cleared = [f for f in NOT_NULL_FIELDS if f in changes and changes[f] is None]
            if cleared:
                raise ValidationFailedError(
                    "Validation failed",
                    resource="task",
                    resource_id=task_id,
                    validation_errors=[{"field": f, "message": f"{f} cannot be null"} for f in cleared],
                )

            previous_assignee = task.assigned_to
            reassigning = "assigned_to" in changes and (changes["assigned_to"] or None) != previous_assignee
            if reassigning:
                if not can_reassign_task(actor, task):
                    raise ForbiddenError(
                        "Access denied. Only task creator or admin can reassign tasks.",
                        resource="task",
                        resource_id=task_id,
                        actor_id=actor.id,
                        operation="reassign",
                    )
                if changes["assigned_to"]:
                    self._require_assignee(session, changes["assigned_to"])

            if "due_date" in changes and changes["due_date"] is not None:
                changes["due_date"] = self._check_due_date(changes["due_date"])

            changed: List[str] = []
            for field, value in changes.items():
                if field == "status":
                    if apply_status_transition(task, value):
                        changed.append(field)
                    continue
                if field == "title":
                    value = (value or "").strip()
                    if not value:
                        raise ValidationFailedError(
                            "Validation failed",
                            validation_errors=[{"field": "title", "message": "Title is required"}],
                        )
                elif field in ("estimated_hours", "actual_hours"):
                    value = _hours(value)
                elif field == "assigned_to":
                    value = value or None
                elif field == "tags":
                    value = list(value or [])
                if getattr(task, field) != value:
                    setattr(task, field, value)
                    changed.append(field)

            session.flush()
            out = TaskDetailOut.of(task)
            ref = TaskRef.of(task)

        logger.info(f"Task updated: {task_id} by {actor.id} ({', '.join(changed) or 'no changes'})")
        log(log_task_event("task_updated", task_id, actor.id, request_id=actor.request_id, fields_changed=changed))

        self._notifier.notify_task(EventKind.TASK_UPDATED, ref, out.dump())
        if reassigning and ref.assigned_to and ref.assigned_to != actor.id:
            self._notify_assigned(ref, actor)
        return out

    def delete(self, actor: Actor, task_id: str) -> None:
        """Delete a task and its documents; their files are purged after commit."""
        with session_scope(self._session_factory) as session:
            task = self._load(session, task_id)
            if not can_access_task(actor, task, TaskOperation.DELETE):
                raise ForbiddenError(
                    "Access denied. Only task creator or admin can delete tasks.",
                    resource="task",
                    resource_id=task_id,
                    actor_id=actor.id,
                    operation=TaskOperation.DELETE.value,
                )
            ref = TaskRef.of(task)
            file_paths = [d.file_path for d in task.documents]
            session.delete(task)

        purged = self._store.purge_paths(file_paths)
        logger.info(f"Task deleted: {task_id} by {actor.id} ({purged} file(s) purged)")
        log(log_task_event("task_deleted", task_id, actor.id, request_id=actor.request_id))

        self._notifier.notify_task(EventKind.TASK_DELETED, ref, {"id": task_id})

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found", resource="task", resource_id=task_id)
        return task

    @staticmethod
    def _require(actor: Actor, task: Task, op: TaskOperation) -> None:
        if not can_access_task(actor, task, op):
            raise ForbiddenError(
                "Access denied",
                resource="task",
                resource_id=task.id,
                actor_id=actor.id,
                operation=op.value,
            )

    @staticmethod
    def _require_assignee(session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise ValidationFailedError(
                "Assigned user not found",
                resource="task",
                validation_errors=[{"field": "assignedTo", "message": "Assigned user not found"}],
            )
        return user

    @staticmethod
    def _check_due_date(value: Optional[datetime]) -> Optional[datetime]:
        """Due dates before today (UTC) are rejected."""
        if value is None:
            return None
        value = as_utc(value)
        start_of_today = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
        if value < start_of_today:
            raise ValidationFailedError(
                "Due date must be in the future",
                resource="task",
                validation_errors=[{"field": "dueDate", "message": "Due date must be in the future"}],
            )
        return value

    def _notify_assigned(self, ref: TaskRef, actor: Actor) -> None:
        self._notifier.notify(
            [user_scope(ref.assigned_to)],
            EventKind.TASK_ASSIGNED,
            {"taskId": ref.id, "assignedBy": actor.id},
            task=ref,
        )
