"""Task CRUD endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from taskhub.api.deps import envelope, get_actor, get_container
from taskhub.db.models import TaskPriority, TaskStatus
from taskhub.engine.context import Actor
from taskhub.schemas import TaskCreate, TaskQuery, TaskUpdate

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

_SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "dueDate": "due_date",
    "priority": "priority",
    "status": "status",
    "title": "title",
}


def task_query(
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    assigned_to: Optional[str] = Query(None, alias="assignedTo"),
    created_by: Optional[str] = Query(None, alias="createdBy"),
    search: Optional[str] = Query(None, max_length=255),
    due_date_from: Optional[datetime] = Query(None, alias="dueDateFrom"),
    due_date_to: Optional[datetime] = Query(None, alias="dueDateTo"),
    overdue: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: Literal["createdAt", "updatedAt", "dueDate", "priority", "status", "title"] = Query(
        "createdAt", alias="sortBy"
    ),
    sort_order: Literal["ASC", "DESC"] = Query("DESC", alias="sortOrder"),
) -> TaskQuery:
    return TaskQuery(
        status=status,
        priority=priority,
        assigned_to=assigned_to,
        created_by=created_by,
        search=search,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        overdue=overdue,
        page=page,
        limit=limit,
        sort_by=_SORT_FIELDS[sort_by],
        sort_order=sort_order,
    )


@router.get("")
def list_tasks(
    query: TaskQuery = Depends(task_query),
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    return envelope(container.tasks.list(actor, query).dump())


@router.get("/{task_id}")
def get_task(task_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    return envelope({"task": container.tasks.get(actor, task_id).dump()})


@router.post("", status_code=201)
def create_task(body: TaskCreate, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    task = container.tasks.create(actor, body)
    return envelope({"task": task.dump()}, "Task created successfully")


@router.put("/{task_id}")
def update_task(
    task_id: str,
    body: TaskUpdate,
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    task = container.tasks.update(actor, task_id, body.changes())
    return envelope({"task": task.dump()}, "Task updated successfully")


@router.delete("/{task_id}")
def delete_task(task_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    container.tasks.delete(actor, task_id)
    return envelope(message="Task deleted successfully")
