"""
TaskHub Schemas — Pydantic models for request bodies, queries and responses.

Wire format is camelCase (``dueDate``, ``assignedTo``); Python attributes are
snake_case. Every model accepts both spellings on input. Output models are
built from ORM rows (``from_attributes``) while the session is still open,
so services hand out plain DTOs instead of live rows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskhub.db.models import TaskPriority, TaskStatus
from taskhub.engine.context import Role


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def dump(self) -> Dict[str, Any]:
        """JSON-ready camelCase dict."""
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class UserSummary(CamelModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None


class TaskSummary(CamelModel):
    id: str
    title: str
    status: str
    priority: str
    due_date: Optional[datetime] = None


class UserOut(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserDetailOut(UserOut):
    assigned_tasks: List[TaskSummary] = []
    created_tasks: List[TaskSummary] = []


class DocumentOut(CamelModel):
    id: str
    task_id: str
    uploaded_by: str
    original_name: str
    file_name: str
    file_size: int
    mime_type: str
    download_count: int = 0
    created_at: Optional[datetime] = None
    uploader: Optional[UserSummary] = None


class TaskOut(CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    created_by: str
    completed_at: Optional[datetime] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    tags: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_overdue: bool = False
    days_until_due: Optional[int] = None
    progress_percentage: int = 0
    assignee: Optional[UserSummary] = None
    creator: Optional[UserSummary] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _none_tags(cls, v):
        return v or []


class TaskDetailOut(TaskOut):
    """A task with its active documents."""

    documents: List[DocumentOut] = []

    @classmethod
    def of(cls, task: Any) -> "TaskDetailOut":
        base = TaskOut.model_validate(task)
        documents = [DocumentOut.model_validate(d) for d in task.documents if d.is_active]
        return cls(**dict(base), documents=documents)


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = -(-total // limit) if total else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class TaskPage(CamelModel):
    tasks: List[TaskDetailOut]
    pagination: Pagination


class UserPage(CamelModel):
    users: List[UserOut]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class RegisterIn(CamelModel):
    email: str = Field(min_length=5, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)


class LoginIn(CamelModel):
    email: str
    password: str


class TaskCreate(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0, le=999.99)
    actual_hours: Optional[float] = Field(default=None, ge=0, le=999.99)
    tags: List[str] = []

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title is required and must be less than 255 characters")
        return v


class TaskUpdate(CamelModel):
    """All fields optional; only the ones the client sent are applied."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0, le=999.99)
    actual_hours: Optional[float] = Field(default=None, ge=0, le=999.99)
    tags: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, mode="python")


TaskSortField = Literal["created_at", "updated_at", "due_date", "priority", "status", "title"]
UserSortField = Literal["created_at", "updated_at", "first_name", "last_name", "email", "last_login"]
SortOrder = Literal["ASC", "DESC"]


class TaskQuery(CamelModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    search: Optional[str] = None
    due_date_from: Optional[datetime] = None
    due_date_to: Optional[datetime] = None
    overdue: Optional[bool] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    sort_by: TaskSortField = "created_at"
    sort_order: SortOrder = "DESC"


class UserUpdate(CamelModel):
    """Unknown fields are ignored; role/is_active are further filtered by role."""

    model_config = ConfigDict(extra="ignore")

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[str] = Field(default=None, min_length=5, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, mode="python")
        if isinstance(data.get("role"), Role):
            data["role"] = data["role"].value
        return data


class UserQuery(CamelModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    sort_by: UserSortField = "created_at"
    sort_order: SortOrder = "DESC"


class ChangePasswordIn(CamelModel):
    current_password: Optional[str] = None
    new_password: str = Field(min_length=1, max_length=255)
