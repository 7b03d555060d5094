"""
TaskHub Models — SQLAlchemy models for the taskhub database.

Tables:
1. users            — Accounts (admin / user)
2. tasks            — Work items, created by one user, optionally assigned to another
3. documents        — PDF attachments of a task (soft-deleted via is_active)
4. login_audit_log  — Login attempt audit trail

Cascades: deleting a user deletes the tasks they created and the documents
they uploaded, and clears ``assigned_to`` on tasks assigned to them.
Deleting a task deletes its documents.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship, validates

from taskhub.db.base import AuditMixin, Base, as_utc, new_id, utcnow
from taskhub.engine.errors import ValidationFailedError


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


STATUS_PROGRESS = {
    TaskStatus.TODO.value: 0,
    TaskStatus.IN_PROGRESS.value: 25,
    TaskStatus.REVIEW.value: 75,
    TaskStatus.COMPLETED.value: 100,
}

# Sort order for ``ORDER BY priority``
PRIORITY_RANK = {
    TaskPriority.LOW.value: 0,
    TaskPriority.MEDIUM.value: 1,
    TaskPriority.HIGH.value: 2,
    TaskPriority.URGENT.value: 3,
}


# ---------------------------------------------------------------------------
# 1. Users
# ---------------------------------------------------------------------------

class User(Base, AuditMixin):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    role = Column(String(10), default="user", nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_tasks = relationship(
        "Task",
        foreign_keys="Task.created_by",
        back_populates="creator",
        cascade="all",
    )
    assigned_tasks = relationship(
        "Task",
        foreign_keys="Task.assigned_to",
        back_populates="assignee",
    )
    uploaded_documents = relationship(
        "Document",
        foreign_keys="Document.uploaded_by",
        back_populates="uploader",
        cascade="all",
    )

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'user')", name="chk_user_role"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


# ---------------------------------------------------------------------------
# 2. Tasks
# ---------------------------------------------------------------------------

class Task(Base, AuditMixin):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default=TaskStatus.TODO.value, nullable=False, index=True)
    priority = Column(String(10), default=TaskPriority.MEDIUM.value, nullable=False, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    assigned_to = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    estimated_hours = Column(Numeric(5, 2), nullable=True)
    actual_hours = Column(Numeric(5, 2), nullable=True)
    tags = Column(JSON, default=list, nullable=True)

    creator = relationship("User", foreign_keys=[created_by], back_populates="created_tasks")
    assignee = relationship("User", foreign_keys=[assigned_to], back_populates="assigned_tasks")
    documents = relationship(
        "Document",
        back_populates="task",
        cascade="all",
        order_by="Document.created_at.desc()",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('todo', 'in_progress', 'review', 'completed')",
            name="chk_task_status",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="chk_task_priority",
        ),
    )

    @property
    def is_overdue(self) -> bool:
        if self.due_date is None or self.status == TaskStatus.COMPLETED.value:
            return False
        return utcnow() > as_utc(self.due_date)

    @property
    def days_until_due(self) -> Optional[int]:
        if self.due_date is None:
            return None
        delta = as_utc(self.due_date) - utcnow()
        return math.ceil(delta.total_seconds() / 86400)

    @property
    def progress_percentage(self) -> int:
        return STATUS_PROGRESS.get(self.status, 0)

    def __repr__(self) -> str:
        return f"<Task {self.id} '{self.title}' ({self.status})>"


# ---------------------------------------------------------------------------
# 3. Documents
# ---------------------------------------------------------------------------

class Document(Base, AuditMixin):
    """
    A PDF attached to a task.

    ``task_id`` and ``uploaded_by`` are fixed at creation; assigning a
    different value afterwards raises ValidationFailedError. Soft delete
    flips ``is_active``; inactive rows do not count toward the per-task cap.
    """
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    task_id = Column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    uploaded_by = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_name = Column(String(255), nullable=False)
    file_name = Column(String(255), unique=True, nullable=False)
    file_path = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), default="application/pdf", nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    task = relationship("Task", back_populates="documents")
    uploader = relationship("User", foreign_keys=[uploaded_by], back_populates="uploaded_documents")

    __table_args__ = (
        CheckConstraint("mime_type = 'application/pdf'", name="chk_document_mime"),
        CheckConstraint("file_size > 0", name="chk_document_size"),
        Index("idx_documents_task_active", "task_id", "is_active"),
    )

    @validates("task_id", "uploaded_by")
    def _validate_immutable(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationFailedError(
                f"Document.{key} cannot be changed after creation",
                resource="document",
                resource_id=self.id,
                validation_errors=[{"field": key, "message": "immutable"}],
            )
        return value

    def __repr__(self) -> str:
        return f"<Document {self.original_name} task={self.task_id} active={self.is_active}>"


# ---------------------------------------------------------------------------
# 4. Login Audit Log
# ---------------------------------------------------------------------------

class LoginAuditLog(Base):
    __tablename__ = "login_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    success = Column(Boolean, nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max
    user_agent = Column(Text, nullable=True)
    failure_reason = Column(String(100), nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
