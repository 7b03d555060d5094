"""TaskHub access control — row-level authorization rules for tasks, documents and users."""

from taskhub.security.permissions import (
    DocumentOperation,
    DocumentRef,
    TaskOperation,
    TaskRef,
    UserOperation,
    can_access_document,
    can_access_task,
    can_list_users,
    can_manage_user,
    can_reassign_task,
    project_user_update,
    task_visibility_clause,
)

__all__ = [
    "DocumentOperation",
    "DocumentRef",
    "TaskOperation",
    "TaskRef",
    "UserOperation",
    "can_access_document",
    "can_access_task",
    "can_list_users",
    "can_manage_user",
    "can_reassign_task",
    "project_user_update",
    "task_visibility_clause",
]
