"""
Pre-commit transforms applied explicitly by the services.

Each function mutates the row it is given and reports whether it changed
anything. Nothing here is registered as an ORM event hook.
"""

from __future__ import annotations

from typing import Optional

from taskhub.db.base import utcnow
from taskhub.db.models import Task, TaskStatus, User
from taskhub.engine.security import hash_password


def hash_password_change(user: User, new_password: Optional[str], rounds: int = 12) -> bool:
    """Store the bcrypt hash of ``new_password`` on ``user``. No-op for None."""
    if new_password is None:
        return False
    user.password_hash = hash_password(new_password, rounds)
    return True


def apply_status_transition(task: Task, new_status: Optional[str]) -> bool:
    """
    Set ``task.status`` and keep ``completed_at`` consistent with it.

    Entering ``completed`` stamps completed_at; leaving it clears the stamp.
    Re-submitting the current status changes nothing.
    """
    if new_status is None or new_status == task.status:
        return False
    task.status = new_status
    if new_status == TaskStatus.COMPLETED.value:
        task.completed_at = utcnow()
    else:
        task.completed_at = None
    return True
