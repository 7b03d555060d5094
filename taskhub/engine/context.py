"""
TaskHub Actor Model — The authenticated identity behind a request.

An Actor is derived per request from a verified session token by reading the
user row (role and active flag are never taken from the session payload), and
is passed explicitly into every service, evaluator and notifier call. There is
no ambient "current user".

Usage:
    from taskhub.engine.context import Actor, Role

    actor = Actor(id=user.id, role=Role(user.role))
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class Role(str, Enum):
    """User roles. Admins pass every resource check except self-targeting ones."""
    ADMIN = "admin"
    USER = "user"


@dataclass(frozen=True)
class Actor:
    """
    Immutable per-request identity.

    ``request_id`` exists only to correlate log entries of one request.
    """

    id: str
    role: Role
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}", compare=False)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def from_user(cls, user: Any) -> "Actor":
        """Build an Actor from a User row (or anything with ``id`` and ``role``)."""
        return cls(id=str(user.id), role=Role(user.role))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        return {
            "actor_id": self.id,
            "role": self.role.value,
            "request_id": self.request_id,
        }
