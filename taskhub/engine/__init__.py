"""TaskHub Engine — Configuration, errors, logging, sessions and the actor model."""

from taskhub.engine.context import Actor, Role  # noqa: F401
from taskhub.engine.errors import (  # noqa: F401
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    TaskHubError,
    ValidationFailedError,
)

__all__ = [
    "Actor",
    "Role",
    "TaskHubError",
    "NotFoundError",
    "ForbiddenError",
    "QuotaExceededError",
    "ValidationFailedError",
    "AuthenticationError",
]
