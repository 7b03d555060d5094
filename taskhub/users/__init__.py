"""TaskHub user management."""

from taskhub.users.service import UserService

__all__ = ["UserService"]
