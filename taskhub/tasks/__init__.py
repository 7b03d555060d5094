"""TaskHub task workflow."""

from taskhub.tasks.service import TaskService

__all__ = ["TaskService"]
