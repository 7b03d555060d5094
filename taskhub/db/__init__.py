"""TaskHub persistence layer — SQLAlchemy models, session management, pre-commit transforms."""

from taskhub.db.base import AuditMixin, Base
from taskhub.db.models import Document, LoginAuditLog, Task, User
from taskhub.db.session import close_db, init_db, session_scope

__all__ = [
    "AuditMixin",
    "Base",
    "Document",
    "LoginAuditLog",
    "Task",
    "User",
    "close_db",
    "init_db",
    "session_scope",
]
