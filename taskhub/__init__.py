"""
TaskHub — Task management API with access-controlled documents and live updates.
Version: 1.0

Packages:
    engine     — config, errors, structured logging, sessions, actor model
    db         — SQLAlchemy models, session management, pre-commit transforms
    security   — access control evaluator (tasks, documents, users)
    documents  — quota guard, file store, document workflow
    tasks      — task workflow
    users      — user management
    realtime   — change notifier and WebSocket connection hub
    api        — FastAPI application, routes, WebSocket endpoint
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "security", "documents", "tasks", "users", "realtime", "api"]
