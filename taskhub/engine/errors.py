"""
TaskHub Error Hierarchy — Structured exceptions for request handling.

Every error is terminal for the request that raised it; nothing here is
retried. The API layer maps each class to an HTTP status and serialises
``to_dict()`` into security/execution log entries.

Hierarchy:
    TaskHubError
    ├── NotFoundError          — Resource absent or soft-deleted (404)
    ├── ForbiddenError         — Access evaluator denied the operation (403)
    ├── QuotaExceededError     — Upload batch rejected by the quota guard (400)
    ├── ValidationFailedError  — Malformed input at the transport boundary (400)
    ├── AuthenticationError    — Missing/invalid credentials or session (401)
    └── ConfigError            — Invalid taskhub.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class TaskHubError(Exception):
    """
    Base error for all TaskHub failures.
    All context is kept serializable so it can go straight into a log entry.
    """

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.resource: Optional[str] = context.get("resource")
        self.resource_id: Optional[str] = context.get("resource_id")
        self.actor_id: Optional[str] = context.get("actor_id")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("resource", "resource_id", "actor_id")
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.resource:
            parts.append(f"resource={self.resource}")
        if self.resource_id:
            parts.append(f"resource_id={self.resource_id}")
        return " | ".join(parts)


class NotFoundError(TaskHubError):
    """Task, document or user does not exist (or is soft-deleted)."""

    status_code = 404


class ForbiddenError(TaskHubError):
    """
    Access denied by the evaluator.
    Carries the operation that was attempted so the security log can record it.
    """

    status_code = 403

    def __init__(self, message: str = "Access denied", **context: Any):
        self.operation: Optional[str] = context.get("operation")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["operation"] = self.operation
        return d


class QuotaExceededError(TaskHubError):
    """
    Upload batch rejected: the task would exceed its active document cap.
    ``allowed_count`` is how many more documents the task could take.
    """

    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.allowed_count: int = context.get("allowed_count", 0)
        self.current_count: Optional[int] = context.get("current_count")
        self.cap: Optional[int] = context.get("cap")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["allowed_count"] = self.allowed_count
        d["current_count"] = self.current_count
        d["cap"] = self.cap
        return d


class ValidationFailedError(TaskHubError):
    """
    Input validation failed (request body, upload bounds, password policy).
    Includes field-level error details when available.
    """

    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[List[Dict[str, Any]]] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class AuthenticationError(TaskHubError):
    """Missing token, expired session, bad credentials or disabled account."""

    status_code = 401


class ConfigError(TaskHubError):
    """Configuration error — invalid taskhub.yaml."""
    pass
