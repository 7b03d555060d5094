"""Liveness endpoint with database, session store and realtime stats."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from taskhub import __version__
from taskhub.api.deps import get_container

logger = logging.getLogger("taskhub.api.health")

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health(container=Depends(get_container)):
    database = "ok"
    try:
        with container.session_factory() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        database = "unavailable"

    sessions = "ok" if container.session_store.ping() else "unavailable"
    healthy = database == "ok"
    body = {
        "success": healthy,
        "message": "TaskHub API is running" if healthy else "Database unavailable",
        "data": {
            "version": __version__,
            "environment": container.config.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": database,
            "sessionStore": sessions,
            "realtime": container.hub.get_stats(),
        },
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
