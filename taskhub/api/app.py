"""
TaskHub HTTP + WebSocket application.

``create_app`` wires the services into a container stored on
``app.state.container``. Route handlers are plain ``def`` functions, so the
server runs them in its threadpool; the quota guard and the realtime hub are
safe to call from those threads.

Run:
    taskhub run
or:
    uvicorn taskhub.api.app:create_app --factory --port 5000
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskhub import __version__
from taskhub.db.session import init_db
from taskhub.documents.quota import QuotaGuard
from taskhub.documents.service import DocumentService
from taskhub.documents.storage import FileStore
from taskhub.engine.cache import create_pubsub_client, create_session_store
from taskhub.engine.config import TaskHubConfig, get_config
from taskhub.engine.errors import (
    AuthenticationError,
    ForbiddenError,
    QuotaExceededError,
    TaskHubError,
    ValidationFailedError,
)
from taskhub.engine.logging import (
    init_logging,
    log,
    log_api_request,
    log_security_event,
    log_system_event,
    shutdown_logging,
)
from taskhub.engine.security import AuthService
from taskhub.realtime.hub import ConnectionHub
from taskhub.realtime.notifier import ChangeNotifier, RedisEventRelay
from taskhub.tasks.service import TaskService
from taskhub.users.service import UserService

logger = logging.getLogger("taskhub.api")

_OBJECT_TYPES = {"task": "tasks", "document": "documents", "user": "users"}


@dataclass
class Container:
    config: TaskHubConfig
    session_factory: sessionmaker
    session_store: Any
    auth: AuthService
    file_store: FileStore
    guard: QuotaGuard
    hub: ConnectionHub
    notifier: ChangeNotifier
    tasks: TaskService
    documents: DocumentService
    users: UserService
    relay: Optional[RedisEventRelay] = None


def build_container(
    config: TaskHubConfig,
    session_factory: Optional[sessionmaker] = None,
    session_store: Any = None,
) -> Container:
    if session_factory is None:
        db = config.database
        session_factory = init_db(
            db.url,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
            echo=db.echo,
        )
    if session_store is None:
        session_store = create_session_store(
            config.redis.url,
            ttl=config.security.session_timeout,
            db=config.redis.session_db,
        )

    sec = config.security
    docs = config.documents
    auth = AuthService(
        session_store,
        session_factory,
        session_timeout=sec.session_timeout,
        max_concurrent_sessions=sec.max_concurrent_sessions,
        bcrypt_rounds=sec.bcrypt_rounds,
        password_min_length=sec.password_min_length,
    )
    file_store = FileStore(docs.upload_dir, docs.staging_dir)
    guard = QuotaGuard(session_factory, file_store, cap=docs.max_docs_per_task)
    hub = ConnectionHub(send_queue_size=config.realtime.send_queue_size)

    relay = None
    if config.realtime.redis_relay:
        client = create_pubsub_client(config.redis.url, db=config.redis.pubsub_db)
        relay = RedisEventRelay(client, hub, channel=config.realtime.channel)
    notifier = ChangeNotifier(hub, relay=relay)

    return Container(
        config=config,
        session_factory=session_factory,
        session_store=session_store,
        auth=auth,
        file_store=file_store,
        guard=guard,
        hub=hub,
        notifier=notifier,
        tasks=TaskService(session_factory, notifier, file_store),
        documents=DocumentService(
            session_factory,
            guard,
            file_store,
            notifier,
            max_file_size_bytes=docs.max_file_size_bytes,
            max_files_per_request=docs.max_files_per_request,
            allowed_mime_types=docs.allowed_mime_types,
        ),
        users=UserService(session_factory, auth, notifier, file_store),
        relay=relay,
    )


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def _actor_id(request: Request) -> Optional[str]:
    actor = getattr(request.state, "actor", None)
    return actor.id if actor is not None else None


async def taskhub_error_handler(request: Request, exc: TaskHubError) -> JSONResponse:
    if isinstance(exc, ForbiddenError):
        log(log_security_event(
            "access_denied",
            _OBJECT_TYPES.get(exc.resource, "system"),
            actor_id=_actor_id(request),
            resource=exc.resource or "api",
            resource_id=exc.resource_id,
            operation=exc.operation,
            message=exc.message,
        ))
    elif isinstance(exc, AuthenticationError):
        log(log_security_event(
            "authentication_failed",
            "auth",
            actor_id=exc.actor_id,
            resource=request.url.path,
            message=exc.message,
        ))

    body = {"success": False, "message": exc.message}
    if isinstance(exc, QuotaExceededError):
        body["data"] = {
            "allowedCount": exc.allowed_count,
            "currentCount": exc.current_count,
            "maxDocuments": exc.cap,
        }
    elif isinstance(exc, ValidationFailedError) and exc.validation_errors:
        body["errors"] = exc.validation_errors
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())[1:]) or None,
            "message": err.get("msg", "invalid"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message},
        headers=getattr(exc, "headers", None),
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[TaskHubConfig] = None,
    session_factory: Optional[sessionmaker] = None,
    session_store: Any = None,
) -> FastAPI:
    config = config or get_config()
    container = build_container(config, session_factory=session_factory, session_store=session_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lc = config.logging
        init_logging(
            log_dir=lc.directory,
            level=lc.level,
            flush_interval_ms=lc.async_queue.flush_interval_ms,
            flush_batch_size=lc.async_queue.flush_batch_size,
            max_queue_size=lc.async_queue.max_queue_size,
        )
        if container.relay is not None:
            container.relay.start()
        log(log_system_event("startup", details={"version": __version__, "environment": config.environment}))
        yield
        container.hub.close_all()
        if container.relay is not None:
            container.relay.stop()
        log(log_system_event("shutdown"))
        shutdown_logging()

    app = FastAPI(
        title="TaskHub API",
        description="Task management with access-controlled documents and realtime updates",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log(log_api_request(
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            actor_id=_actor_id(request),
        ))
        return response

    app.add_exception_handler(TaskHubError, taskhub_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    from taskhub.api.routes import auth, documents, health, tasks, users, ws

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(tasks.router)
    app.include_router(documents.router)
    app.include_router(users.router)
    app.include_router(ws.router)

    logger.info(f"TaskHub API created (environment: {config.environment})")
    return app
