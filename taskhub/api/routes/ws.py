"""
Realtime WebSocket endpoint.

Connect: WS /ws?token=<session token>

Client frames are ``{"event": ..., "data": {...}}``:
    joinTask   {taskId}   join a task room (requires read access)
    leaveTask  {taskId}
    typing     {taskId, isTyping}
    ping

Server frames: connected, joinedTask, leftTask, userTyping, pong, error,
plus every event published by the change notifier.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from taskhub.engine.context import Actor
from taskhub.engine.errors import AuthenticationError, NotFoundError
from taskhub.engine.logging import log, log_security_event
from taskhub.realtime.hub import ADMINS_SCOPE, ConnectionHub, Subscriber, task_scope
from taskhub.realtime.notifier import EventKind
from taskhub.security.permissions import TaskOperation, TaskRef, can_access_task

logger = logging.getLogger("taskhub.api.ws")

router = APIRouter()

POLICY_VIOLATION = 1008


async def _sender(websocket: WebSocket, sub: Subscriber) -> None:
    while True:
        frame = await sub.queue.get()
        if frame is None:
            await websocket.close()
            return
        await websocket.send_text(frame)


async def _authorize_task(container, sub: Subscriber, task_id: Any) -> Optional[TaskRef]:
    """Return the task snapshot when ``sub`` may read it, else reply with an error frame."""
    if not isinstance(task_id, str) or not task_id:
        container.hub.send_to(sub, "error", {"message": "taskId is required"})
        return None
    try:
        ref = await run_in_threadpool(container.tasks.get_ref, task_id)
    except NotFoundError:
        container.hub.send_to(sub, "error", {"message": "Task not found", "taskId": task_id})
        return None
    if not can_access_task(sub.actor, ref, TaskOperation.READ):
        log(log_security_event(
            "realtime_access_denied",
            "realtime",
            actor_id=sub.actor.id,
            resource="task",
            resource_id=task_id,
            operation=TaskOperation.READ.value,
            message="Access denied",
        ))
        container.hub.send_to(sub, "error", {"message": "Access denied", "taskId": task_id})
        return None
    return ref


async def _handle(container, sub: Subscriber, event: str, data: Dict[str, Any]) -> None:
    hub: ConnectionHub = container.hub

    if event == "ping":
        hub.send_to(sub, "pong", {})
    elif event == "joinTask":
        ref = await _authorize_task(container, sub, data.get("taskId"))
        if ref is not None:
            hub.join_task(sub, ref.id)
            hub.send_to(sub, "joinedTask", {"taskId": ref.id})
    elif event == "leaveTask":
        task_id = data.get("taskId")
        if isinstance(task_id, str):
            hub.leave_task(sub, task_id)
            hub.send_to(sub, "leftTask", {"taskId": task_id})
    elif event == "typing":
        ref = await _authorize_task(container, sub, data.get("taskId"))
        if ref is not None:
            container.notifier.notify(
                [task_scope(ref.id)],
                EventKind.USER_TYPING,
                {
                    "taskId": ref.id,
                    "userId": sub.actor.id,
                    "userName": sub.display_name,
                    "isTyping": bool(data.get("isTyping", True)),
                },
                task=ref,
                exclude=[sub.id],
            )
    else:
        hub.send_to(sub, "error", {"message": f"Unknown event: {event}"})


def _presence(container, actor: Actor, name: str, status: str) -> None:
    container.notifier.notify(
        [ADMINS_SCOPE],
        EventKind.USER_PRESENCE,
        {"userId": actor.id, "userName": name, "status": status},
    )


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    container = websocket.app.state.container

    try:
        actor = await run_in_threadpool(container.auth.resolve_actor, token)
    except AuthenticationError as e:
        log(log_security_event(
            "socket_rejected",
            "auth",
            actor_id=None,
            resource="/ws",
            message=e.message,
        ))
        await websocket.close(code=POLICY_VIOLATION, reason=e.message)
        return

    name = await run_in_threadpool(container.users.display_name, actor.id)
    await websocket.accept()
    sub = container.hub.register(actor, display_name=name)
    container.hub.send_to(sub, "connected", {
        "connectionId": sub.id,
        "userId": actor.id,
        "role": actor.role.value,
    })
    _presence(container, actor, name, "online")

    sender = asyncio.create_task(_sender(websocket, sub))
    try:
        while not sender.done():
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                container.hub.send_to(sub, "error", {"message": "Invalid message format"})
                continue
            if not isinstance(message, dict):
                container.hub.send_to(sub, "error", {"message": "Invalid message format"})
                continue
            data = message.get("data")
            await _handle(container, sub, str(message.get("event", "")), data if isinstance(data, dict) else {})
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # receive after the sender closed the socket
        logger.debug(f"Socket {sub.id} closed: {e}")
    finally:
        container.hub.unregister(sub)
        sender.cancel()
        _presence(container, actor, name, "offline")
