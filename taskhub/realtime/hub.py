"""
TaskHub Realtime Hub — WebSocket subscribers, task rooms and authorized fan-out.

Each connection is a Subscriber holding its Actor, the task rooms it joined
and an asyncio queue drained by the connection's sender coroutine. ``deliver``
may be called from any thread (request handlers run in the threadpool); it
hands messages to the connection's event loop via ``call_soon_threadsafe``.

Audience of an envelope is re-evaluated for every subscriber at delivery:

    task:{id}   subscriber joined the room AND may still read the task
                (checked against the task snapshot carried in the envelope)
    user:{id}   subscriber's actor is that user
    admins      subscriber's actor is an admin

A subscriber reached through several scopes receives the event once.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from taskhub.engine.context import Actor
from taskhub.security.permissions import TaskOperation, TaskRef, can_access_task

logger = logging.getLogger("taskhub.realtime.hub")

ADMINS_SCOPE = "admins"


def task_scope(task_id: str) -> str:
    return f"task:{task_id}"


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass
class WebSocketMessage:
    """Frame sent to clients."""
    event: str
    data: Dict[str, Any]
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        data = json.loads(json_str)
        return cls(
            event=data.get("event", ""),
            data=data.get("data", {}),
            timestamp=data.get("timestamp", ""),
        )


_subscriber_ids = itertools.count(1)


@dataclass(eq=False)
class Subscriber:
    actor: Actor
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue
    display_name: str = ""
    id: str = field(default_factory=lambda: f"conn_{next(_subscriber_ids)}")
    rooms: Set[str] = field(default_factory=set)
    closed: bool = False
    dropped: int = 0

    def offer(self, text: str) -> bool:
        """Queue a frame from any thread. Returns False once the connection is closed."""
        if self.closed:
            return False
        try:
            self.loop.call_soon_threadsafe(self._put, text)
            return True
        except RuntimeError:
            # event loop already closed
            self.closed = True
            return False

    def _put(self, text: Optional[str]) -> None:
        try:
            self.queue.put_nowait(text)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Send queue full for {self.id} (user {self.actor.id}); frame dropped")

    def _put_close(self) -> None:
        while self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    def close(self) -> None:
        """Ask the sender coroutine to stop. A ``None`` frame ends the stream."""
        if self.closed:
            return
        self.closed = True
        try:
            self.loop.call_soon_threadsafe(self._put_close)
        except RuntimeError:
            pass


class ConnectionHub:
    """Process-local registry of subscribers."""

    def __init__(self, send_queue_size: int = 256):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Subscriber] = {}
        self._send_queue_size = send_queue_size

    # ── Registration ──

    def register(
        self,
        actor: Actor,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        display_name: str = "",
    ) -> Subscriber:
        """Register a connection. Must be called on the connection's event loop unless ``loop`` is given."""
        sub = Subscriber(
            actor=actor,
            loop=loop or asyncio.get_running_loop(),
            queue=asyncio.Queue(maxsize=self._send_queue_size),
            display_name=display_name,
        )
        with self._lock:
            self._subscribers[sub.id] = sub
        logger.info(f"Subscriber {sub.id} connected: user {actor.id} (total: {self.connection_count})")
        return sub

    def unregister(self, sub: Subscriber) -> None:
        with self._lock:
            self._subscribers.pop(sub.id, None)
        sub.closed = True
        logger.info(f"Subscriber {sub.id} disconnected: user {sub.actor.id}")

    def join_task(self, sub: Subscriber, task_id: str) -> None:
        """Add a task room. Authorization is the caller's job."""
        with self._lock:
            sub.rooms.add(task_id)

    def leave_task(self, sub: Subscriber, task_id: str) -> None:
        with self._lock:
            sub.rooms.discard(task_id)

    # ── Identity changes ──

    def update_actor(self, user_id: str, actor: Actor) -> int:
        """Swap the actor on every connection of ``user_id`` (role change)."""
        count = 0
        with self._lock:
            for sub in self._subscribers.values():
                if sub.actor.id == user_id:
                    sub.actor = actor
                    count += 1
        return count

    def disconnect_user(self, user_id: str) -> int:
        """Close every connection of ``user_id`` (deactivation / deletion)."""
        with self._lock:
            targets = [s for s in self._subscribers.values() if s.actor.id == user_id]
        for sub in targets:
            sub.close()
        if targets:
            logger.info(f"Closed {len(targets)} connection(s) of user {user_id}")
        return len(targets)

    # ── Delivery ──

    def deliver(self, envelope: Dict[str, Any]) -> int:
        """
        Fan an envelope out to every subscriber in its audience.

        Envelope keys: ``event``, ``data``, ``scopes``, optional ``task``
        (TaskRef dict), optional ``exclude`` (subscriber ids), ``timestamp``.

        Returns:
            Number of subscribers the frame was queued for.
        """
        scopes = list(envelope.get("scopes") or [])
        task_data = envelope.get("task")
        task = TaskRef.from_dict(task_data) if task_data else None
        exclude = set(envelope.get("exclude") or [])
        frame = WebSocketMessage(
            event=envelope["event"],
            data=envelope.get("data") or {},
            timestamp=envelope.get("timestamp", ""),
        ).to_json()

        with self._lock:
            candidates = [s for s in self._subscribers.values() if s.id not in exclude]
            audience = [s for s in candidates if self._in_audience(s, scopes, task)]

        delivered = 0
        for sub in audience:
            if sub.offer(frame):
                delivered += 1
        logger.debug(f"Delivered {envelope['event']} to {delivered} subscriber(s)")
        return delivered

    @staticmethod
    def _in_audience(sub: Subscriber, scopes: Iterable[str], task: Optional[TaskRef]) -> bool:
        for scope in scopes:
            if scope == ADMINS_SCOPE:
                if sub.actor.is_admin:
                    return True
                continue
            kind, _, ident = scope.partition(":")
            if kind == "user":
                if sub.actor.id == ident:
                    return True
            elif kind == "task":
                if (
                    ident in sub.rooms
                    and task is not None
                    and task.id == ident
                    and can_access_task(sub.actor, task, TaskOperation.READ)
                ):
                    return True
        return False

    def send_to(self, sub: Subscriber, event: str, data: Dict[str, Any]) -> bool:
        """Direct reply to one connection (acks, errors, pong)."""
        return sub.offer(WebSocketMessage(event=event, data=data).to_json())

    # ── Introspection ──

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def connections_of(self, user_id: str) -> List[Subscriber]:
        with self._lock:
            return [s for s in self._subscribers.values() if s.actor.id == user_id]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            users = {s.actor.id for s in self._subscribers.values()}
            rooms = sum(len(s.rooms) for s in self._subscribers.values())
            return {
                "connections": len(self._subscribers),
                "users": len(users),
                "room_memberships": rooms,
            }

    def close_all(self) -> None:
        with self._lock:
            subs = list(self._subscribers.values())
        for sub in subs:
            sub.close()
