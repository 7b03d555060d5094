"""
TaskHub Change Notifier — publishes committed state changes to realtime subscribers.

Services call ``notify`` after their transaction commits. The envelope
carries the scopes it is addressed to and, for task events, an ownership
snapshot of the task so the hub can re-check read access per subscriber.

With ``realtime.redis_relay`` enabled, envelopes go through a Redis channel
so every worker process delivers to its own connections.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from taskhub.engine.cache import RedisCache
from taskhub.realtime.hub import ADMINS_SCOPE, ConnectionHub, task_scope, user_scope
from taskhub.security.permissions import TaskRef

logger = logging.getLogger("taskhub.realtime.notifier")


class EventKind:
    TASK_CREATED = "taskCreated"
    TASK_UPDATED = "taskUpdated"
    TASK_DELETED = "taskDeleted"
    TASK_ASSIGNED = "taskAssigned"
    DOCUMENTS_UPLOADED = "documentsUploaded"
    DOCUMENT_DELETED = "documentDeleted"
    USER_UPDATED = "userUpdated"
    USER_TYPING = "userTyping"
    USER_PRESENCE = "userPresenceUpdate"


def task_audience(task: Any) -> List[str]:
    """Task room, creator, assignee and admins."""
    scopes = [task_scope(task.id), user_scope(task.created_by)]
    if task.assigned_to:
        scopes.append(user_scope(task.assigned_to))
    scopes.append(ADMINS_SCOPE)
    return scopes


def user_audience(user_id: str) -> List[str]:
    """Admins and the user themselves."""
    return [ADMINS_SCOPE, user_scope(user_id)]


def build_envelope(
    scopes: Iterable[str],
    event_kind: str,
    payload: Dict[str, Any],
    task: Any = None,
    exclude: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    return {
        "event": event_kind,
        "data": payload,
        "scopes": list(scopes),
        "task": TaskRef.of(task).to_dict() if task is not None else None,
        "exclude": list(exclude or []),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class RedisEventRelay:
    """
    Cross-process relay over Redis pub/sub.

    ``publish`` pushes an envelope to the channel; a background thread
    subscribed to the same channel hands every envelope to the local hub.
    """

    def __init__(self, client: RedisCache, hub: ConnectionHub, channel: str = "events"):
        self._client = client
        self._hub = hub
        self._channel = channel
        self._pubsub = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self) -> bool:
        pubsub = self._client.pubsub()
        if pubsub is None:
            logger.warning("Redis unavailable, realtime relay disabled")
            return False
        pubsub.subscribe(self._client.channel_name(self._channel))
        self._pubsub = pubsub
        self._running = True
        self._thread = threading.Thread(target=self._listen, name="taskhub-event-relay", daemon=True)
        self._thread.start()
        logger.info(f"Realtime relay subscribed to {self._client.channel_name(self._channel)}")
        return True

    def stop(self, timeout: float = 2.0) -> None:
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    @property
    def is_running(self) -> bool:
        return self._running

    def publish(self, envelope: Dict[str, Any]) -> bool:
        """True when at least one worker (this one included) received the envelope."""
        if not self._running:
            return False
        return self._client.publish(self._channel, envelope) > 0

    def handle_message(self, message: Optional[Dict[str, Any]]) -> int:
        if not message or message.get("type") != "message":
            return 0
        try:
            envelope = json.loads(message["data"])
        except (TypeError, ValueError) as e:
            logger.debug(f"Failed to parse relay message: {e}")
            return 0
        return self._hub.deliver(envelope)

    def _listen(self) -> None:
        while self._running:
            try:
                self.handle_message(self._pubsub.get_message(timeout=1.0))
            except Exception as e:
                logger.error(f"Realtime relay listener error: {e}")
                if not self._running:
                    return


class ChangeNotifier:
    """Entry point for services: ``notify(scopes, event_kind, payload, task=None, exclude=None)``."""

    def __init__(self, hub: ConnectionHub, relay: Optional[RedisEventRelay] = None):
        self._hub = hub
        self._relay = relay

    @property
    def hub(self) -> ConnectionHub:
        return self._hub

    def notify(
        self,
        scopes: Iterable[str],
        event_kind: str,
        payload: Dict[str, Any],
        task: Any = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Fan out one event. ``task`` (row or TaskRef) is required for task
        scopes to reach room members; ``exclude`` lists subscriber ids to skip.
        """
        envelope = build_envelope(scopes, event_kind, payload, task=task, exclude=exclude)
        if self._relay is not None and self._relay.publish(envelope):
            return
        self._hub.deliver(envelope)

    def notify_task(self, event_kind: str, task: Any, payload: Dict[str, Any]) -> None:
        self.notify(task_audience(task), event_kind, payload, task=task)

    def notify_user(self, event_kind: str, user_id: str, payload: Dict[str, Any]) -> None:
        self.notify(user_audience(user_id), event_kind, payload)
