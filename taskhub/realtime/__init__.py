"""TaskHub realtime — connection hub and change notifier."""

from taskhub.realtime.hub import ConnectionHub, Subscriber, WebSocketMessage
from taskhub.realtime.notifier import ChangeNotifier, EventKind, RedisEventRelay, task_audience, user_audience

__all__ = [
    "ChangeNotifier",
    "ConnectionHub",
    "EventKind",
    "RedisEventRelay",
    "Subscriber",
    "WebSocketMessage",
    "task_audience",
    "user_audience",
]
