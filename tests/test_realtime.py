"""Unit tests for taskhub.realtime — ConnectionHub fan-out, ChangeNotifier, Redis relay."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from taskhub.engine.context import Actor, Role
from taskhub.realtime.hub import (
    ADMINS_SCOPE,
    ConnectionHub,
    WebSocketMessage,
    task_scope,
    user_scope,
)
from taskhub.realtime.notifier import (
    ChangeNotifier,
    EventKind,
    RedisEventRelay,
    build_envelope,
    task_audience,
    user_audience,
)
from taskhub.security.permissions import TaskRef

ADMIN = Actor(id="a1", role=Role.ADMIN)
U1 = Actor(id="u1", role=Role.USER)
U2 = Actor(id="u2", role=Role.USER)
U3 = Actor(id="u3", role=Role.USER)
T1 = TaskRef(id="t1", created_by="u1", assigned_to="u2")


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def hub():
    return ConnectionHub(send_queue_size=8)


def drain(loop, sub):
    """Run pending call_soon_threadsafe callbacks, then empty the queue."""
    loop.run_until_complete(asyncio.sleep(0))
    frames = []
    while not sub.queue.empty():
        raw = sub.queue.get_nowait()
        frames.append(json.loads(raw) if raw is not None else None)
    return frames


class TestWebSocketMessage:

    def test_roundtrip(self):
        msg = WebSocketMessage(event="pong", data={"a": 1})
        parsed = WebSocketMessage.from_json(msg.to_json())
        assert parsed.event == "pong"
        assert parsed.data == {"a": 1}
        assert parsed.timestamp == msg.timestamp


class TestScopes:

    def test_task_audience(self):
        assert task_audience(T1) == ["task:t1", "user:u1", "user:u2", "admins"]

    def test_task_audience_unassigned(self):
        assert task_audience(TaskRef(id="t2", created_by="u1")) == ["task:t2", "user:u1", "admins"]

    def test_user_audience(self):
        assert user_audience("u9") == [ADMINS_SCOPE, "user:u9"]


class TestConnectionHub:

    def test_register_unregister(self, hub, loop):
        sub = hub.register(U1, loop=loop, display_name="Una One")
        assert hub.connection_count == 1
        assert hub.connections_of("u1") == [sub]
        hub.unregister(sub)
        assert hub.connection_count == 0
        assert sub.closed is True

    def test_room_requires_read_access_at_delivery(self, hub, loop):
        """A stranger who somehow sits in the room still gets nothing."""
        member = hub.register(U2, loop=loop)
        stranger = hub.register(U3, loop=loop)
        hub.join_task(member, "t1")
        hub.join_task(stranger, "t1")

        delivered = hub.deliver(build_envelope([task_scope("t1")], EventKind.TASK_UPDATED, {"id": "t1"}, task=T1))

        assert delivered == 1
        assert drain(loop, member)[0]["event"] == "taskUpdated"
        assert drain(loop, stranger) == []

    def test_task_scope_without_snapshot_reaches_nobody(self, hub, loop):
        sub = hub.register(U1, loop=loop)
        hub.join_task(sub, "t1")
        assert hub.deliver(build_envelope([task_scope("t1")], "x", {})) == 0

    def test_room_membership_needed_for_task_scope(self, hub, loop):
        sub = hub.register(U1, loop=loop)
        assert hub.deliver(build_envelope([task_scope("t1")], "x", {}, task=T1)) == 0
        assert drain(loop, sub) == []

    def test_user_scope(self, hub, loop):
        u1 = hub.register(U1, loop=loop)
        u2 = hub.register(U2, loop=loop)
        hub.deliver(build_envelope([user_scope("u2")], EventKind.TASK_ASSIGNED, {"taskId": "t1"}))
        assert drain(loop, u1) == []
        assert drain(loop, u2)[0]["data"] == {"taskId": "t1"}

    def test_admins_scope(self, hub, loop):
        admin = hub.register(ADMIN, loop=loop)
        user = hub.register(U1, loop=loop)
        hub.deliver(build_envelope([ADMINS_SCOPE], EventKind.USER_PRESENCE, {"status": "online"}))
        assert len(drain(loop, admin)) == 1
        assert drain(loop, user) == []

    def test_each_subscriber_receives_once(self, hub, loop):
        """Creator in the room is reached by task, user and (not) admin scope, but gets one frame."""
        creator = hub.register(U1, loop=loop)
        admin = hub.register(ADMIN, loop=loop)
        hub.join_task(creator, "t1")
        hub.join_task(admin, "t1")

        delivered = hub.deliver(build_envelope(task_audience(T1), EventKind.TASK_UPDATED, {}, task=T1))

        assert delivered == 2
        assert len(drain(loop, creator)) == 1
        assert len(drain(loop, admin)) == 1

    def test_exclude(self, hub, loop):
        a = hub.register(U1, loop=loop)
        b = hub.register(U1, loop=loop)
        hub.deliver(build_envelope([user_scope("u1")], "x", {}, exclude=[a.id]))
        assert drain(loop, a) == []
        assert len(drain(loop, b)) == 1

    def test_update_actor_changes_audience(self, hub, loop):
        sub = hub.register(U3, loop=loop)
        hub.join_task(sub, "t1")
        assert hub.deliver(build_envelope([task_scope("t1")], "x", {}, task=T1)) == 0

        assert hub.update_actor("u3", Actor(id="u3", role=Role.ADMIN)) == 1
        assert hub.deliver(build_envelope([task_scope("t1")], "x", {}, task=T1)) == 1

    def test_disconnect_user_sends_close_frame(self, hub, loop):
        sub = hub.register(U1, loop=loop)
        other = hub.register(U2, loop=loop)
        assert hub.disconnect_user("u1") == 1
        assert drain(loop, sub) == [None]
        assert sub.closed is True
        assert other.closed is False
        assert sub.offer("late") is False

    def test_full_queue_drops_frames(self, loop):
        hub = ConnectionHub(send_queue_size=2)
        sub = hub.register(U1, loop=loop)
        for _ in range(4):
            hub.send_to(sub, "pong", {})
        assert len(drain(loop, sub)) == 2
        assert sub.dropped == 2

    def test_close_frame_fits_in_full_queue(self, loop):
        hub = ConnectionHub(send_queue_size=1)
        sub = hub.register(U1, loop=loop)
        hub.send_to(sub, "pong", {})
        sub.close()
        assert drain(loop, sub) == [None]

    def test_stats(self, hub, loop):
        a = hub.register(U1, loop=loop)
        hub.register(U1, loop=loop)
        hub.join_task(a, "t1")
        assert hub.get_stats() == {"connections": 2, "users": 1, "room_memberships": 1}

    def test_leave_task(self, hub, loop):
        sub = hub.register(U1, loop=loop)
        hub.join_task(sub, "t1")
        hub.leave_task(sub, "t1")
        assert hub.deliver(build_envelope([task_scope("t1")], "x", {}, task=T1)) == 0


class TestChangeNotifier:

    def test_local_delivery(self, hub, loop):
        sub = hub.register(U2, loop=loop)
        ChangeNotifier(hub).notify_task(EventKind.TASK_CREATED, T1, {"id": "t1"})
        frames = drain(loop, sub)
        assert frames[0]["event"] == "taskCreated"
        assert frames[0]["data"] == {"id": "t1"}

    def test_notify_user(self, hub, loop):
        admin = hub.register(ADMIN, loop=loop)
        target = hub.register(U1, loop=loop)
        other = hub.register(U2, loop=loop)
        ChangeNotifier(hub).notify_user(EventKind.USER_UPDATED, "u1", {"action": "updated"})
        assert len(drain(loop, admin)) == 1
        assert len(drain(loop, target)) == 1
        assert drain(loop, other) == []

    def test_envelope_carries_snapshot(self):
        env = build_envelope(["task:t1"], "x", {}, task=T1, exclude=["conn_1"])
        assert env["task"] == {"id": "t1", "created_by": "u1", "assigned_to": "u2"}
        assert env["exclude"] == ["conn_1"]
        assert env["timestamp"]

    def test_relay_used_when_published(self):
        hub = MagicMock()
        relay = MagicMock()
        relay.publish.return_value = True
        ChangeNotifier(hub, relay=relay).notify(["admins"], "x", {})
        relay.publish.assert_called_once()
        hub.deliver.assert_not_called()

    def test_falls_back_to_local_when_relay_fails(self):
        hub = MagicMock()
        relay = MagicMock()
        relay.publish.return_value = False
        ChangeNotifier(hub, relay=relay).notify(["admins"], "x", {})
        hub.deliver.assert_called_once()


class TestRedisEventRelay:

    def test_publish_requires_running(self):
        client = MagicMock()
        relay = RedisEventRelay(client, MagicMock())
        assert relay.publish({"event": "x"}) is False
        client.publish.assert_not_called()

    def test_start_without_redis(self):
        client = MagicMock()
        client.pubsub.return_value = None
        relay = RedisEventRelay(client, MagicMock())
        assert relay.start() is False
        assert relay.is_running is False

    def test_start_subscribes_and_publishes(self):
        client = MagicMock()
        client.channel_name.return_value = "taskhub:events"
        client.pubsub.return_value.get_message.return_value = None
        client.publish.return_value = 1
        relay = RedisEventRelay(client, MagicMock(), channel="events")
        try:
            assert relay.start() is True
            client.pubsub.return_value.subscribe.assert_called_once_with("taskhub:events")
            assert relay.publish({"event": "x"}) is True
            client.publish.assert_called_once_with("events", {"event": "x"})
        finally:
            relay.stop()
        assert relay.is_running is False

    def test_handle_message(self):
        hub = MagicMock()
        hub.deliver.return_value = 3
        relay = RedisEventRelay(MagicMock(), hub)
        envelope = {"event": "taskUpdated", "scopes": ["admins"], "data": {}}
        assert relay.handle_message({"type": "message", "data": json.dumps(envelope)}) == 3
        hub.deliver.assert_called_once_with(envelope)

    @pytest.mark.parametrize(
        "message",
        [None, {"type": "subscribe", "data": 1}, {"type": "message", "data": "{broken"}],
    )
    def test_handle_message_ignores(self, message):
        hub = MagicMock()
        assert RedisEventRelay(MagicMock(), hub).handle_message(message) == 0
        hub.deliver.assert_not_called()
