"""
TaskHub Redis layer — session store and realtime relay channel.

Redis DB allocation (configurable in taskhub.yaml):
  DB 4: Session store (TTL=session_timeout)
  DB 6: Realtime pub/sub relay

Redis holds only ephemeral state. Authorization decisions are never cached:
roles and active flags are always re-read from the database.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional, Set

import redis

logger = logging.getLogger("taskhub.engine.cache")


class RedisCache:
    """
    Redis wrapper with typed operations and a circuit breaker.

    On repeated failures the breaker opens and every call degrades to a
    miss (None / False / empty) until the failure window has passed.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "taskhub:",
        default_ttl: int = 300,
        db: int = 0,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client: Optional[redis.Redis] = None
        self._available = False

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize the Redis connection."""
        try:
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis connected: DB {self._db} ({self._prefix})")
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self) -> None:
        now = time.time()
        if self._failure_count == 0:
            self._first_failure_time = now

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            elapsed = now - self._first_failure_time
            if elapsed <= self._failure_window:
                self._circuit_open = True
                logger.error(
                    f"Redis circuit breaker OPEN: {self._failure_count} failures in {elapsed:.1f}s"
                )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Core Operations ──

    def get(self, key: str) -> Optional[str]:
        """Get a value. Returns None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL. Returns False on failure."""
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis SET failed: {e}")
            return False

    def delete(self, key: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.delete(self._make_key(key))
            return True
        except redis.RedisError:
            self._record_failure()
            return False

    def exists(self, key: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            return bool(self._client.exists(self._make_key(key)))
        except redis.RedisError:
            self._record_failure()
            return False

    # ── JSON Operations ──

    def get_json(self, key: str) -> Optional[Any]:
        """Get and deserialize a JSON value."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Serialize and set a JSON value."""
        try:
            return self.set(key, json.dumps(value, default=str), ttl=ttl)
        except (TypeError, ValueError):
            return False

    # ── Set Operations (per-user session tracking) ──

    def sadd(self, key: str, *values: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.sadd(self._make_key(key), *values)
            return True
        except redis.RedisError:
            self._record_failure()
            return False

    def srem(self, key: str, *values: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.srem(self._make_key(key), *values)
            return True
        except redis.RedisError:
            self._record_failure()
            return False

    def smembers(self, key: str) -> Set[str]:
        if not self._check_circuit():
            return set()
        try:
            return self._client.smembers(self._make_key(key))
        except redis.RedisError:
            self._record_failure()
            return set()

    def scard(self, key: str) -> int:
        if not self._check_circuit():
            return 0
        try:
            return self._client.scard(self._make_key(key))
        except redis.RedisError:
            self._record_failure()
            return 0

    # ── Pub/Sub ──

    def publish(self, channel: str, message: Any) -> int:
        """Publish a JSON message. Returns the receiver count, or -1 on failure."""
        if not self._check_circuit():
            return -1
        try:
            return self._client.publish(self._make_key(channel), json.dumps(message, default=str))
        except redis.RedisError:
            self._record_failure()
            return -1

    def pubsub(self) -> Optional[redis.client.PubSub]:
        """Return a raw PubSub handle, or None when Redis is unavailable."""
        if not self._check_circuit():
            return None
        return self._client.pubsub(ignore_subscribe_messages=True)

    def channel_name(self, channel: str) -> str:
        return self._make_key(channel)

    # ── Health & Management ──

    def ping(self) -> bool:
        if not self._client:
            return False
        try:
            return self._client.ping()
        except redis.RedisError:
            return False

    def close(self) -> None:
        """Close the Redis connection and release resources."""
        if self._client is not None:
            try:
                self._client.close()
            except redis.RedisError as e:
                logger.debug(f"Redis close failed: {e}")
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Factory functions, one Redis DB per concern
# ---------------------------------------------------------------------------

def create_session_store(redis_url: str, ttl: int = 3600, db: int = 4) -> RedisCache:
    """Create the session store."""
    cache = RedisCache(redis_url=redis_url, prefix="taskhub:session:", default_ttl=ttl, db=db)
    cache.connect()
    return cache


def create_pubsub_client(redis_url: str, db: int = 6) -> RedisCache:
    """Create the realtime relay client."""
    cache = RedisCache(redis_url=redis_url, prefix="taskhub:", default_ttl=60, db=db)
    cache.connect()
    return cache
