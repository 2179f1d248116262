"""
Key-value cache with TTL plus publish/subscribe.

Two backends share the same surface:

- RedisCache: the production store, backed by redis-py.
- InMemoryCache: process-local dictionaries, so the pipeline can run
  (and be tested) without a Redis server.

Values are strings; the JSON helpers on the base class are what the
fetcher, scorer and orchestrator actually use.
"""

import json
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], None]


class Cache:
    """Common surface of the cache backends."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def publish(self, channel: str, message: str) -> int:
        raise NotImplementedError

    def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            self.delete(key)
            return None

    def set_json(self, key: str, value: Any, ttl: int) -> None:
        self.set(key, json.dumps(value), ttl)


class InMemoryCache(Cache):
    """In-memory cache backend using Python data structures."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._subscribers: Dict[str, List[MessageHandler]] = defaultdict(list)
        self._closed = False
        logger.info("Initialized in-memory cache backend")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until `key` expires, or None when absent."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def publish(self, channel: str, message: str) -> int:
        with self._lock:
            handlers = list(self._subscribers.get(channel, []))
        for handler in handlers:
            handler(channel, message)
        return len(handlers)

    def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        with self._lock:
            self._subscribers[channel].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers.get(channel, []):
                    self._subscribers[channel].remove(handler)

        return unsubscribe

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        """Clear all data (useful for testing)."""
        with self._lock:
            self._entries.clear()
            self._subscribers.clear()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.clear()
        logger.info("In-memory cache closed")


class RedisCache(Cache):
    """Redis-backed cache and broadcast channel."""

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self.url = url
        self._client = client or redis.Redis.from_url(url, decode_responses=True)
        self._listeners: List[Any] = []
        self._closed = False

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self._client.setex(key, ttl, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def publish(self, channel: str, message: str) -> int:
        return self._client.publish(channel, message)

    def subscribe(self, channel: str, handler: MessageHandler) -> Callable[[], None]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{channel: lambda msg: handler(msg["channel"], msg["data"])})
        listener = pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        self._listeners.append(listener)

        def unsubscribe() -> None:
            listener.stop()
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for listener in self._listeners:
            try:
                listener.stop()
            except Exception as e:
                logger.warning(f"Failed to stop Redis listener: {e}")
        self._listeners.clear()
        try:
            self._client.close()
            logger.info("Redis connection closed")
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
