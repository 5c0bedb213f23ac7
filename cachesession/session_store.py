"""Session store glue: the Redis-backed store and backend selection.

Session values are stored as UTF-8 JSON blobs under
``<prefix>:session:<key>`` with a relative TTL in whole seconds; Redis
handles eviction.
"""

import json
import logging
import math
from datetime import timedelta
from typing import Any, Optional, Tuple

import redis

from .session_store_base import (
    InMemorySessionStore,
    SessionDecodeError,
    SessionStore,
    SessionStoreError,
)
from .values import Values

logger = logging.getLogger(__name__)


def encode_values(values: Values) -> bytes:
    """Serialize session values to bytes."""
    try:
        return json.dumps(dict(values), separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SessionStoreError(f"session values are not serializable: {e}") from e


def decode_values(raw: bytes) -> Values:
    """Deserialize bytes produced by `encode_values`."""
    try:
        data = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SessionDecodeError(f"corrupt session payload: {e}") from e
    if not isinstance(data, dict):
        raise SessionDecodeError(
            f"session payload must be an object, got {type(data).__name__}"
        )
    return Values(data)


class RedisSessionStore(SessionStore):
    """Session store backed by a shared Redis client.

    The client handles its own connection pooling and timeouts and is safe to
    share between concurrent requests.
    """

    reuses_stale_keys = True

    def __init__(self, client: Any, prefix: str = "cachesession"):
        self.client = client
        self.prefix = f"{prefix}:session:"

    @classmethod
    def from_url(cls, redis_url: str, prefix: str = "cachesession") -> "RedisSessionStore":
        """Connect to `redis_url`, verify the connection and wrap the client."""
        try:
            client = redis.from_url(redis_url)
            # test connection
            client.ping()
        except redis.RedisError as e:
            logger.exception("Failed to connect to Redis at %s: %s", redis_url, e)
            raise
        return cls(client, prefix=prefix)

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    def load(self, key: str) -> Tuple[Optional[Values], bool]:
        try:
            raw = self.client.get(self._key(key))
        except UnicodeDecodeError as e:
            # clients built with decode_responses=True decode inside get()
            raise SessionDecodeError(f"corrupt session payload: {e}") from e
        except redis.RedisError as e:
            raise SessionStoreError(f"failed to load session: {e}") from e
        if raw is None:
            return None, False
        return decode_values(raw), True

    def save(self, key: str, values: Values, expiration: timedelta) -> None:
        payload = encode_values(values)
        try:
            if expiration > timedelta(0):
                # round up so a fraction of a second never shortens the TTL
                ttl = max(1, math.ceil(expiration.total_seconds()))
                self.client.set(self._key(key), payload, ex=ttl)
            else:
                self.client.set(self._key(key), payload)
        except redis.RedisError as e:
            raise SessionStoreError(f"failed to save session: {e}") from e


def create_store(client: Optional[Any] = None, prefix: str = "cachesession") -> SessionStore:
    """Pick the backend: Redis when a client is supplied, otherwise in-memory."""
    if client is not None:
        return RedisSessionStore(client, prefix=prefix)
    return InMemorySessionStore()


# Factory to pick backend from the environment (Redis or in-memory)
def create_default_store(redis_url: Optional[str], prefix: str = "cachesession") -> SessionStore:
    if redis_url:
        try:
            return RedisSessionStore.from_url(redis_url, prefix=prefix)
        except (OSError, redis.RedisError) as e:
            logger.warning("Falling back to in-memory session store: %s", e)
    return InMemorySessionStore()
