"""Session store contract and the in-memory development store.

This module provides the `SessionStore` interface shared by
`cachesession.session_store.RedisSessionStore` and the process-local
`InMemorySessionStore` used when no cache backend is configured.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Optional, Tuple

from .values import Values

logger = logging.getLogger(__name__)


class SessionStoreError(Exception):
    """Raised when the backing store cannot load or save a session."""


class SessionDecodeError(SessionStoreError):
    """Raised when stored session data cannot be decoded."""


class SessionStore(ABC):
    """Persistence contract for session values keyed by session id."""

    # On a miss, whether the manager keeps the key presented by the client
    # (True) or mints a new one (False).
    reuses_stale_keys = True

    @abstractmethod
    def load(self, key: str) -> Tuple[Optional[Values], bool]:
        """Return ``(values, True)`` on a hit and ``(None, False)`` on a miss.

        Backend and decode failures raise `SessionStoreError`.
        """

    @abstractmethod
    def save(self, key: str, values: Values, expiration: timedelta) -> None:
        """Persist `values` under `key`, expiring after `expiration`."""


class ReadWriteLock:
    """Lock allowing many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True

    def release_write(self) -> None:
        with self._cond:
            self._writing = False
            self._cond.notify_all()


class InMemorySessionStore(SessionStore):
    """Process-local session store for development and tests.

    Sessions never expire and are lost when the process exits. Values are
    copied on the way in and out so callers never share state with the store.
    """

    reuses_stale_keys = False

    def __init__(self) -> None:
        self.sessions: Dict[str, Values] = {}
        self._lock = ReadWriteLock()
        logger.warning(
            "No cache backend configured: storing sessions in memory with no "
            "expiration. This should only happen in development, not production."
        )

    def load(self, key: str) -> Tuple[Optional[Values], bool]:
        self._lock.acquire_read()
        try:
            stored = self.sessions.get(key)
        finally:
            self._lock.release_read()
        if stored is None:
            return None, False
        return Values(copy.deepcopy(stored)), True

    def save(self, key: str, values: Values, expiration: timedelta) -> None:
        """Store a copy of `values`; `expiration` is ignored."""
        snapshot = Values(copy.deepcopy(dict(values)))
        self._lock.acquire_write()
        try:
            self.sessions[key] = snapshot
        finally:
            self._lock.release_write()
