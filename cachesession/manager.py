"""Session manager: resolves the session for a request and commits it back.

Typical use inside a request handler::

    with manager.session(request, response) as ssn:
        ssn.values["v"] = "abc123"

which resolves the session (setting the cookie) on entry and commits the
values to the store on exit.
"""

import logging
import os
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Iterator, Optional

from fastapi import HTTPException, Request, Response
from prometheus_client import Counter

from .keygen import RandomnessError, new_key
from .session_store import create_default_store, create_store
from .session_store_base import SessionStore, SessionStoreError
from .values import Cookie, Session, Values

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "cachesession"
DEFAULT_EXPIRATION = timedelta(minutes=30)
DEFAULT_COOKIE_MAX_AGE = 60 * 30

# Metrics
MET_RESOLVED = Counter(
    "cachesession_resolved_total", "Sessions resolved, by outcome", ["outcome"]
)
MET_COMMITS = Counter("cachesession_commits_total", "Sessions written to the store")
MET_STORE_ERRORS = Counter(
    "cachesession_store_errors_total", "Session store failures", ["operation"]
)


class SessionConfigError(ValueError):
    """Raised when the manager is configured in a way that cannot work."""


class SessionManager:
    """Resolves, refreshes and persists cookie-keyed sessions.

    Holds configuration and a store only; all per-request state lives in the
    returned `Session`, so one manager can serve concurrent requests.
    """

    def __init__(
        self,
        store: SessionStore,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        expiration: timedelta = DEFAULT_EXPIRATION,
        cookie: Optional[Cookie] = None,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self.expiration = expiration
        self.cookie = cookie or Cookie(
            name=f"{key_prefix}_sessionid", path="/", max_age=DEFAULT_COOKIE_MAX_AGE
        )

    def resolve(self, request: Request, response: Response) -> Session:
        """Get or create the session for `request` and set its cookie on `response`.

        Does not write to the store. Raises `SessionConfigError`,
        `SessionStoreError` (including `SessionDecodeError`) or
        `RandomnessError`.
        """
        name = self.cookie.name
        if not name:
            raise SessionConfigError("session cookie name cannot be empty")

        key = request.cookies.get(name)
        if key:
            try:
                values, found = self.store.load(key)
            except SessionStoreError:
                MET_STORE_ERRORS.labels(operation="load").inc()
                raise
            if found:
                ssn = Session(key=key, values=values)
                outcome = "loaded"
            elif self.store.reuses_stale_keys:
                ssn = Session(key=key, values=Values())
                outcome = "readopted"
            else:
                ssn = Session(key=new_key(), values=Values())
                outcome = "new"
        else:
            ssn = Session(key=new_key(), values=Values())
            outcome = "new"

        MET_RESOLVED.labels(outcome=outcome).inc()
        logger.debug("Resolved %s session", outcome)

        ssn.cookie = self.cookie.with_value(ssn.key)
        set_cookie(response, ssn.cookie)
        return ssn

    def must_resolve(self, request: Request, response: Response) -> Session:
        """Like `resolve`, but abort the request with HTTP 500 on failure."""
        try:
            return self.resolve(request, response)
        except (SessionConfigError, SessionStoreError, RandomnessError) as e:
            logger.exception("Session resolution failed: %s", e)
            raise HTTPException(status_code=500, detail="session unavailable") from e

    def commit(self, response: Response, ssn: Session) -> None:
        """Write the session's values back to the store.

        The cookie was already set by `resolve`; `response` is not touched.
        """
        try:
            self.store.save(ssn.key, ssn.values, self.expiration)
        except SessionStoreError:
            MET_STORE_ERRORS.labels(operation="save").inc()
            raise
        MET_COMMITS.inc()

    def must_commit(self, response: Response, ssn: Session) -> None:
        """Like `commit`, but abort the request with HTTP 500 on failure."""
        try:
            self.commit(response, ssn)
        except SessionStoreError as e:
            logger.exception("Session commit failed: %s", e)
            raise HTTPException(status_code=500, detail="session unavailable") from e

    @contextmanager
    def session(self, request: Request, response: Response) -> Iterator[Session]:
        """Resolve on entry and commit on exit, both fail-fast.

        Leaving the block early with `HTTPException` (a redirect, a 4xx) still
        commits. Any other exception discards the session uncommitted.
        """
        ssn = self.must_resolve(request, response)
        try:
            yield ssn
        except HTTPException:
            self.must_commit(response, ssn)
            raise
        self.must_commit(response, ssn)


def set_cookie(response: Response, cookie: Cookie) -> None:
    """Write `cookie` onto `response` as a Set-Cookie header."""
    response.set_cookie(
        key=cookie.name,
        value=cookie.value,
        max_age=cookie.max_age,
        path=cookie.path,
        domain=cookie.domain,
        secure=cookie.secure,
        httponly=cookie.httponly,
        samesite=cookie.samesite,
    )


def create_manager(client: Optional[Any] = None, key_prefix: str = DEFAULT_KEY_PREFIX) -> SessionManager:
    """Return a manager with default settings.

    `client` is a live Redis client; pass None to keep sessions in memory
    (development only).
    """
    return SessionManager(create_store(client, prefix=key_prefix), key_prefix=key_prefix)


def create_default_manager() -> SessionManager:
    """Build a manager from environment variables.

    - `REDIS_URL`: Redis connection URL; unset or unreachable means in-memory.
    - `SESSION_KEY_PREFIX`: cookie name and Redis key namespace.
    - `SESSION_EXPIRATION_SECONDS`: TTL for stored sessions.
    - `SESSION_COOKIE_MAX_AGE`: Max-Age of the session cookie.
    """
    key_prefix = os.getenv("SESSION_KEY_PREFIX", DEFAULT_KEY_PREFIX)
    expiration = int(os.getenv("SESSION_EXPIRATION_SECONDS", str(int(DEFAULT_EXPIRATION.total_seconds()))))
    max_age = int(os.getenv("SESSION_COOKIE_MAX_AGE", str(DEFAULT_COOKIE_MAX_AGE)))

    store = create_default_store(os.getenv("REDIS_URL"), prefix=key_prefix)
    return SessionManager(
        store,
        key_prefix=key_prefix,
        expiration=timedelta(seconds=expiration),
        cookie=Cookie(name=f"{key_prefix}_sessionid", path="/", max_age=max_age),
    )
