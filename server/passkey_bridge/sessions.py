"""Server-side ceremony sessions.

The browser only ever holds an opaque session identifier inside the Flask
session cookie. Challenges, the pending identity and the logged-in flag stay
in a :class:`SessionStore` on the server.
"""
from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from flask import has_request_context, session

from .models import PendingCeremony, UserIdentity

__all__ = [
    "ChallengeSession",
    "SessionStore",
    "current_session_id",
    "ensure_session_id",
    "forget_session_id",
]

logger = logging.getLogger(__name__)

_SESSION_ID_KEY = "passkey.session"


class ChallengeSession:
    """Ceremony state of one browser session.

    Callers completing a ceremony must hold :meth:`SessionStore.locked` for
    this session, since taking the pending challenge is a read-then-clear.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._pending: Optional[PendingCeremony] = None
        self.logged_in = False
        self.identity: Optional[UserIdentity] = None
        self.last_seen = time.monotonic()

    def set_pending(self, pending: PendingCeremony) -> None:
        self._pending = pending

    def get_pending(self) -> Optional[PendingCeremony]:
        return self._pending

    def take_pending(self) -> Optional[PendingCeremony]:
        pending, self._pending = self._pending, None
        return pending

    def clear_pending(self) -> None:
        self._pending = None

    def set_logged_in(self, identity: Optional[UserIdentity]) -> None:
        self.logged_in = identity is not None
        self.identity = identity

    def touch(self) -> None:
        self.last_seen = time.monotonic()


class _SessionLock:
    """A session's lock and the number of callers holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SessionStore:
    """In-process map of session id to :class:`ChallengeSession`.

    Sessions idle for longer than ``max_age`` seconds are dropped. Lookups
    sweep the whole map at most once per ``max_age``, so abandoned sessions
    do not accumulate. Per-session locks only exist while a caller holds or
    waits for one.
    """

    def __init__(self, max_age: Optional[float] = 3600.0) -> None:
        self.max_age = max_age
        self._sessions: Dict[str, ChallengeSession] = {}
        self._locks: Dict[str, _SessionLock] = {}
        self._guard = threading.Lock()
        self._last_purge = time.monotonic()

    def _expired(self, challenge_session: ChallengeSession, now: float) -> bool:
        return self.max_age is not None and now - challenge_session.last_seen > self.max_age

    def _purge(self, now: float) -> int:
        # Caller holds self._guard.
        stale = [
            session_id
            for session_id, challenge_session in self._sessions.items()
            if self._expired(challenge_session, now)
        ]
        for session_id in stale:
            del self._sessions[session_id]
        self._last_purge = now
        if stale:
            logger.debug("Purged %d expired sessions", len(stale))
        return len(stale)

    def get(self, session_id: str, *, create: bool = True) -> Optional[ChallengeSession]:
        now = time.monotonic()
        with self._guard:
            if self.max_age is not None and now - self._last_purge > self.max_age:
                self._purge(now)
            challenge_session = self._sessions.get(session_id)
            if challenge_session is not None and self._expired(challenge_session, now):
                logger.debug("Discarding expired session %s", session_id[:8])
                del self._sessions[session_id]
                challenge_session = None
            if challenge_session is None:
                if not create:
                    return None
                challenge_session = ChallengeSession(session_id)
                self._sessions[session_id] = challenge_session
            challenge_session.touch()
            return challenge_session

    @contextmanager
    def locked(self, session_id: str) -> Iterator[ChallengeSession]:
        """Yield the session while holding its lock."""

        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                challenge_session = self.get(session_id)
                if challenge_session is None:
                    raise RuntimeError("Unable to load the ceremony session.")
                yield challenge_session
        finally:
            with self._guard:
                entry.users -= 1
                if not entry.users:
                    del self._locks[session_id]

    def discard(self, session_id: str) -> bool:
        """Forget a session. A caller inside :meth:`locked` keeps the lock."""

        with self._guard:
            return self._sessions.pop(session_id, None) is not None

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._guard:
            return self._purge(now)

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)


def current_session_id(*, create: bool = False) -> Optional[str]:
    """Return the opaque session id carried by the Flask session cookie."""

    if not has_request_context():
        return None

    existing = session.get(_SESSION_ID_KEY)
    if isinstance(existing, str) and existing.strip():
        return existing.strip()

    if not create:
        return None

    identifier = secrets.token_urlsafe(32)
    session[_SESSION_ID_KEY] = identifier
    session.permanent = True
    return identifier


def ensure_session_id() -> str:
    identifier = current_session_id(create=True)
    if not identifier:
        raise RuntimeError("Unable to establish a session identifier.")
    return identifier


def forget_session_id() -> Optional[str]:
    if not has_request_context():
        return None
    identifier = session.pop(_SESSION_ID_KEY, None)
    session.clear()
    return identifier
