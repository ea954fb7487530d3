"""Session lifecycle transitions and per-session serialization."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

import structlog

from escrowchat.backend.errors import InvalidTransitionError, LedgerIntegrityError, SessionClosedError
from escrowchat.backend.models import Session, SessionMode, SessionState

logger = structlog.get_logger(__name__)

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.FREE_ACTIVE: frozenset(
        {SessionState.AWAITING_PREPAID, SessionState.PAID_ACTIVE, SessionState.CLOSED}
    ),
    SessionState.AWAITING_PREPAID: frozenset({SessionState.PAID_ACTIVE, SessionState.EXPIRED, SessionState.CLOSED}),
    SessionState.PAID_ACTIVE: frozenset({SessionState.PAID_ACTIVE, SessionState.EXPIRED, SessionState.CLOSED}),
    SessionState.EXPIRED: frozenset(),
    SessionState.CLOSED: frozenset(),
}

# FREE sessions never enter the prepaid states.
_FREE_MODE_TARGETS = frozenset({SessionState.FREE_ACTIVE, SessionState.CLOSED})


def ensure_mutable(session: Session) -> None:
    if session.state.is_terminal:
        raise SessionClosedError(f"Session {session.session_id} has ended", session_id=session.session_id)
    if session.halted:
        raise LedgerIntegrityError(
            f"Session {session.session_id} is halted pending audit", session_id=session.session_id
        )


def can_transition(session: Session, target: SessionState) -> bool:
    if target not in TRANSITIONS[session.state]:
        return False
    if session.mode is SessionMode.FREE and target not in _FREE_MODE_TARGETS:
        return False
    return True


def transition(session: Session, target: SessionState, now: datetime) -> Session:
    """Move ``session`` to ``target`` in place; caller must hold the session lock."""
    if session.state.is_terminal:
        raise SessionClosedError(f"Session {session.session_id} has ended", session_id=session.session_id)
    if not can_transition(session, target):
        raise InvalidTransitionError(
            f"Cannot move session {session.session_id} from {session.state.value} to {target.value}",
            session_id=session.session_id,
        )
    previous = session.state
    session.state = target
    if target.is_terminal:
        session.closed_at = now
        session.expires_at = None
    if previous is not target:
        logger.info("session_transition", session_id=session.session_id, from_state=previous.value, to_state=target.value)
    return session


class SessionLockRegistry:
    """Hands out one re-entrant lock per session id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    def discard(self, session_id: str) -> None:
        """Forget the lock of a session that can no longer change.

        Threads already waiting keep their reference; a later caller gets a
        fresh lock and only ever sees the terminal state.
        """
        with self._guard:
            self._locks.pop(session_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        lock = self.lock_for(session_id)
        with lock:
            yield

    @contextmanager
    def try_hold(self, session_id: str, timeout: float, retries: int) -> Iterator[bool]:
        """Yield True with the lock held, or False after ``retries`` timed-out attempts."""
        lock = self.lock_for(session_id)
        acquired = False
        for _ in range(max(1, retries)):
            if lock.acquire(timeout=timeout):
                acquired = True
                break
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
