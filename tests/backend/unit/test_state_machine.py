import threading
from datetime import datetime, timezone

import pytest

from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import InvalidTransitionError, LedgerIntegrityError, SessionClosedError
from escrowchat.backend.models import Gender, Popularity, Profile, SessionState
from escrowchat.backend.roles import resolve_roles
from escrowchat.backend.state import build_session
from escrowchat.backend.state_machine import SessionLockRegistry, can_transition, ensure_mutable, transition

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _session(popularity: Popularity = Popularity.NORMAL):
    roles = resolve_roles(
        Profile(user_id="m", gender=Gender.MALE, earn_opt_in=False),
        Profile(user_id="w", gender=Gender.FEMALE, earn_opt_in=True, popularity=popularity),
        "m",
        RateTable(),
    )
    return build_session("s1", ("m", "w"), "m", roles, NOW)


def test_paid_session_follows_prepaid_path() -> None:
    session = _session()

    transition(session, SessionState.AWAITING_PREPAID, NOW)
    transition(session, SessionState.PAID_ACTIVE, NOW)
    transition(session, SessionState.PAID_ACTIVE, NOW)
    transition(session, SessionState.EXPIRED, NOW)

    assert session.state is SessionState.EXPIRED
    assert session.closed_at == NOW


def test_free_active_cannot_expire() -> None:
    session = _session()

    with pytest.raises(InvalidTransitionError):
        transition(session, SessionState.EXPIRED, NOW)


def test_free_mode_never_enters_prepaid_states() -> None:
    session = _session(popularity=Popularity.LOW)

    assert not can_transition(session, SessionState.AWAITING_PREPAID)
    assert not can_transition(session, SessionState.PAID_ACTIVE)
    assert can_transition(session, SessionState.CLOSED)


def test_terminal_state_rejects_any_transition() -> None:
    session = _session()
    transition(session, SessionState.CLOSED, NOW)

    with pytest.raises(SessionClosedError):
        transition(session, SessionState.PAID_ACTIVE, NOW)
    with pytest.raises(SessionClosedError):
        ensure_mutable(session)


def test_halted_session_is_not_mutable() -> None:
    session = _session()
    session.halted = True

    with pytest.raises(LedgerIntegrityError):
        ensure_mutable(session)


def test_try_hold_gives_up_when_lock_is_busy() -> None:
    registry = SessionLockRegistry()
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with registry.hold("s1"):
            held.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(timeout=5)
    try:
        with registry.try_hold("s1", timeout=0.01, retries=2) as acquired:
            assert acquired is False
    finally:
        release.set()
        thread.join()

    with registry.try_hold("s1", timeout=0.01, retries=1) as acquired:
        assert acquired is True


def test_discard_forgets_the_session_lock() -> None:
    registry = SessionLockRegistry()
    first = registry.lock_for("s1")
    registry.lock_for("s2")

    registry.discard("s1")
    registry.discard("never-seen")

    assert len(registry) == 1
    assert registry.lock_for("s1") is not first
    assert len(registry) == 2
