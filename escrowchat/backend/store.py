"""Persistence interfaces and implementations for session billing data."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from escrowchat.backend.models import ContentType, Message, RefundReason, RefundRecord, Session, SessionState
from escrowchat.backend.state import session_from_state, session_to_state

_OPEN_STATES = (SessionState.FREE_ACTIVE.value, SessionState.AWAITING_PREPAID.value, SessionState.PAID_ACTIVE.value)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> None:
        """Persist a newly created session."""

    def get_session(self, session_id: str) -> Session | None:
        """Return a detached copy of the session or None."""

    def save_session(self, session: Session) -> None:
        """Persist the current snapshot of an existing session."""

    def list_open_sessions(self) -> list[Session]:
        """Return sessions that are not yet EXPIRED or CLOSED."""

    def add_message(self, message: Message) -> None:
        """Record an immutable billed message."""

    def list_messages(self, session_id: str) -> list[Message]:
        """Return messages of a session in delivery order."""

    def add_refund(self, record: RefundRecord) -> None:
        """Record a refund."""

    def list_refunds(self, session_id: str) -> list[RefundRecord]:
        """Return refunds issued for a session."""


@dataclass
class InMemorySessionStore:
    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[Message]] = {}
        self._refunds: dict[str, list[RefundRecord]] = {}

    def create_session(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session already exists: {session.session_id}")
            self._sessions[session.session_id] = session_to_state(session)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            state = self._sessions.get(session_id)
        if state is None:
            return None
        return session_from_state(state)

    def save_session(self, session: Session) -> None:
        with self._lock:
            if session.session_id not in self._sessions:
                raise ValueError(f"Session does not exist: {session.session_id}")
            self._sessions[session.session_id] = session_to_state(session)

    def list_open_sessions(self) -> list[Session]:
        with self._lock:
            states = [state for state in self._sessions.values() if state["state"] in _OPEN_STATES]
        return [session_from_state(state) for state in states]

    def add_message(self, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(message.session_id, []).append(message)

    def list_messages(self, session_id: str) -> list[Message]:
        with self._lock:
            return list(self._messages.get(session_id, []))

    def add_refund(self, record: RefundRecord) -> None:
        with self._lock:
            self._refunds.setdefault(record.session_id, []).append(record)

    def list_refunds(self, session_id: str) -> list[RefundRecord]:
        with self._lock:
            return list(self._refunds.get(session_id, []))


@dataclass
class PostgresSessionStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def create_session(self, session: Session) -> None:
        state = session_to_state(session)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_sessions (id, state, mode, last_activity_at, created_at, updated_at, state_json)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
                    """,
                    (
                        session.session_id,
                        session.state.value,
                        session.mode.value,
                        session.last_activity_at,
                        session.created_at,
                        session.created_at,
                        json.dumps(state),
                    ),
                )
            conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT state_json FROM chat_sessions WHERE id = %s", (session_id,))
                row = cur.fetchone()
        if row is None:
            return None
        return session_from_state(_load_json(row[0]))

    def save_session(self, session: Session) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE chat_sessions
                    SET state = %s, last_activity_at = %s, updated_at = now(), state_json = %s::jsonb
                    WHERE id = %s
                    """,
                    (
                        session.state.value,
                        session.last_activity_at,
                        json.dumps(session_to_state(session)),
                        session.session_id,
                    ),
                )
                if cur.rowcount == 0:
                    raise ValueError(f"Session does not exist: {session.session_id}")
            conn.commit()

    def list_open_sessions(self) -> list[Session]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT state_json
                    FROM chat_sessions
                    WHERE state = ANY(%s)
                    ORDER BY last_activity_at ASC
                    """,
                    (list(_OPEN_STATES),),
                )
                rows = cur.fetchall()
        return [session_from_state(_load_json(row[0])) for row in rows]

    def add_message(self, message: Message) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_messages
                        (id, session_id, sender_id, receiver_id, content_type, word_count, token_cost, content_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        message.message_id,
                        message.session_id,
                        message.sender_id,
                        message.receiver_id,
                        message.content_type.value,
                        message.word_count,
                        message.token_cost,
                        message.content_hash,
                        message.created_at,
                    ),
                )
            conn.commit()

    def list_messages(self, session_id: str) -> list[Message]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, session_id, sender_id, receiver_id, content_type, word_count, token_cost, content_hash, created_at
                    FROM chat_messages
                    WHERE session_id = %s
                    ORDER BY created_at ASC
                    """,
                    (session_id,),
                )
                rows = cur.fetchall()
        return [
            Message(
                message_id=row[0],
                session_id=row[1],
                sender_id=row[2],
                receiver_id=row[3],
                content_type=ContentType(row[4]),
                word_count=row[5],
                token_cost=row[6],
                content_hash=row[7],
                created_at=_as_datetime(row[8]),
            )
            for row in rows
        ]

    def add_refund(self, record: RefundRecord) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_refunds
                        (id, session_id, payer_id, refunded_tokens, reason, includes_platform_share,
                         platform_share_refunded, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.refund_id,
                        record.session_id,
                        record.payer_id,
                        record.refunded_tokens,
                        record.reason.value,
                        record.includes_platform_share,
                        record.platform_share_refunded,
                        record.created_at,
                    ),
                )
            conn.commit()

    def list_refunds(self, session_id: str) -> list[RefundRecord]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, session_id, payer_id, refunded_tokens, reason, includes_platform_share,
                           platform_share_refunded, created_at
                    FROM chat_refunds
                    WHERE session_id = %s
                    ORDER BY created_at ASC
                    """,
                    (session_id,),
                )
                rows = cur.fetchall()
        return [
            RefundRecord(
                refund_id=row[0],
                session_id=row[1],
                payer_id=row[2],
                refunded_tokens=row[3],
                reason=RefundReason(row[4]),
                includes_platform_share=row[5],
                platform_share_refunded=row[6],
                created_at=_as_datetime(row[7]),
            )
            for row in rows
        ]


def _load_json(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else json.loads(value)


def _as_datetime(value: Any) -> datetime:
    return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))


def create_store(database_url: str | None) -> SessionStore:
    if database_url:
        return PostgresSessionStore(database_url=database_url)
    return InMemorySessionStore()
