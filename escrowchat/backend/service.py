"""Billing facade: the public operations exposed to the API layer.

Every mutating call runs under the session's lock against a detached copy
loaded from the store, and persists only once the whole operation has
succeeded.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator

import structlog

from escrowchat.backend.abuse import AbuseGuard
from escrowchat.backend.collaborators import AlertSink, ModerationService, ProfileService, WalletService
from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import (
    BillingError,
    DepositNotAllowedError,
    DepositRequired,
    LedgerIntegrityError,
    NotParticipantError,
    SessionNotFoundError,
)
from escrowchat.backend.expiration import InactivityDeadlines
from escrowchat.backend.hashing import content_hash
from escrowchat.backend.integrity import IntegrityValidator
from escrowchat.backend.ledger import EscrowLedger
from escrowchat.backend.metering import count_billable_words, message_cost
from escrowchat.backend.models import (
    CloseResult,
    DepositReceipt,
    Message,
    MessageContent,
    MessageOutcome,
    MismatchResult,
    RefundReason,
    RefundRecord,
    Session,
    SessionState,
)
from escrowchat.backend.roles import resolve_roles
from escrowchat.backend.state import build_session
from escrowchat.backend.state_machine import SessionLockRegistry, ensure_mutable, transition
from escrowchat.backend.store import SessionStore

logger = structlog.get_logger(__name__)

MISMATCH_REVIEW_REASON = "identity_mismatch"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TerminationPolicy:
    target: SessionState
    flag_for_review: bool


TERMINATION_POLICIES: dict[RefundReason, TerminationPolicy] = {
    RefundReason.MANUAL_CLOSE: TerminationPolicy(target=SessionState.CLOSED, flag_for_review=False),
    RefundReason.MISMATCH: TerminationPolicy(target=SessionState.CLOSED, flag_for_review=True),
    RefundReason.EXPIRED: TerminationPolicy(target=SessionState.EXPIRED, flag_for_review=False),
}


class BillingService:
    def __init__(
        self,
        store: SessionStore,
        profiles: ProfileService,
        wallet: WalletService,
        moderation: ModerationService,
        alerts: AlertSink,
        rates: RateTable | None = None,
        abuse_guard: AbuseGuard | None = None,
        deadlines: InactivityDeadlines | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.rates = rates or RateTable()
        self.locks = SessionLockRegistry()
        self.deadlines = deadlines or InactivityDeadlines()
        self.abuse_guard = abuse_guard or AbuseGuard()
        self.validator = IntegrityValidator(self.rates)
        self._profiles = profiles
        self._moderation = moderation
        self._clock = clock
        self._ledger = EscrowLedger(wallet=wallet, validator=self.validator, alerts=alerts, clock=clock)

    def now(self) -> datetime:
        return self._clock()

    def initialize_session(self, participant_a: str, participant_b: str, initiator_id: str) -> str:
        profile_a = self._profiles.get_profile(participant_a)
        profile_b = self._profiles.get_profile(participant_b)
        roles = resolve_roles(profile_a, profile_b, initiator_id, self.rates)

        session = build_session(
            session_id=str(uuid.uuid4()),
            participants=(participant_a, participant_b),
            initiator_id=initiator_id,
            roles=roles,
            now=self.now(),
        )
        self.store.create_session(session)
        logger.info(
            "session_created",
            session_id=session.session_id,
            rule=roles.rule,
            mode=roles.mode.value,
            payer_id=roles.payer_id,
            earner_id=roles.earner_id,
        )
        return session.session_id

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        return session

    def list_refunds(self, session_id: str) -> list[RefundRecord]:
        self.get_session(session_id)
        return self.store.list_refunds(session_id)

    def list_messages(self, session_id: str) -> list[Message]:
        self.get_session(session_id)
        return self.store.list_messages(session_id)

    def send_message(self, session_id: str, sender_id: str, content: MessageContent) -> MessageOutcome:
        session = self.get_session(session_id)
        self._require_participant(session, sender_id)
        fingerprint = content_hash(content)

        try:
            entry = self.abuse_guard.admit(sender_id, fingerprint)
        except BillingError as exc:
            return self._rejected(session_id, sender_id, exc)

        try:
            with self._mutating(session_id) as session:
                return self._deliver(session, sender_id, content, fingerprint)
        except BillingError as exc:
            self.abuse_guard.release(entry)
            if exc.recoverable:
                return self._rejected(session_id, sender_id, exc)
            raise

    def deposit(self, session_id: str, payer_id: str, amount: int | None = None) -> DepositReceipt:
        with self._mutating(session_id) as session:
            self._require_participant(session, payer_id)
            ensure_mutable(session)
            if session.roles.is_free:
                raise DepositNotAllowedError("Free sessions never take deposits", session_id=session_id)

            receipt = self._ledger.deposit(session, payer_id, amount if amount is not None else session.roles.price)
            now = self.now()
            transition(session, SessionState.PAID_ACTIVE, now)
            self._touch(session, now)
            self.store.save_session(session)
            return receipt

    def close_session(self, session_id: str, requested_by: str) -> CloseResult:
        with self._mutating(session_id) as session:
            self._require_participant(session, requested_by)
            record = self.terminate(session, RefundReason.MANUAL_CLOSE, requested_by)
            return CloseResult(session_id=session_id, state=session.state, refund_amount=record.refunded_tokens)

    def report_mismatch(self, session_id: str, reporter_id: str, suspect_id: str) -> MismatchResult:
        with self._mutating(session_id) as session:
            self._require_participant(session, reporter_id)
            if session.counterpart_of(reporter_id) != suspect_id:
                raise NotParticipantError(
                    f"{suspect_id} is not the counterpart of {reporter_id}", session_id=session_id
                )
            if session.state.is_terminal:
                logger.info("mismatch_on_ended_session", session_id=session_id, state=session.state.value)
                return MismatchResult(session_id=session_id, terminated=False, refund_amount=0)

            record = self.terminate(session, RefundReason.MISMATCH, reporter_id, suspect_id=suspect_id)
            logger.warning(
                "mismatch_terminated",
                session_id=session_id,
                suspect_id=suspect_id,
                refund_amount=record.refunded_tokens,
            )
            return MismatchResult(session_id=session_id, terminated=True, refund_amount=record.refunded_tokens)

    def terminate(
        self,
        session: Session,
        reason: RefundReason,
        requested_by: str,
        now: datetime | None = None,
        suspect_id: str | None = None,
        close_reason: RefundReason | None = None,
    ) -> RefundRecord:
        """Refund and end ``session`` according to the reason's policy.

        The caller must hold the session lock. This is the single exit path
        for manual close, mismatch and expiration. ``close_reason`` is
        recorded on the session when it differs from the refund reason, as
        for a paid session expiring with ``NO_RESPONSE``.
        """
        policy = TERMINATION_POLICIES[reason]
        ensure_mutable(session)
        now = now or self.now()

        try:
            record = self._ledger.refund(session, reason)
        except LedgerIntegrityError:
            self._persist_halt(session.session_id)
            raise
        transition(session, policy.target, now)
        session.closed_by = requested_by
        session.close_reason = close_reason or reason
        self.store.save_session(session)
        self.store.add_refund(record)

        if policy.flag_for_review:
            suspect_id = suspect_id or session.counterpart_of(requested_by)
            self._moderation.flag_for_review(suspect_id, session.session_id, MISMATCH_REVIEW_REASON)
        logger.info(
            "session_terminated",
            session_id=session.session_id,
            reason=reason.value,
            state=session.state.value,
            refund_amount=record.refunded_tokens,
        )
        return record

    def _deliver(self, session: Session, sender_id: str, content: MessageContent, fingerprint: str) -> MessageOutcome:
        ensure_mutable(session)
        now = self.now()
        roles = session.roles
        word_count = count_billable_words(content.text)

        if session.state is SessionState.FREE_ACTIVE and not roles.is_free:
            used = session.free_messages_used.get(sender_id, 0)
            if used < roles.free_message_limit:
                session.free_messages_used[sender_id] = used + 1
                return self._record(session, sender_id, content, word_count, 0, fingerprint, now)
            if all(session.free_messages_used.get(p, 0) >= roles.free_message_limit for p in session.participants):
                transition(session, SessionState.AWAITING_PREPAID, now)
                self.store.save_session(session)
            raise DepositRequired("Free messages used. Prepaid deposit required.", session_id=session.session_id)

        if session.state is SessionState.AWAITING_PREPAID:
            raise DepositRequired("Waiting for prepaid deposit", session_id=session.session_id)

        cost = message_cost(sender_id, content.content_type, word_count, roles, session.participants)
        if roles.is_free:
            return self._record(session, sender_id, content, word_count, cost, fingerprint, now)

        checked = self.validator.enforce(
            self.validator.check_charge(session, sender_id, content.content_type, word_count, cost),
            session.session_id,
        )
        cost = checked.corrected.get("token_cost", cost)
        if cost > 0:
            self._ledger.debit(session, cost, word_count)
        if session.first_paid_message_at is None:
            session.first_paid_message_at = now
        transition(session, SessionState.PAID_ACTIVE, now)
        return self._record(session, sender_id, content, word_count, cost, fingerprint, now)

    def _record(
        self,
        session: Session,
        sender_id: str,
        content: MessageContent,
        word_count: int,
        cost: int,
        fingerprint: str,
        now: datetime,
    ) -> MessageOutcome:
        message = Message(
            message_id=str(uuid.uuid4()),
            session_id=session.session_id,
            sender_id=sender_id,
            receiver_id=session.counterpart_of(sender_id),
            content_type=content.content_type,
            word_count=word_count,
            token_cost=cost,
            content_hash=fingerprint,
            created_at=now,
        )
        session.message_count += 1
        self._touch(session, now)
        self.store.save_session(session)
        self.store.add_message(message)
        return MessageOutcome(
            allowed=True,
            token_cost=cost,
            message_id=message.message_id,
            remaining_tokens=session.escrow.remaining_tokens if session.escrow else None,
        )

    def _touch(self, session: Session, now: datetime) -> None:
        session.last_activity_at = now
        session.expires_at = self.deadlines.expires_at(session)

    def _rejected(self, session_id: str, sender_id: str, exc: BillingError) -> MessageOutcome:
        logger.info("message_rejected", session_id=session_id, sender_id=sender_id, reason=exc.code)
        return MessageOutcome(allowed=False, reason=exc.code)

    def _require_participant(self, session: Session, user_id: str) -> None:
        if user_id not in session.participants:
            raise NotParticipantError(f"{user_id} is not part of this session", session_id=session.session_id)

    def _persist_halt(self, session_id: str) -> None:
        stored = self.store.get_session(session_id)
        if stored is None or stored.halted:
            return
        stored.halted = True
        self.store.save_session(stored)

    @contextmanager
    def _mutating(self, session_id: str) -> Iterator[Session]:
        # Ended or unknown sessions give their lock back to the registry.
        ended = True
        try:
            with self.locks.hold(session_id):
                session = self.get_session(session_id)
                try:
                    yield session
                except LedgerIntegrityError:
                    self._persist_halt(session_id)
                    raise
                finally:
                    ended = session.state.is_terminal
        finally:
            if ended:
                self.locks.discard(session_id)
