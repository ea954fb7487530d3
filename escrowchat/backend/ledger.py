"""Escrow ledger: deposits, per-message debits and refunds for one session.

The ledger never re-derives token balances from word counts. The integer
``remaining_tokens`` is authoritative, and every call re-checks

    total_deposited_tokens == remaining_tokens + sum(debits) + refunded_tokens

before returning. A violation halts the session and is surfaced as
``LedgerIntegrityError``; it is never corrected in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable

import structlog

from escrowchat.backend.collaborators import AlertSink, WalletService
from escrowchat.backend.errors import (
    DepositRequired,
    DuplicateDepositError,
    InsufficientEscrowError,
    InsufficientFundsError,
    LedgerIntegrityError,
    NotPayerError,
)
from escrowchat.backend.integrity import IntegrityValidator
from escrowchat.backend.models import DepositReceipt, Escrow, RefundReason, RefundRecord, Session

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_deposit(amount: int, platform_percent: int) -> tuple[int, int]:
    """Return ``(platform_fee, escrow_amount)`` with the fee rounded down."""
    platform_fee = amount * platform_percent // 100
    return platform_fee, amount - platform_fee


class EscrowLedger:
    def __init__(
        self,
        wallet: WalletService,
        validator: IntegrityValidator,
        alerts: AlertSink,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._wallet = wallet
        self._validator = validator
        self._alerts = alerts
        self._clock = clock

    def deposit(self, session: Session, payer_id: str, amount: int) -> DepositReceipt:
        if session.escrow is not None:
            raise DuplicateDepositError(
                f"Session {session.session_id} already holds an escrow", session_id=session.session_id
            )
        if payer_id != session.roles.payer_id:
            raise NotPayerError(f"{payer_id} is not the payer of this session", session_id=session.session_id)

        platform_fee, escrow_amount = split_deposit(amount, session.roles.deposit_fee_percent)
        result = self._validator.enforce(
            self._validator.check_deposit(session.roles, amount, platform_fee, escrow_amount),
            session.session_id,
        )
        platform_fee = result.corrected.get("platform_fee", platform_fee)
        escrow_amount = result.corrected.get("escrow_amount", escrow_amount)

        if not self._wallet.hold_tokens(payer_id, amount):
            raise InsufficientFundsError(f"Insufficient tokens (need {amount})", session_id=session.session_id)

        words_per_token = session.roles.words_per_token
        session.escrow = Escrow(
            deposit_amount=amount,
            platform_fee=platform_fee,
            total_deposited_tokens=escrow_amount,
            remaining_tokens=escrow_amount,
            words_per_token=words_per_token,
            remaining_words=escrow_amount * words_per_token,
            deposited_at=self._clock(),
        )
        self.verify(session)
        logger.info(
            "deposit_taken",
            session_id=session.session_id,
            payer_id=payer_id,
            amount=amount,
            platform_fee=platform_fee,
            escrow_amount=escrow_amount,
        )
        return DepositReceipt(
            session_id=session.session_id,
            deposit_amount=amount,
            platform_fee=platform_fee,
            escrow_amount=escrow_amount,
        )

    def debit(self, session: Session, token_cost: int, word_count: int = 0) -> int:
        """Take ``token_cost`` from escrow in full or not at all; return the new balance."""
        escrow = session.escrow
        if escrow is None:
            raise DepositRequired("No escrow has been deposited", session_id=session.session_id)
        self.verify(session)
        if token_cost < 0:
            raise ValueError("token_cost must be non-negative")
        if token_cost > escrow.remaining_tokens:
            raise InsufficientEscrowError(
                f"Message costs {token_cost} tokens but only {escrow.remaining_tokens} remain",
                session_id=session.session_id,
                required=token_cost,
                remaining=escrow.remaining_tokens,
            )
        if token_cost == 0:
            return escrow.remaining_tokens

        escrow.remaining_tokens -= token_cost
        escrow.debits.append(token_cost)
        escrow.used_words += word_count
        escrow.remaining_words = max(0, escrow.remaining_words - word_count)

        earner_id = session.roles.earner_id
        if earner_id is not None:
            self._wallet.credit_tokens(earner_id, token_cost)
        self.verify(session)
        logger.info(
            "message_billed",
            session_id=session.session_id,
            token_cost=token_cost,
            remaining_tokens=escrow.remaining_tokens,
            credited_to=earner_id or "platform",
        )
        return escrow.remaining_tokens

    def refund(self, session: Session, reason: RefundReason) -> RefundRecord:
        escrow = session.escrow
        platform_share = 0
        amount = 0
        if escrow is not None:
            self.verify(session)
            amount = escrow.remaining_tokens
            if reason is RefundReason.MISMATCH and not escrow.platform_fee_refunded:
                platform_share = escrow.platform_fee
            self._validator.enforce(
                self._validator.check_refund(session, reason, amount + platform_share, platform_share),
                session.session_id,
            )
            if amount + platform_share > 0:
                self._wallet.credit_tokens(session.roles.payer_id, amount + platform_share)
            escrow.refunded_tokens += amount
            escrow.remaining_tokens = 0
            escrow.remaining_words = 0
            if platform_share:
                escrow.platform_fee_refunded = True
            self.verify(session)

        record = RefundRecord(
            refund_id=str(uuid.uuid4()),
            session_id=session.session_id,
            payer_id=session.roles.payer_id,
            refunded_tokens=amount + platform_share,
            reason=reason,
            includes_platform_share=reason is RefundReason.MISMATCH,
            platform_share_refunded=platform_share,
            created_at=self._clock(),
        )
        logger.info(
            "refund_issued",
            session_id=session.session_id,
            reason=reason.value,
            refunded_tokens=record.refunded_tokens,
            platform_share_refunded=platform_share,
        )
        return record

    def verify(self, session: Session) -> None:
        escrow = session.escrow
        if escrow is None:
            return
        accounted = escrow.remaining_tokens + sum(escrow.debits) + escrow.refunded_tokens
        if escrow.remaining_tokens >= 0 and accounted == escrow.total_deposited_tokens:
            return

        session.halted = True
        message = (
            f"Escrow conservation violated: deposited {escrow.total_deposited_tokens}, "
            f"remaining {escrow.remaining_tokens}, debited {sum(escrow.debits)}, "
            f"refunded {escrow.refunded_tokens}"
        )
        logger.error("ledger_integrity_failure", session_id=session.session_id, detail=message)
        self._alerts.alert(session.session_id, message)
        raise LedgerIntegrityError(message, session_id=session.session_id)
