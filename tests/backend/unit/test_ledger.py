from datetime import datetime, timezone

import pytest

from escrowchat.backend.collaborators import InMemoryWalletService, LoggingAlertSink
from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import (
    DepositRequired,
    DuplicateDepositError,
    InsufficientEscrowError,
    InsufficientFundsError,
    LedgerIntegrityError,
    NotPayerError,
)
from escrowchat.backend.integrity import IntegrityValidator
from escrowchat.backend.ledger import EscrowLedger, split_deposit
from escrowchat.backend.models import Gender, Profile, RefundReason
from escrowchat.backend.roles import resolve_roles
from escrowchat.backend.state import build_session

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _setup(earner: bool = True, balance: int = 500):
    rates = RateTable()
    roles = resolve_roles(
        Profile(user_id="m", gender=Gender.MALE, earn_opt_in=False),
        Profile(user_id="w", gender=Gender.FEMALE, earn_opt_in=earner),
        "m",
        rates,
    )
    wallet = InMemoryWalletService(balances={"m": balance})
    alerts = LoggingAlertSink()
    ledger = EscrowLedger(wallet=wallet, validator=IntegrityValidator(rates), alerts=alerts, clock=lambda: NOW)
    session = build_session("s1", ("m", "w"), "m", roles, NOW)
    return ledger, session, wallet, alerts


def test_split_deposit_floors_the_fee() -> None:
    assert split_deposit(100, 35) == (35, 65)
    assert split_deposit(101, 35) == (35, 66)


def test_deposit_debit_refund_scenario() -> None:
    ledger, session, wallet, _ = _setup()

    receipt = ledger.deposit(session, "m", 100)
    remaining = ledger.debit(session, 7, word_count=77)
    record = ledger.refund(session, RefundReason.MANUAL_CLOSE)

    assert (receipt.platform_fee, receipt.escrow_amount) == (35, 65)
    assert remaining == 58
    assert record.refunded_tokens == 58
    assert record.platform_share_refunded == 0
    assert not record.includes_platform_share
    assert wallet.balance_of("m") == 500 - 100 + 58
    assert wallet.balance_of("w") == 7
    assert session.escrow.remaining_tokens == 0
    assert session.escrow.used_words == 77


def test_mismatch_refund_returns_platform_fee() -> None:
    ledger, session, wallet, _ = _setup()
    ledger.deposit(session, "m", 100)
    ledger.debit(session, 7)

    record = ledger.refund(session, RefundReason.MISMATCH)

    assert record.refunded_tokens == 93
    assert record.platform_share_refunded == 35
    assert record.includes_platform_share
    assert session.escrow.platform_fee_refunded
    assert wallet.balance_of("m") == 493


def test_platform_session_takes_fee_and_keeps_debits() -> None:
    ledger, session, wallet, _ = _setup(earner=False)

    receipt = ledger.deposit(session, "m", 100)
    ledger.debit(session, 5)

    assert (receipt.platform_fee, receipt.escrow_amount) == (35, 65)
    assert wallet.balance_of("w") == 0
    assert session.escrow.remaining_tokens == 60


def test_debit_is_all_or_nothing() -> None:
    ledger, session, _, _ = _setup()
    ledger.deposit(session, "m", 100)

    with pytest.raises(InsufficientEscrowError) as excinfo:
        ledger.debit(session, 66)

    assert excinfo.value.remaining == 65
    assert session.escrow.remaining_tokens == 65
    assert session.escrow.debits == []


def test_debit_without_escrow_requires_deposit() -> None:
    ledger, session, _, _ = _setup()

    with pytest.raises(DepositRequired):
        ledger.debit(session, 1)


def test_deposit_guards() -> None:
    ledger, session, _, _ = _setup(balance=50)

    with pytest.raises(NotPayerError):
        ledger.deposit(session, "w", 100)
    with pytest.raises(InsufficientFundsError):
        ledger.deposit(session, "m", 100)
    assert session.escrow is None

    rich_ledger, rich_session, _, _ = _setup()
    rich_ledger.deposit(rich_session, "m", 100)
    with pytest.raises(DuplicateDepositError):
        rich_ledger.deposit(rich_session, "m", 100)


def test_refund_without_escrow_is_zero() -> None:
    ledger, session, wallet, _ = _setup()

    record = ledger.refund(session, RefundReason.EXPIRED)

    assert record.refunded_tokens == 0
    assert wallet.balance_of("m") == 500


def test_conservation_violation_halts_and_alerts() -> None:
    ledger, session, _, alerts = _setup()
    ledger.deposit(session, "m", 100)
    session.escrow.remaining_tokens += 3

    with pytest.raises(LedgerIntegrityError):
        ledger.debit(session, 1)

    assert session.halted
    assert alerts.alerts and alerts.alerts[0][0] == "s1"
