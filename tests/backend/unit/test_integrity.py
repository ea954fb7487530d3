from dataclasses import replace
from datetime import datetime, timezone

import pytest

from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import IntegrityViolationError
from escrowchat.backend.integrity import Action, IntegrityValidator
from escrowchat.backend.models import ContentType, Escrow, Gender, Profile, RefundReason
from escrowchat.backend.roles import resolve_roles
from escrowchat.backend.state import build_session

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
RATES = RateTable()


def _session():
    roles = resolve_roles(
        Profile(user_id="m", gender=Gender.MALE, earn_opt_in=False),
        Profile(user_id="w", gender=Gender.FEMALE, earn_opt_in=True),
        "m",
        RATES,
    )
    session = build_session("s1", ("m", "w"), "m", roles, NOW)
    session.escrow = Escrow(
        deposit_amount=100,
        platform_fee=35,
        total_deposited_tokens=65,
        remaining_tokens=58,
        words_per_token=11,
        remaining_words=638,
        debits=[7],
    )
    return session


def test_valid_deposit_is_allowed() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_deposit(_session().roles, 100, 35, 65)

    assert result.action is Action.ALLOW
    assert result.valid


def test_miscomputed_fee_is_auto_corrected() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_deposit(_session().roles, 100, 36, 64)

    assert result.action is Action.AUTO_CORRECT
    assert result.corrected == {"platform_fee": 35, "escrow_amount": 65}


def test_deposit_outside_price_range_is_blocked() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_deposit(_session().roles, 50, 17, 33)

    assert result.action is Action.BLOCK
    assert "deposit_price_range" in [violation.rule for violation in result.violations]
    with pytest.raises(IntegrityViolationError):
        validator.enforce(result, "s1")


def test_bad_split_is_blocked() -> None:
    validator = IntegrityValidator(RATES)
    roles = replace(_session().roles, split_creator_percent=70)

    result = validator.check_deposit(roles, 100, 35, 65)

    assert result.action is Action.BLOCK


def test_charge_rounding_deviation_is_corrected() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_charge(_session(), "w", ContentType.TEXT, 12, 1)

    assert result.action is Action.AUTO_CORRECT
    assert result.corrected == {"token_cost": 2}


def test_media_floor_is_corrected() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_charge(_session(), "w", ContentType.VIDEO, 0, 0)

    assert result.action is Action.AUTO_CORRECT
    assert result.corrected == {"token_cost": 1}


def test_charging_the_payer_is_blocked() -> None:
    validator = IntegrityValidator(RATES)

    result = validator.check_charge(_session(), "m", ContentType.TEXT, 22, 2)

    assert result.action is Action.BLOCK


def test_refund_amount_rules() -> None:
    validator = IntegrityValidator(RATES)
    session = _session()

    assert validator.check_refund(session, RefundReason.MANUAL_CLOSE, 58, 0).action is Action.ALLOW
    assert validator.check_refund(session, RefundReason.MISMATCH, 93, 35).action is Action.ALLOW
    assert validator.check_refund(session, RefundReason.EXPIRED, 93, 35).action is Action.BLOCK
    assert validator.check_refund(session, RefundReason.MANUAL_CLOSE, 60, 0).action is Action.BLOCK
