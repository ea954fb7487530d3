"""Read-only guard re-checking deposits, charges and refunds before commit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from escrowchat.backend.config import RateTable
from escrowchat.backend.errors import IntegrityViolationError
from escrowchat.backend.metering import ceil_tokens, metered_sender
from escrowchat.backend.models import ContentType, RefundReason, RoleAssignment, Session

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Action(str, Enum):
    ALLOW = "ALLOW"
    AUTO_CORRECT = "AUTO_CORRECT"
    BLOCK = "BLOCK"


@dataclass(frozen=True)
class Violation:
    rule: str
    severity: Severity
    message: str
    detected: Any
    expected: Any


@dataclass(frozen=True)
class ValidationResult:
    action: Action
    violations: tuple[Violation, ...] = ()
    corrected: dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return self.action is not Action.BLOCK


# Rules whose violations may be replaced by the value the rule itself computes.
CORRECTABLE_RULES = frozenset({"deposit_fee_floor", "deposit_escrow_remainder", "charge_ceiling", "charge_media_floor"})


class IntegrityValidator:
    def __init__(self, rates: RateTable) -> None:
        self.rates = rates

    def check_deposit(self, roles: RoleAssignment, amount: int, platform_fee: int, escrow_amount: int) -> ValidationResult:
        violations: list[Violation] = []
        corrected: dict[str, Any] = {}

        if amount < self.rates.min_price or amount > self.rates.max_price:
            violations.append(
                Violation(
                    rule="deposit_price_range",
                    severity=Severity.CRITICAL,
                    message=f"Deposit {amount} outside [{self.rates.min_price}, {self.rates.max_price}]",
                    detected=amount,
                    expected=(self.rates.min_price, self.rates.max_price),
                )
            )
        if roles.split_creator_percent + roles.split_platform_percent != 100:
            violations.append(
                Violation(
                    rule="split_sum",
                    severity=Severity.CRITICAL,
                    message="Revenue split does not sum to 100",
                    detected=(roles.split_creator_percent, roles.split_platform_percent),
                    expected=100,
                )
            )
        if roles.deposit_fee_percent != self.rates.platform_percent:
            violations.append(
                Violation(
                    rule="deposit_fee_rate",
                    severity=Severity.CRITICAL,
                    message=f"Deposit fee {roles.deposit_fee_percent}% is not the platform rate",
                    detected=roles.deposit_fee_percent,
                    expected=self.rates.platform_percent,
                )
            )

        expected_fee = amount * roles.deposit_fee_percent // 100
        if platform_fee != expected_fee:
            violations.append(
                Violation(
                    rule="deposit_fee_floor",
                    severity=Severity.HIGH,
                    message=f"Platform fee {platform_fee} != floor({amount} x {roles.deposit_fee_percent}%)",
                    detected=platform_fee,
                    expected=expected_fee,
                )
            )
            corrected["platform_fee"] = expected_fee
        if escrow_amount != amount - expected_fee:
            violations.append(
                Violation(
                    rule="deposit_escrow_remainder",
                    severity=Severity.HIGH,
                    message="Escrow amount is not deposit minus platform fee",
                    detected=escrow_amount,
                    expected=amount - expected_fee,
                )
            )
            corrected["escrow_amount"] = amount - expected_fee
        if amount - expected_fee <= 0:
            violations.append(
                Violation(
                    rule="deposit_escrow_positive",
                    severity=Severity.CRITICAL,
                    message="Deposit leaves no escrow to meter against",
                    detected=amount - expected_fee,
                    expected="> 0",
                )
            )

        return self._decide(violations, corrected)

    def check_charge(
        self,
        session: Session,
        sender_id: str,
        content_type: ContentType,
        word_count: int,
        token_cost: int,
    ) -> ValidationResult:
        roles = session.roles
        violations: list[Violation] = []
        corrected: dict[str, Any] = {}

        if roles.words_per_token not in (self.rates.words_per_token_standard, self.rates.words_per_token_royal):
            violations.append(
                Violation(
                    rule="charge_rate",
                    severity=Severity.CRITICAL,
                    message=f"Words per token {roles.words_per_token} is not in the rate table",
                    detected=roles.words_per_token,
                    expected=(self.rates.words_per_token_standard, self.rates.words_per_token_royal),
                )
            )
        if token_cost < 0:
            violations.append(
                Violation(
                    rule="charge_non_negative",
                    severity=Severity.CRITICAL,
                    message="Token cost is negative",
                    detected=token_cost,
                    expected=">= 0",
                )
            )
            return self._decide(violations, corrected)

        metered = sender_id == metered_sender(roles, session.participants)
        if sender_id == roles.payer_id or not metered:
            if token_cost != 0:
                violations.append(
                    Violation(
                        rule="charge_payer_exempt",
                        severity=Severity.CRITICAL,
                        message=f"Non-metered sender {sender_id} was charged {token_cost}",
                        detected=token_cost,
                        expected=0,
                    )
                )
            return self._decide(violations, corrected)

        expected = ceil_tokens(word_count, roles.words_per_token)
        if content_type.is_media:
            expected = max(1, expected)
            if token_cost < 1:
                violations.append(
                    Violation(
                        rule="charge_media_floor",
                        severity=Severity.HIGH,
                        message="Media message must cost at least one token",
                        detected=token_cost,
                        expected=expected,
                    )
                )
                corrected["token_cost"] = expected
        if token_cost != expected and "token_cost" not in corrected:
            violations.append(
                Violation(
                    rule="charge_ceiling",
                    severity=Severity.HIGH,
                    message=f"Cost {token_cost} deviates from ceil({word_count}/{roles.words_per_token})",
                    detected=token_cost,
                    expected=expected,
                )
            )
            corrected["token_cost"] = expected

        return self._decide(violations, corrected)

    def check_refund(
        self,
        session: Session,
        reason: RefundReason,
        refund_amount: int,
        platform_share: int,
    ) -> ValidationResult:
        escrow = session.escrow
        remaining = escrow.remaining_tokens if escrow is not None else 0
        fee = escrow.platform_fee if escrow is not None and not escrow.platform_fee_refunded else 0
        violations: list[Violation] = []

        if platform_share and reason is not RefundReason.MISMATCH:
            violations.append(
                Violation(
                    rule="refund_fee_retained",
                    severity=Severity.CRITICAL,
                    message=f"Platform fee refunded for reason {reason.value}",
                    detected=platform_share,
                    expected=0,
                )
            )
        expected = remaining + (fee if reason is RefundReason.MISMATCH else 0)
        if refund_amount != expected:
            violations.append(
                Violation(
                    rule="refund_amount",
                    severity=Severity.CRITICAL,
                    message=f"Refund {refund_amount} != expected {expected}",
                    detected=refund_amount,
                    expected=expected,
                )
            )
        return self._decide(violations, {})

    def enforce(self, result: ValidationResult, session_id: str) -> ValidationResult:
        if result.action is Action.BLOCK:
            logger.error(
                "integrity_blocked",
                session_id=session_id,
                rules=[violation.rule for violation in result.violations],
            )
            raise IntegrityViolationError(
                "; ".join(violation.message for violation in result.violations),
                session_id=session_id,
                violations=list(result.violations),
            )
        if result.action is Action.AUTO_CORRECT:
            logger.warning(
                "integrity_auto_corrected",
                session_id=session_id,
                rules=[violation.rule for violation in result.violations],
                corrected=result.corrected,
            )
        return result

    def _decide(self, violations: list[Violation], corrected: dict[str, Any]) -> ValidationResult:
        if not violations:
            return ValidationResult(action=Action.ALLOW)
        if any(violation.severity is Severity.CRITICAL for violation in violations):
            return ValidationResult(action=Action.BLOCK, violations=tuple(violations))
        if all(violation.rule in CORRECTABLE_RULES for violation in violations) and corrected:
            return ValidationResult(action=Action.AUTO_CORRECT, violations=tuple(violations), corrected=corrected)
        return ValidationResult(action=Action.BLOCK, violations=tuple(violations))
