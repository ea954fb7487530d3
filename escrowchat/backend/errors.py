"""Error taxonomy for billing operations."""

from __future__ import annotations


class BillingError(Exception):
    """Base error; ``code`` is stable and exposed to API clients."""

    code = "BILLING_ERROR"
    recoverable = False

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class InvalidProfileError(BillingError):
    code = "INVALID_PROFILE"


class SessionNotFoundError(BillingError):
    code = "SESSION_NOT_FOUND"


class NotParticipantError(BillingError):
    code = "NOT_PARTICIPANT"


class NotPayerError(BillingError):
    code = "NOT_PAYER"


class DuplicateContentError(BillingError):
    code = "DUPLICATE_CONTENT"
    recoverable = True


class DepositRequired(BillingError):
    """Control-flow signal: the payer must deposit before the chat continues."""

    code = "DEPOSIT_REQUIRED"
    recoverable = True


class InsufficientEscrowError(BillingError):
    code = "INSUFFICIENT_ESCROW"
    recoverable = True

    def __init__(self, message: str, *, session_id: str | None = None, required: int = 0, remaining: int = 0) -> None:
        super().__init__(message, session_id=session_id)
        self.required = required
        self.remaining = remaining


class InsufficientFundsError(BillingError):
    code = "INSUFFICIENT_FUNDS"
    recoverable = True


class DuplicateDepositError(BillingError):
    code = "DUPLICATE_DEPOSIT"


class DepositNotAllowedError(BillingError):
    code = "DEPOSIT_NOT_ALLOWED"


class SessionClosedError(BillingError):
    code = "SESSION_CLOSED"
    recoverable = True


class InvalidTransitionError(BillingError):
    code = "INVALID_TRANSITION"


class IntegrityViolationError(BillingError):
    code = "INTEGRITY_VIOLATION"

    def __init__(self, message: str, *, session_id: str | None = None, violations: list | None = None) -> None:
        super().__init__(message, session_id=session_id)
        self.violations = list(violations or [])


class LedgerIntegrityError(BillingError):
    """Conservation of value was violated; never auto-corrected."""

    code = "LEDGER_INTEGRITY"
