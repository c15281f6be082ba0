# Overview: Error taxonomy shared by the cash services and translated to JSON by the routes.

"""
Cashdesk error taxonomy.

Every rejection carries the invariant that was violated (``code``) and the
current values that caused it (``details``) so callers can show an
actionable message. ``status_code`` is the HTTP status the routes answer
with; ``retryable`` marks infrastructure failures that are safe to retry.
"""

from __future__ import annotations

from typing import Any


class CashdeskError(Exception):
    """Base class for every business and infrastructure error of the core."""

    code = "CASHDESK_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


# =============================================================================
# STATE ERRORS (caller picks another target or action, never auto-retried)
# =============================================================================

class StateError(CashdeskError):
    status_code = 409


class RegisterBusyError(StateError):
    code = "REGISTER_BUSY"


class RegisterInactiveError(StateError):
    code = "REGISTER_INACTIVE"


class SessionClosedError(StateError):
    code = "SESSION_CLOSED"


class SessionNotOpenError(StateError):
    code = "SESSION_NOT_OPEN"


class SessionNotEmptyError(StateError):
    code = "SESSION_NOT_EMPTY"


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(CashdeskError):
    status_code = 404


class RegisterNotFoundError(NotFoundError):
    code = "REGISTER_NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    code = "INVOICE_NOT_FOUND"


class ZReportNotFoundError(NotFoundError):
    code = "Z_REPORT_NOT_FOUND"


class NoClosedSessionsError(NotFoundError):
    code = "NO_CLOSED_SESSIONS"


# =============================================================================
# VALIDATION ERRORS (rejected before any write)
# =============================================================================

class ValidationError(CashdeskError, ValueError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidFloatError(ValidationError):
    code = "INVALID_FLOAT"


class MissingReasonError(ValidationError):
    code = "MISSING_REASON"


class InvalidRefundLineError(ValidationError):
    code = "INVALID_REFUND_LINE"


# =============================================================================
# RECONCILIATION GATE
# =============================================================================

class DifferenceRequiresConfirmationError(CashdeskError):
    """
    Not a system failure: the count differs from the ledger by more than
    the configured threshold and a human has to acknowledge it. Re-invoke
    the close with ``override=True``.
    """

    code = "DIFFERENCE_REQUIRES_CONFIRMATION"
    status_code = 409


# =============================================================================
# REFUND INVARIANTS (hard failures, amounts are never clamped)
# =============================================================================

class RefundError(CashdeskError):
    status_code = 422


class OverRefundError(RefundError):
    code = "OVER_REFUND"


class AmountExceedsRemainingError(RefundError):
    code = "AMOUNT_EXCEEDS_REMAINING"


class NothingToRefundError(RefundError):
    code = "NOTHING_TO_REFUND"


class UnpricedLineError(RefundError):
    code = "UNPRICED_LINE"


class InvoiceNotRefundableError(RefundError):
    code = "INVOICE_NOT_REFUNDABLE"


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class LedgerUnavailableError(CashdeskError):
    """Persistence kept failing after retries; nothing was committed."""

    code = "LEDGER_UNAVAILABLE"
    status_code = 503
    retryable = True
