"""
Cash session lifecycle

WHY: A session is one period of cash accountability on one register.
Expected cash comes from the ledger; the close compares it with the
physical count and freezes the figures the Z report later sums.

STATE MACHINE:
- open -> closed   (counted, reconciled, frozen)
- open -> canceled (opened by mistake, nothing references it)
Both terminal states are read-only.

CONCURRENCY:
- At most one open session per register: checked under the register
  lock, enforced by the partial unique index.
- Every movement append bumps the session version; a close that computed
  expected cash from an older ledger fails at flush and is retried.
  Attaching an invoice bumps it too, so frozen sales never miss a ticket.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    DifferenceRequiresConfirmationError,
    InvalidAmountError,
    InvalidFloatError,
    RegisterBusyError,
    RegisterInactiveError,
    RegisterNotFoundError,
    SessionClosedError,
    SessionNotEmptyError,
    SessionNotFoundError,
)
from ..extensions import db
from ..models import CashMovement, CashRegister, CashSession, Invoice
from ..models.registers import (
    SESSION_STATUS_CANCELED,
    SESSION_STATUS_CLOSED,
    SESSION_STATUS_OPEN,
    SESSION_STATUSES,
)
from ..validation import MAX_AMOUNT_CENTS
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import (
    append_movement,
    compute_expected_cash_cents,
    get_session_movements,
    movement_totals,
    validate_movement,
)
from .refund_service import summarize_session_refunds
from .sales_adapter import summarize_session_sales
from cashdesk.time_utils import utcnow


logger = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def _load_session_for_update(session_id: int) -> CashSession:
    session = lock_for_update(db.session.query(CashSession).filter_by(id=session_id)).first()
    if not session:
        raise SessionNotFoundError("Session not found", session_id=session_id)
    return session


def denominations_total_cents(denominations: dict) -> int:
    """
    Total of a physical count given as {denomination_cents: count}.

    Keys may be ints or digit strings (JSON object keys are strings).
    """
    if not isinstance(denominations, dict) or not denominations:
        raise InvalidAmountError("denominations must be a non-empty object", denominations=denominations)

    total = 0
    for raw_value, raw_count in denominations.items():
        try:
            value = int(str(raw_value).strip())
        except ValueError:
            raise InvalidAmountError("Denomination must be an integer number of cents", denomination=raw_value)
        if value <= 0:
            raise InvalidAmountError("Denomination must be positive", denomination=raw_value)
        if isinstance(raw_count, bool) or not isinstance(raw_count, int) or raw_count < 0:
            raise InvalidAmountError(
                "Denomination count must be a non-negative integer",
                denomination=raw_value,
                count=raw_count,
            )
        total += value * raw_count

    if total > MAX_AMOUNT_CENTS:
        raise InvalidAmountError("Counted cash exceeds the maximum", counted_cash_cents=total)
    return total


def _resolve_counted_cash(counted_cash_cents, denominations) -> tuple[int, dict | None]:
    if counted_cash_cents is None and not denominations:
        raise InvalidAmountError("Either counted_cash_cents or denominations is required")

    normalized = None
    if denominations:
        denomination_total = denominations_total_cents(denominations)
        normalized = {str(int(str(k).strip())): v for k, v in denominations.items()}
        if counted_cash_cents is not None and counted_cash_cents != denomination_total:
            raise InvalidAmountError(
                "counted_cash_cents does not match the denomination count",
                counted_cash_cents=counted_cash_cents,
                denominations_total_cents=denomination_total,
            )
        counted_cash_cents = denomination_total

    if isinstance(counted_cash_cents, bool) or not isinstance(counted_cash_cents, int):
        raise InvalidAmountError("counted_cash_cents must be an integer", counted_cash_cents=counted_cash_cents)
    if counted_cash_cents < 0:
        raise InvalidAmountError("Counted cash cannot be negative", counted_cash_cents=counted_cash_cents)
    if counted_cash_cents > MAX_AMOUNT_CENTS:
        raise InvalidAmountError("Counted cash exceeds the maximum", counted_cash_cents=counted_cash_cents)

    return counted_cash_cents, normalized


# =============================================================================
# LIFECYCLE
# =============================================================================

def open_session(register_id: int, opened_by: str, opening_float_cents: int) -> CashSession:
    """
    Open a new session on a register.

    Raises:
        InvalidFloatError: negative or non-integer float
        RegisterNotFoundError / RegisterInactiveError
        RegisterBusyError: the register already has an open session
    """
    if isinstance(opening_float_cents, bool) or not isinstance(opening_float_cents, int):
        raise InvalidFloatError("Opening float must be an integer number of cents", opening_float_cents=opening_float_cents)
    if opening_float_cents < 0:
        raise InvalidFloatError("Opening float cannot be negative", opening_float_cents=opening_float_cents)
    if opening_float_cents > MAX_AMOUNT_CENTS:
        raise InvalidFloatError("Opening float exceeds the maximum", opening_float_cents=opening_float_cents)

    def _op():
        register = lock_for_update(db.session.query(CashRegister).filter_by(id=register_id)).first()
        if not register:
            raise RegisterNotFoundError("Register not found", register_id=register_id)
        if not register.is_active:
            raise RegisterInactiveError("Cannot open a session on an inactive register", register_id=register_id)

        existing = db.session.query(CashSession).filter_by(
            register_id=register_id,
            status=SESSION_STATUS_OPEN,
        ).first()
        if existing:
            raise RegisterBusyError(
                f"Register already has an open session (session {existing.id})",
                register_id=register_id,
                session_id=existing.id,
            )

        session = CashSession(
            register_id=register_id,
            opened_by=opened_by,
            status=SESSION_STATUS_OPEN,
            opening_float_cents=opening_float_cents,
            opened_at=utcnow(),
            totals_by_method={},
        )
        db.session.add(session)
        try:
            db.session.flush()
        except IntegrityError:
            # Partial unique index: another opener committed first
            db.session.rollback()
            raise RegisterBusyError(
                "Register already has an open session",
                register_id=register_id,
            )

        append_audit_event(
            event_type="cash_session.opened",
            entity_type="cash_session",
            entity_id=session.id,
            actor=opened_by,
            register_id=register_id,
            session_id=session.id,
            occurred_at=session.opened_at,
            payload={"opening_float_cents": opening_float_cents},
        )
        db.session.commit()
        return session

    session = run_with_retry(_op)
    logger.info(
        "Session %s opened on register %s by %s (float %d cents)",
        session.id, register_id, opened_by, opening_float_cents,
    )
    return session


def record_movement(
    session_id: int,
    movement_type: str,
    amount_cents: int,
    reason: str,
    actor: str,
    direction: str | None = None,
) -> CashMovement:
    """
    Record a manual cash movement (cash_in, cash_out, safe_drop, adjustment).

    Input is validated before the session is even loaded, so a rejected
    request never touches the database.
    """
    movement_type, amount_cents, reason, direction = validate_movement(
        movement_type, amount_cents, reason, direction
    )

    def _op():
        session = _load_session_for_update(session_id)
        movement = append_movement(
            session,
            movement_type=movement_type,
            amount_cents=amount_cents,
            reason=reason,
            actor=actor,
            direction=direction,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def compute_expected_cash(session_id: int) -> int:
    """Opening float plus the signed sum of the session's ledger."""
    session = db.session.get(CashSession, session_id)
    if not session:
        raise SessionNotFoundError("Session not found", session_id=session_id)
    return compute_expected_cash_cents(session)


def close_session(
    session_id: int,
    actor: str,
    counted_cash_cents: int | None = None,
    denominations: dict | None = None,
    *,
    override: bool = False,
    notes: str | None = None,
) -> CashSession:
    """
    Close a session and reconcile the physical count with the ledger.

    IMMUTABLE: once closed, the expected/counted/difference figures and
    the sales and refund aggregates are frozen.

    Raises:
        DifferenceRequiresConfirmationError: |counted - expected| exceeds
            CASH_DIFFERENCE_THRESHOLD_CENTS and override is False. Nothing
            is written; re-invoke with override=True.
        SessionClosedError: the session is not open (difference untouched)
    """
    counted_cash_cents, normalized_denominations = _resolve_counted_cash(counted_cash_cents, denominations)
    threshold = current_app.config.get("CASH_DIFFERENCE_THRESHOLD_CENTS", 1000)

    def _op():
        session = _load_session_for_update(session_id)
        if not session.is_open:
            raise SessionClosedError(
                f"Session {session.id} is already {session.status}",
                session_id=session.id,
                status=session.status,
            )

        expected = compute_expected_cash_cents(session)
        difference = counted_cash_cents - expected
        needs_override = abs(difference) > threshold

        if needs_override and not override:
            raise DifferenceRequiresConfirmationError(
                "Cash difference exceeds the threshold and needs confirmation",
                session_id=session.id,
                expected_cash_cents=expected,
                counted_cash_cents=counted_cash_cents,
                difference_cents=difference,
                direction="over" if difference > 0 else "short",
                threshold_cents=threshold,
            )

        sales = summarize_session_sales(session.id)
        refunds = summarize_session_refunds(session.id)

        session.status = SESSION_STATUS_CLOSED
        session.closed_by = actor
        session.closed_at = utcnow()
        session.expected_cash_cents = expected
        session.counted_cash_cents = counted_cash_cents
        session.cash_difference_cents = difference
        session.denominations = normalized_denominations
        session.difference_override = bool(needs_override)
        session.invoice_count = sales["invoice_count"]
        session.total_ht_cents = sales["total_ht_cents"]
        session.total_tva_cents = sales["total_tva_cents"]
        session.total_ttc_cents = sales["total_ttc_cents"]
        session.totals_by_method = sales["by_method"]
        session.vat_breakdown = sales["vat_breakdown"]
        session.refund_count = refunds["refund_count"]
        session.refund_total_cents = refunds["refund_total_cents"]
        if notes is not None:
            session.notes = notes

        append_audit_event(
            event_type="cash_session.closed",
            entity_type="cash_session",
            entity_id=session.id,
            actor=actor,
            register_id=session.register_id,
            session_id=session.id,
            occurred_at=session.closed_at,
            payload={
                "expected_cash_cents": expected,
                "counted_cash_cents": counted_cash_cents,
                "cash_difference_cents": difference,
                "difference_override": session.difference_override,
            },
        )
        db.session.commit()
        return session

    session = run_with_retry(_op)
    if session.difference_override:
        logger.warning(
            "Session %s closed by %s with confirmed difference of %d cents",
            session.id, actor, session.cash_difference_cents,
        )
    else:
        logger.info(
            "Session %s closed by %s (difference %d cents)",
            session.id, actor, session.cash_difference_cents,
        )
    return session


def cancel_session(session_id: int, actor: str, reason: str | None = None) -> CashSession:
    """
    Cancel a session opened by mistake.

    Only an untouched session can be canceled: once a movement or an
    invoice references it, it has to be closed and counted instead.
    """
    def _op():
        session = _load_session_for_update(session_id)
        if not session.is_open:
            raise SessionClosedError(
                f"Session {session.id} is already {session.status}",
                session_id=session.id,
                status=session.status,
            )

        movement_count = db.session.query(CashMovement).filter_by(session_id=session.id).count()
        invoice_count = db.session.query(Invoice).filter_by(session_id=session.id).count()
        if movement_count or invoice_count:
            raise SessionNotEmptyError(
                "Session has activity and must be closed, not canceled",
                session_id=session.id,
                movement_count=movement_count,
                invoice_count=invoice_count,
            )

        session.status = SESSION_STATUS_CANCELED
        session.canceled_by = actor
        session.canceled_at = utcnow()
        session.cancel_reason = reason

        append_audit_event(
            event_type="cash_session.canceled",
            entity_type="cash_session",
            entity_id=session.id,
            actor=actor,
            register_id=session.register_id,
            session_id=session.id,
            occurred_at=session.canceled_at,
            payload={"reason": reason},
        )
        db.session.commit()
        return session

    session = run_with_retry(_op)
    logger.info("Session %s canceled by %s", session.id, actor)
    return session


# =============================================================================
# QUERIES
# =============================================================================

def get_session(session_id: int) -> CashSession:
    session = db.session.get(CashSession, session_id)
    if not session:
        raise SessionNotFoundError("Session not found", session_id=session_id)
    return session


def get_open_session(register_id: int) -> CashSession | None:
    """Get the currently open session for a register, if any."""
    return db.session.query(CashSession).filter_by(
        register_id=register_id,
        status=SESSION_STATUS_OPEN,
    ).first()


def list_sessions(
    register_id: int | None = None,
    status: str | None = None,
    date_from: datetime | date | None = None,
    date_to: datetime | date | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CashSession], int]:
    """Sessions newest first, filtered on opened_at. Returns (rows, total)."""
    query = db.session.query(CashSession)
    if register_id is not None:
        query = query.filter(CashSession.register_id == register_id)
    if status:
        if status not in SESSION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(SESSION_STATUSES)}")
        query = query.filter(CashSession.status == status)
    if date_from is not None:
        query = query.filter(CashSession.opened_at >= date_from)
    if date_to is not None:
        query = query.filter(CashSession.opened_at <= date_to)

    total = query.count()
    rows = query.order_by(CashSession.opened_at.desc(), CashSession.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_session_detail(session_id: int) -> dict:
    session = get_session(session_id)
    data = session.to_dict()
    data["movements"] = [m.to_dict() for m in get_session_movements(session.id)]
    data["movement_totals"] = movement_totals(session.id)
    if session.is_open:
        data["expected_cash_cents"] = compute_expected_cash_cents(session)
    return data
