# Overview: Ledger store for cash movements; the only writer of money movements.

"""
Cash ledger invariants

- Append-only: movements are inserted, never updated or deleted.
- amount_cents > 0; the sign comes from ``direction``.
- Only open sessions accept movements. Callers hold the session row
  (lock_for_update) and this module bumps its ``movement_count`` so the
  session version changes with every append.
- Expected cash is always derived from the ledger, never trusted from a
  stored column while the session is open.
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..errors import InvalidAmountError, MissingReasonError, SessionClosedError, ValidationError
from ..extensions import db
from ..models import CashMovement, CashSession
from ..models.registers import (
    DIRECTION_IN,
    DIRECTION_OUT,
    IMPLIED_DIRECTIONS,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_CASH_IN,
    MOVEMENT_CASH_OUT,
    MOVEMENT_SAFE_DROP,
    MOVEMENT_TYPES,
)
from ..validation import MAX_AMOUNT_CENTS
from .audit_service import append_audit_event
from cashdesk.time_utils import utcnow


logger = logging.getLogger(__name__)


def validate_movement(
    movement_type: str,
    amount_cents,
    reason: str | None,
    direction: str | None = None,
) -> tuple[str, int, str, str]:
    """
    Validate a movement request before anything is written.

    Returns (movement_type, amount_cents, reason, direction). Adjustments
    default to ``in`` when no direction is given; other types must not
    contradict their implied direction.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise InvalidAmountError(
            f"Unknown movement type '{movement_type}'",
            movement_type=movement_type,
            allowed=list(MOVEMENT_TYPES),
        )

    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmountError("Movement amount must be an integer number of cents", amount_cents=amount_cents)
    if amount_cents <= 0:
        raise InvalidAmountError("Movement amount must be positive", amount_cents=amount_cents)
    if amount_cents > MAX_AMOUNT_CENTS:
        raise InvalidAmountError(
            "Movement amount exceeds the maximum", amount_cents=amount_cents, max_cents=MAX_AMOUNT_CENTS
        )

    reason = (reason or "").strip()
    if not reason:
        raise MissingReasonError("A reason is required for every cash movement", movement_type=movement_type)
    if len(reason) > 255:
        raise ValidationError("Movement reason exceeds 255 characters", length=len(reason))

    if movement_type == MOVEMENT_ADJUSTMENT:
        direction = direction or DIRECTION_IN
        if direction not in (DIRECTION_IN, DIRECTION_OUT):
            raise ValidationError(
                "Adjustment direction must be 'in' or 'out'", direction=direction
            )
    else:
        implied = IMPLIED_DIRECTIONS[movement_type]
        if direction is not None and direction != implied:
            raise ValidationError(
                f"Direction of {movement_type} is always '{implied}'",
                movement_type=movement_type,
                direction=direction,
            )
        direction = implied

    return movement_type, amount_cents, reason, direction


def append_movement(
    session: CashSession,
    *,
    movement_type: str,
    amount_cents: int,
    reason: str,
    actor: str,
    direction: str | None = None,
    invoice_id: int | None = None,
    credit_note_id: int | None = None,
) -> CashMovement:
    """
    Append one movement to an open session (flush only, caller commits).

    The caller must have loaded ``session`` with lock_for_update inside
    the same transaction.
    """
    movement_type, amount_cents, reason, direction = validate_movement(
        movement_type, amount_cents, reason, direction
    )

    if not session.is_open:
        raise SessionClosedError(
            f"Session {session.id} is {session.status}; it accepts no new movements",
            session_id=session.id,
            status=session.status,
        )

    movement = CashMovement(
        session_id=session.id,
        movement_type=movement_type,
        direction=direction,
        amount_cents=amount_cents,
        reason=reason,
        created_by=actor,
        created_at=utcnow(),
        invoice_id=invoice_id,
        credit_note_id=credit_note_id,
    )
    db.session.add(movement)

    # Version bump: a close that read the session before this append
    # fails at flush and recomputes.
    session.movement_count = (session.movement_count or 0) + 1
    db.session.flush()

    append_audit_event(
        event_type=f"cash_movement.{movement_type}",
        entity_type="cash_movement",
        entity_id=movement.id,
        actor=actor,
        register_id=session.register_id,
        session_id=session.id,
        occurred_at=movement.created_at,
        payload={
            "amount_cents": amount_cents,
            "direction": direction,
            "reason": reason,
            "invoice_id": invoice_id,
            "credit_note_id": credit_note_id,
        },
    )

    logger.info(
        "Movement %s %s %d cents on session %s (%s)",
        movement_type, direction, amount_cents, session.id, reason,
    )
    return movement


def get_session_movements(session_id: int) -> list[CashMovement]:
    """All movements of a session, oldest first."""
    return db.session.query(CashMovement).filter_by(
        session_id=session_id
    ).order_by(CashMovement.created_at, CashMovement.id).all()


def movement_totals(session_id: int) -> dict:
    """
    Per-type totals of a session's ledger.

    ``net_cents`` is the signed sum of every movement; it is the only
    figure expected cash depends on.
    """
    rows = db.session.query(
        CashMovement.movement_type,
        CashMovement.direction,
        func.count(CashMovement.id),
        func.coalesce(func.sum(CashMovement.amount_cents), 0),
    ).filter(
        CashMovement.session_id == session_id
    ).group_by(CashMovement.movement_type, CashMovement.direction).all()

    totals = {
        MOVEMENT_CASH_IN: 0,
        MOVEMENT_CASH_OUT: 0,
        MOVEMENT_SAFE_DROP: 0,
        "adjustment_in": 0,
        "adjustment_out": 0,
    }
    count = 0
    net = 0
    for movement_type, direction, n, amount in rows:
        amount = int(amount or 0)
        count += int(n or 0)
        if movement_type == MOVEMENT_ADJUSTMENT:
            totals[f"adjustment_{direction}"] += amount
        else:
            totals[movement_type] += amount
        net += amount if direction == DIRECTION_IN else -amount

    return {
        "cash_in_cents": totals[MOVEMENT_CASH_IN],
        "cash_out_cents": totals[MOVEMENT_CASH_OUT],
        "safe_drop_cents": totals[MOVEMENT_SAFE_DROP],
        "adjustment_in_cents": totals["adjustment_in"],
        "adjustment_out_cents": totals["adjustment_out"],
        "adjustment_net_cents": totals["adjustment_in"] - totals["adjustment_out"],
        "movement_count": count,
        "net_cents": net,
    }


def compute_expected_cash_cents(session: CashSession) -> int:
    """opening float + cash_in - cash_out - safe_drop +/- adjustments."""
    return (session.opening_float_cents or 0) + movement_totals(session.id)["net_cents"]
