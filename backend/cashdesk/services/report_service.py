"""
X and Z cash reports

- X report: live snapshot of an open session, recomputed on every call,
  never persisted.
- Z report: end-of-day aggregate of every session closed on a register
  that day. Generated once and locked: later requests return the stored
  row without rescanning anything.

Z reports are chained per register (sequence number + SHA-256 over the
figures and the previous report's hash) so a later edit of a locked
report is detectable with verify_z_chain.
"""

from __future__ import annotations

import logging
from datetime import date

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    NoClosedSessionsError,
    RegisterNotFoundError,
    SessionNotFoundError,
    SessionNotOpenError,
    ZReportNotFoundError,
)
from ..extensions import db
from ..models import CashRegister, CashSession, ZReport
from ..models.registers import SESSION_STATUS_CLOSED
from .audit_service import append_audit_event
from .concurrency import ConcurrentWriteConflict, run_with_retry
from .hash_chain import GENESIS_HASH, compute_report_hash, verify_chain
from .ledger_service import movement_totals
from .refund_service import summarize_session_refunds
from .sales_adapter import merge_vat_breakdowns, summarize_session_sales
from cashdesk.time_utils import local_day_bounds_utc, to_utc_z, utcnow


logger = logging.getLogger(__name__)


# =============================================================================
# X REPORT
# =============================================================================

def generate_x_report(session_id: int) -> dict:
    """
    Intermediate report of an open session.

    Sales cash is shown for information; expected cash is the opening
    float plus the ledger only.
    """
    session = db.session.get(CashSession, session_id)
    if not session:
        raise SessionNotFoundError("Session not found", session_id=session_id)
    if not session.is_open:
        raise SessionNotOpenError(
            "X reports are only available for open sessions",
            session_id=session.id,
            status=session.status,
        )

    sales = summarize_session_sales(session.id)
    refunds = summarize_session_refunds(session.id)
    movements = movement_totals(session.id)
    expected = (session.opening_float_cents or 0) + movements["net_cents"]

    return {
        "report_type": "x",
        "generated_at": to_utc_z(utcnow()),
        "session": {
            "id": session.id,
            "register_id": session.register_id,
            "opened_by": session.opened_by,
            "opened_at": to_utc_z(session.opened_at),
            "opening_float_cents": session.opening_float_cents,
        },
        "sales": sales,
        "refunds": refunds,
        "movements": movements,
        "expected_cash": {
            "opening_float_cents": session.opening_float_cents,
            "movements_net_cents": movements["net_cents"],
            "total_cents": expected,
            "sales_cash_cents": sales["sales_cash_cents"],
        },
    }


# =============================================================================
# Z REPORT
# =============================================================================

def _collect_closed_sessions(register_id: int, report_date: date) -> list[CashSession]:
    """Closed sessions whose closed_at falls on report_date in the report timezone."""
    tz_name = current_app.config.get("CASH_REPORT_TIMEZONE", "UTC")
    start, end = local_day_bounds_utc(report_date, tz_name)
    return db.session.query(CashSession).filter(
        CashSession.register_id == register_id,
        CashSession.status == SESSION_STATUS_CLOSED,
        CashSession.closed_at >= start,
        CashSession.closed_at < end,
    ).order_by(CashSession.closed_at, CashSession.id).all()


def _session_detail(session: CashSession) -> dict:
    return {
        "session_id": session.id,
        "opened_by": session.opened_by,
        "closed_by": session.closed_by,
        "opened_at": to_utc_z(session.opened_at),
        "closed_at": to_utc_z(session.closed_at),
        "opening_float_cents": session.opening_float_cents,
        "expected_cash_cents": session.expected_cash_cents or 0,
        "counted_cash_cents": session.counted_cash_cents or 0,
        "cash_difference_cents": session.cash_difference_cents or 0,
        "invoice_count": session.invoice_count or 0,
        "total_ht_cents": session.total_ht_cents or 0,
        "total_tva_cents": session.total_tva_cents or 0,
        "total_ttc_cents": session.total_ttc_cents or 0,
        "totals_by_method": dict(session.totals_by_method or {}),
        "vat_breakdown": dict(session.vat_breakdown or {}),
        "refund_count": session.refund_count or 0,
        "refund_total_cents": session.refund_total_cents or 0,
    }


def _report_figures(report: ZReport) -> dict:
    """Fields covered by the hash (everything but the chain and metadata)."""
    return {
        "register_id": report.register_id,
        "report_date": report.report_date.isoformat(),
        "number": report.number,
        "sequence_number": report.sequence_number,
        "session_ids": list(report.session_ids or []),
        "sessions_count": report.sessions_count,
        "invoice_count": report.invoice_count,
        "total_ht_cents": report.total_ht_cents,
        "total_tva_cents": report.total_tva_cents,
        "total_ttc_cents": report.total_ttc_cents,
        "totals_by_method": dict(report.totals_by_method or {}),
        "vat_breakdown": dict(report.vat_breakdown or {}),
        "refund_count": report.refund_count,
        "refund_total_cents": report.refund_total_cents,
        "total_expected_cash_cents": report.total_expected_cash_cents,
        "total_counted_cash_cents": report.total_counted_cash_cents,
        "total_cash_difference_cents": report.total_cash_difference_cents,
        "sessions": list(report.sessions or []),
    }


def _find_z_report(register_id: int, report_date: date) -> ZReport | None:
    return db.session.query(ZReport).filter_by(register_id=register_id, report_date=report_date).first()


def generate_z_report(register_id: int, report_date: date, actor: str | None = None) -> dict:
    """
    Generate (or return) the locked Z report of a register for a day.

    Idempotent: an existing report is returned unchanged. When two callers
    race, the unique constraint on (register, date) rejects the loser,
    which then returns the winner's row.

    Raises:
        RegisterNotFoundError
        NoClosedSessionsError: nothing closed that day; nothing persisted
    """
    register = db.session.get(CashRegister, register_id)
    if not register:
        raise RegisterNotFoundError("Register not found", register_id=register_id)
    register_code = register.code

    def _op():
        existing = _find_z_report(register_id, report_date)
        if existing:
            return existing, False

        sessions = _collect_closed_sessions(register_id, report_date)
        if not sessions:
            raise NoClosedSessionsError(
                "No closed sessions for this register and date",
                register_id=register_id,
                date=report_date.isoformat(),
            )

        details = [_session_detail(s) for s in sessions]
        by_method: dict[str, int] = {}
        for detail in details:
            for method, amount in detail["totals_by_method"].items():
                by_method[method] = by_method.get(method, 0) + int(amount or 0)

        last = db.session.query(ZReport).filter_by(
            register_id=register_id
        ).order_by(ZReport.sequence_number.desc()).first()
        sequence_number = (last.sequence_number + 1) if last else 1
        previous_hash = last.hash if last else GENESIS_HASH

        report = ZReport(
            register_id=register_id,
            report_date=report_date,
            number=f"Z-{register_code}-{sequence_number:06d}",
            sequence_number=sequence_number,
            session_ids=[d["session_id"] for d in details],
            sessions_count=len(details),
            invoice_count=sum(d["invoice_count"] for d in details),
            total_ht_cents=sum(d["total_ht_cents"] for d in details),
            total_tva_cents=sum(d["total_tva_cents"] for d in details),
            total_ttc_cents=sum(d["total_ttc_cents"] for d in details),
            totals_by_method=by_method,
            vat_breakdown=merge_vat_breakdowns(d["vat_breakdown"] for d in details),
            refund_count=sum(d["refund_count"] for d in details),
            refund_total_cents=sum(d["refund_total_cents"] for d in details),
            total_expected_cash_cents=sum(d["expected_cash_cents"] for d in details),
            total_counted_cash_cents=sum(d["counted_cash_cents"] for d in details),
            total_cash_difference_cents=sum(d["cash_difference_cents"] for d in details),
            sessions=details,
            previous_hash=previous_hash,
            generated_by=actor,
            generated_at=utcnow(),
        )
        report.hash = compute_report_hash(_report_figures(report), previous_hash)
        db.session.add(report)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            winner = _find_z_report(register_id, report_date)
            if winner:
                return winner, False
            # Sequence number taken by another date's report: start over
            raise ConcurrentWriteConflict(f"z report sequence {sequence_number} taken") from exc

        append_audit_event(
            event_type="z_report.locked",
            entity_type="z_report",
            entity_id=report.id,
            actor=actor,
            register_id=register_id,
            payload={
                "number": report.number,
                "date": report_date.isoformat(),
                "sessions_count": report.sessions_count,
                "total_ttc_cents": report.total_ttc_cents,
                "hash": report.hash,
            },
        )
        db.session.commit()
        return report, True

    report, created = run_with_retry(_op)
    if created:
        logger.info(
            "Z report %s locked for register %s on %s (%d sessions)",
            report.number, register_id, report_date.isoformat(), report.sessions_count,
        )
    return report.to_dict()


def check_z_report(register_id: int, report_date: date) -> dict:
    """Whether the day is already locked and how many sessions it would cover."""
    register = db.session.get(CashRegister, register_id)
    if not register:
        raise RegisterNotFoundError("Register not found", register_id=register_id)

    existing = _find_z_report(register_id, report_date)
    closed = _collect_closed_sessions(register_id, report_date)
    return {
        "register_id": register_id,
        "date": report_date.isoformat(),
        "exists": existing is not None,
        "report_id": existing.id if existing else None,
        "closed_sessions_count": len(closed),
        "can_generate": existing is None and len(closed) > 0,
    }


def get_z_report(report_id: int) -> ZReport:
    report = db.session.get(ZReport, report_id)
    if not report:
        raise ZReportNotFoundError("Z report not found", report_id=report_id)
    return report


def list_z_reports(register_id: int | None = None, limit: int = 50) -> list[ZReport]:
    query = db.session.query(ZReport)
    if register_id is not None:
        query = query.filter(ZReport.register_id == register_id)
    return query.order_by(ZReport.report_date.desc(), ZReport.id.desc()).limit(limit).all()


def verify_z_chain(register_id: int) -> dict:
    """
    Recompute every hash of a register's Z chain.

    Returns the first broken sequence number (or None) with the reason.
    """
    reports = db.session.query(ZReport).filter_by(
        register_id=register_id
    ).order_by(ZReport.sequence_number).all()

    result = verify_chain(reports, _report_figures)
    if not result["valid"]:
        logger.warning(
            "Z chain of register %s broken at sequence %s (%s)",
            register_id, result["broken_at"], result["reason"],
        )
    return {"register_id": register_id, **result}
