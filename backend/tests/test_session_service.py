import pytest

from cashdesk.errors import (
    DifferenceRequiresConfirmationError,
    InvalidAmountError,
    InvalidFloatError,
    MissingReasonError,
    RegisterBusyError,
    RegisterInactiveError,
    RegisterNotFoundError,
    SessionClosedError,
    SessionNotEmptyError,
    SessionNotFoundError,
)
from cashdesk.models import AuditEvent, CashMovement, CashSession
from cashdesk.services import register_service, session_service
from cashdesk.services.session_service import denominations_total_cents

from conftest import ACTOR


class TestOpenSession:
    def test_open_session_starts_open_with_float(self, register):
        session = session_service.open_session(register.id, ACTOR, 10000)

        assert session.status == "open"
        assert session.opening_float_cents == 10000
        assert session.opened_by == ACTOR
        assert session_service.compute_expected_cash(session.id) == 10000

    def test_second_open_on_same_register_is_busy(self, register, open_session):
        with pytest.raises(RegisterBusyError) as exc:
            session_service.open_session(register.id, "cashier-2", 5000)
        assert exc.value.details["session_id"] == open_session.id

    def test_negative_float_rejected(self, register, db_session):
        with pytest.raises(InvalidFloatError):
            session_service.open_session(register.id, ACTOR, -1)
        assert db_session.query(CashSession).count() == 0

    def test_unknown_register(self, db_session):
        with pytest.raises(RegisterNotFoundError):
            session_service.open_session(9999, ACTOR, 0)

    def test_inactive_register(self, register):
        register_service.deactivate_register(register.id)
        with pytest.raises(RegisterInactiveError):
            session_service.open_session(register.id, ACTOR, 0)

    def test_reopen_after_close(self, register, open_session):
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)
        again = session_service.open_session(register.id, ACTOR, 2000)
        assert again.id != open_session.id
        assert again.status == "open"

    def test_open_writes_audit_event(self, open_session, db_session):
        events = db_session.query(AuditEvent).filter_by(
            event_type="cash_session.opened", entity_id=open_session.id
        ).all()
        assert len(events) == 1
        assert events[0].payload["opening_float_cents"] == 10000


class TestMovements:
    def test_scenario_a_expected_cash(self, open_session):
        session_service.record_movement(open_session.id, "cash_in", 2000, "Change from bank", ACTOR)
        session_service.record_movement(open_session.id, "cash_out", 500, "Supplier tip", ACTOR)

        assert session_service.compute_expected_cash(open_session.id) == 11500

    def test_safe_drop_and_adjustments(self, open_session):
        session_service.record_movement(open_session.id, "safe_drop", 3000, "Safe", ACTOR)
        session_service.record_movement(open_session.id, "adjustment", 150, "Found coins", ACTOR, direction="in")
        session_service.record_movement(open_session.id, "adjustment", 50, "Miscount", ACTOR, direction="out")

        assert session_service.compute_expected_cash(open_session.id) == 10000 - 3000 + 150 - 50

    def test_movement_bumps_session_counter(self, open_session, db_session):
        session_service.record_movement(open_session.id, "cash_in", 100, "Float top-up", ACTOR)
        session_service.record_movement(open_session.id, "cash_in", 100, "Float top-up", ACTOR)

        session = db_session.get(CashSession, open_session.id)
        assert session.movement_count == 2

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_rejected(self, open_session, db_session, amount):
        with pytest.raises(InvalidAmountError):
            session_service.record_movement(open_session.id, "cash_in", amount, "x", ACTOR)
        assert db_session.query(CashMovement).count() == 0

    def test_blank_reason_rejected(self, open_session, db_session):
        with pytest.raises(MissingReasonError):
            session_service.record_movement(open_session.id, "cash_out", 100, "   ", ACTOR)
        assert db_session.query(CashMovement).count() == 0

    def test_unknown_type_rejected(self, open_session):
        with pytest.raises(InvalidAmountError):
            session_service.record_movement(open_session.id, "bonus", 100, "x", ACTOR)

    def test_unknown_session(self, db_session):
        with pytest.raises(SessionNotFoundError):
            session_service.record_movement(4242, "cash_in", 100, "x", ACTOR)

    def test_scenario_b_closed_session_rejects_movement(self, open_session, db_session):
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)

        with pytest.raises(SessionClosedError):
            session_service.record_movement(open_session.id, "cash_in", 100, "late", ACTOR)
        assert db_session.query(CashMovement).filter_by(session_id=open_session.id).count() == 0


class TestCloseSession:
    def test_close_within_threshold(self, open_session):
        session_service.record_movement(open_session.id, "cash_in", 2000, "Bank", ACTOR)

        closed = session_service.close_session(open_session.id, "manager-1", counted_cash_cents=11900)

        assert closed.status == "closed"
        assert closed.closed_by == "manager-1"
        assert closed.expected_cash_cents == 12000
        assert closed.counted_cash_cents == 11900
        assert closed.cash_difference_cents == -100
        assert closed.difference_override is False

    def test_large_difference_requires_confirmation(self, open_session, db_session):
        with pytest.raises(DifferenceRequiresConfirmationError) as exc:
            session_service.close_session(open_session.id, ACTOR, counted_cash_cents=5000)

        details = exc.value.details
        assert details["expected_cash_cents"] == 10000
        assert details["counted_cash_cents"] == 5000
        assert details["difference_cents"] == -5000
        assert details["direction"] == "short"
        assert details["threshold_cents"] == 1000

        session = db_session.get(CashSession, open_session.id)
        assert session.status == "open"
        assert session.counted_cash_cents is None

    def test_override_closes_with_difference(self, open_session):
        closed = session_service.close_session(open_session.id, ACTOR, counted_cash_cents=12500, override=True)

        assert closed.status == "closed"
        assert closed.cash_difference_cents == 2500
        assert closed.difference_override is True

    def test_threshold_is_configurable(self, app, open_session):
        app.config["CASH_DIFFERENCE_THRESHOLD_CENTS"] = 50
        try:
            with pytest.raises(DifferenceRequiresConfirmationError):
                session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10100)
        finally:
            app.config["CASH_DIFFERENCE_THRESHOLD_CENTS"] = 1000

    def test_close_twice_keeps_difference(self, open_session, db_session):
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=9900)

        with pytest.raises(SessionClosedError):
            session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)

        session = db_session.get(CashSession, open_session.id)
        assert session.cash_difference_cents == -100
        assert session.counted_cash_cents == 9900

    def test_close_from_denominations(self, open_session):
        closed = session_service.close_session(
            open_session.id, ACTOR, denominations={"5000": 1, "2000": 2, "100": 10}
        )
        assert closed.counted_cash_cents == 10000
        assert closed.denominations == {"5000": 1, "2000": 2, "100": 10}
        assert closed.cash_difference_cents == 0

    def test_denominations_must_match_counted_total(self, open_session):
        with pytest.raises(InvalidAmountError):
            session_service.close_session(
                open_session.id, ACTOR, counted_cash_cents=9000, denominations={"5000": 2}
            )

    def test_count_required(self, open_session):
        with pytest.raises(InvalidAmountError):
            session_service.close_session(open_session.id, ACTOR)

    def test_negative_count_rejected(self, open_session):
        with pytest.raises(InvalidAmountError):
            session_service.close_session(open_session.id, ACTOR, counted_cash_cents=-1)

    def test_close_freezes_sales_figures(self, open_session, make_invoice):
        make_invoice(session=open_session, payment_method="card")
        make_invoice(session=open_session, payment_method="cash")
        make_invoice(session=open_session, payment_method="cash", status="draft")

        closed = session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)

        assert closed.invoice_count == 2
        assert closed.total_ttc_cents == 2400
        assert closed.totals_by_method == {"card": 1200, "cash": 1200}
        # Cash sales are informational: expected cash is float + ledger only
        assert closed.expected_cash_cents == 10000

    def test_close_freezes_vat_figures(self, open_session, make_invoice):
        make_invoice([
            {"name": "Pen", "quantity": 2, "unit_price_cents": 500, "tax_rate_bps": 2000},
        ], session=open_session, total_ttc_cents=1200, total_ht_cents=1000)

        closed = session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)

        assert (closed.total_ht_cents, closed.total_tva_cents) == (1000, 200)
        assert closed.vat_breakdown == {"2000": {"ht_cents": 1000, "tva_cents": 200, "ttc_cents": 1200}}
        assert closed.to_dict()["vat_breakdown"] == closed.vat_breakdown


class TestCancelSession:
    def test_cancel_untouched_session(self, register, open_session):
        canceled = session_service.cancel_session(open_session.id, ACTOR, reason="Wrong register")

        assert canceled.status == "canceled"
        assert canceled.cancel_reason == "Wrong register"
        assert session_service.get_open_session(register.id) is None

    def test_cancel_with_movements_refused(self, open_session):
        session_service.record_movement(open_session.id, "cash_in", 100, "x", ACTOR)

        with pytest.raises(SessionNotEmptyError) as exc:
            session_service.cancel_session(open_session.id, ACTOR)
        assert exc.value.details["movement_count"] == 1

    def test_cancel_closed_session_refused(self, open_session):
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)
        with pytest.raises(SessionClosedError):
            session_service.cancel_session(open_session.id, ACTOR)


class TestQueries:
    def test_list_sessions_filters_status(self, register, open_session):
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)
        session_service.open_session(register.id, ACTOR, 0)

        rows, total = session_service.list_sessions(register_id=register.id, status="closed")
        assert total == 1
        assert rows[0].id == open_session.id

        rows, total = session_service.list_sessions(register_id=register.id)
        assert total == 2

    def test_session_detail_includes_ledger(self, open_session):
        session_service.record_movement(open_session.id, "cash_in", 700, "Bank", ACTOR)

        detail = session_service.get_session_detail(open_session.id)
        assert detail["expected_cash_cents"] == 10700
        assert len(detail["movements"]) == 1
        assert detail["movement_totals"]["cash_in_cents"] == 700


class TestDenominations:
    def test_total(self):
        assert denominations_total_cents({"2000": 3, 50: 4, "1": 0}) == 6200

    @pytest.mark.parametrize("counts", [{}, {"abc": 1}, {"0": 1}, {"100": -1}, {"100": 1.5}])
    def test_invalid(self, counts):
        with pytest.raises(InvalidAmountError):
            denominations_total_cents(counts)
