# Overview: Thread-based concurrency coverage for the cash core safeguards.

"""
Concurrency Tests

Each test runs real threads against a file-backed SQLite database, one
app context (and therefore one SQLAlchemy session) per thread. Only the
invariants are asserted; which thread wins is not.

A worker may fail with LedgerUnavailableError when it kept losing the
write lock; that counts as a rejection, never as a partial write.
"""

import threading
from datetime import date, datetime

import pytest

from cashdesk import create_app
from cashdesk.errors import CashdeskError
from cashdesk.extensions import db
from cashdesk.models import CashMovement, CashRegister, CashSession, CreditNote, CreditNoteLine, ZReport
from cashdesk.services import ledger_service, refund_service, report_service, sales_adapter, session_service


@pytest.fixture
def conc_app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'concurrency.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
        "CASH_RETRY_ATTEMPTS": 10,
        "CASH_RETRY_BACKOFF": 0.005,
    })
    with app.app_context():
        db.create_all()
        register = CashRegister(company_id="acme", code="REG-01", name="Front", is_active=True)
        db.session.add(register)
        db.session.commit()
        app.config["TEST_REGISTER_ID"] = register.id

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()


def run_threads(app, target, args_list):
    """Run ``target(*args)`` in one thread per args tuple; collect results or errors."""
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(args_list))

    def worker(*args):
        with app.app_context():
            try:
                barrier.wait()
                value = target(*args)
                with lock:
                    results.append(value)
            except Exception as exc:
                with lock:
                    results.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    unexpected = [r for r in results if isinstance(r, Exception) and not isinstance(r, CashdeskError)]
    assert not unexpected, unexpected
    return results


def test_concurrent_open_yields_one_session(conc_app):
    register_id = conc_app.config["TEST_REGISTER_ID"]

    results = run_threads(
        conc_app,
        lambda actor: session_service.open_session(register_id, actor, 1000).id,
        [(f"cashier-{i}",) for i in range(8)],
    )

    opened = [r for r in results if isinstance(r, int)]
    assert len(opened) == 1
    with conc_app.app_context():
        assert db.session.query(CashSession).filter_by(status="open").count() == 1


def test_concurrent_partial_refunds_never_over_refund(conc_app):
    with conc_app.app_context():
        invoice = sales_adapter.ingest_invoice({
            "number": "TIK-1",
            "total_ttc_cents": 3600,
            "total_ht_cents": 3000,
            "items": [{"name": "Mug", "quantity": 3, "total_ht_cents": 3000, "total_tva_cents": 600, "total_ttc_cents": 3600}],
        })
        invoice_id = invoice.id

    def refund(actor):
        result = refund_service.request_refund(
            invoice_id, "partial", lines=[{"index": 0, "quantity": 2}], reason="race", actor=actor
        )
        return result["credit_note"]["number"]

    results = run_threads(conc_app, refund, [(f"cashier-{i}",) for i in range(5)])

    issued = [r for r in results if isinstance(r, str)]
    assert len(issued) == 1
    with conc_app.app_context():
        refunded_qty = db.session.query(db.func.sum(CreditNoteLine.quantity)).scalar()
        credited = db.session.query(db.func.sum(CreditNote.total_ttc_cents)).scalar()
        assert refunded_qty == 2
        assert credited == 2400


def test_concurrent_single_unit_refunds_stay_within_budget(conc_app):
    with conc_app.app_context():
        invoice = sales_adapter.ingest_invoice({
            "number": "TIK-2",
            "total_ttc_cents": 1000,
            "items": [{"name": "Pen", "quantity": 3, "total_ht_cents": 833, "total_tva_cents": 167, "total_ttc_cents": 1000}],
        })
        invoice_id = invoice.id

    results = run_threads(
        conc_app,
        lambda actor: refund_service.request_refund(
            invoice_id, "partial", lines=[{"index": 0, "quantity": 1}], reason="race", actor=actor
        )["credit_note"]["number"],
        [(f"cashier-{i}",) for i in range(6)],
    )

    numbers = [r for r in results if isinstance(r, str)]
    assert len(numbers) == len(set(numbers))
    assert len(numbers) <= 3
    with conc_app.app_context():
        assert db.session.query(db.func.sum(CreditNoteLine.quantity)).scalar() == len(numbers)
        credited = db.session.query(db.func.sum(CreditNote.total_ttc_cents)).scalar() or 0
        assert credited <= 1000


def test_concurrent_z_generation_returns_one_report(conc_app):
    register_id = conc_app.config["TEST_REGISTER_ID"]
    with conc_app.app_context():
        session = session_service.open_session(register_id, "cashier-1", 0)
        session_service.close_session(session.id, "cashier-1", counted_cash_cents=0)
        row = db.session.get(CashSession, session.id)
        row.closed_at = datetime(2024, 5, 1, 12, 0)
        db.session.commit()

    results = run_threads(
        conc_app,
        lambda actor: report_service.generate_z_report(register_id, date(2024, 5, 1), actor=actor),
        [(f"manager-{i}",) for i in range(6)],
    )

    reports = [r for r in results if isinstance(r, dict)]
    assert reports
    assert len({(r["id"], r["hash"]) for r in reports}) == 1
    with conc_app.app_context():
        assert db.session.query(ZReport).count() == 1


def test_close_racing_movements_matches_ledger(conc_app):
    register_id = conc_app.config["TEST_REGISTER_ID"]
    with conc_app.app_context():
        session_id = session_service.open_session(register_id, "cashier-1", 10000).id

    def act(kind):
        if kind == "close":
            return session_service.close_session(
                session_id, "manager-1", counted_cash_cents=10000, override=True
            ).status
        return session_service.record_movement(session_id, "cash_in", 100, "race", "cashier-1").id

    run_threads(conc_app, act, [("close",)] + [("move",)] * 5)

    with conc_app.app_context():
        session = db.session.get(CashSession, session_id)
        ledger_net = ledger_service.movement_totals(session_id)["net_cents"]
        movements = db.session.query(CashMovement).filter_by(session_id=session_id).count()
        assert session.movement_count == movements
        if session.status == "closed":
            # Every movement that committed is inside the frozen figure
            assert session.expected_cash_cents == session.opening_float_cents + ledger_net


def test_close_racing_invoices_freezes_every_attached_ticket(conc_app):
    register_id = conc_app.config["TEST_REGISTER_ID"]
    with conc_app.app_context():
        session_id = session_service.open_session(register_id, "cashier-1", 10000).id

    def act(kind, n=0):
        if kind == "close":
            return session_service.close_session(
                session_id, "manager-1", counted_cash_cents=10000, override=True
            ).status
        return sales_adapter.ingest_invoice({
            "number": f"TIK-{n}",
            "session_id": session_id,
            "payment_method": "card",
            "total_ttc_cents": 1200,
            "total_ht_cents": 1000,
        }).id

    run_threads(conc_app, act, [("close",)] + [("sale", n) for n in range(5)])

    with conc_app.app_context():
        session = db.session.get(CashSession, session_id)
        attached = sales_adapter.summarize_session_sales(session_id)
        assert session.attached_invoice_count == attached["invoice_count"]
        if session.status == "closed":
            # No ticket landed on the session after its sales were frozen
            assert session.invoice_count == attached["invoice_count"]
            assert session.total_ttc_cents == attached["total_ttc_cents"]


def test_concurrent_refunds_keep_credit_note_chain_gapless(conc_app):
    with conc_app.app_context():
        invoice_ids = [
            sales_adapter.ingest_invoice({
                "number": f"TIK-{n}",
                "total_ttc_cents": 1200,
                "items": [{"name": "Mug", "quantity": 1, "total_ttc_cents": 1200}],
            }).id
            for n in range(4)
        ]

    results = run_threads(
        conc_app,
        lambda invoice_id: refund_service.request_refund(
            invoice_id, "full", refund_method="card", reason="race", actor="cashier-1"
        )["credit_note"],
        [(invoice_id,) for invoice_id in invoice_ids],
    )

    notes = [r for r in results if isinstance(r, dict)]
    assert notes
    with conc_app.app_context():
        year = db.session.query(CreditNote).first().created_at.year
        result = refund_service.verify_credit_note_chain(None, year)
        assert result["valid"] is True
        assert result["checked"] == len(notes)
        sequences = sorted(n["sequence_number"] for n in notes)
        assert sequences == list(range(1, len(notes) + 1))
