"""
Pytest fixtures for cashdesk backend tests.

Provides test database setup, register/session/invoice factories, and test client.
"""

import logging

import pytest
from cashdesk import create_app
from cashdesk.extensions import db
from cashdesk.models import CashRegister
from cashdesk.services import sales_adapter, session_service


ACTOR = "cashier-1"


@pytest.fixture(autouse=True)
def _reenable_cashdesk_loggers():
    """Undo logging.config.fileConfig (run by Alembic's env.py in migration
    tests) disabling already-created cashdesk loggers for later tests."""
    for name, logger in list(logging.root.manager.loggerDict.items()):
        if name.startswith("cashdesk") and isinstance(logger, logging.Logger):
            logger.disabled = False
    yield


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CASH_RETRY_BACKOFF': 0.001,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def register(db_session):
    """Active register REG-01 for company acme."""
    reg = CashRegister(company_id="acme", code="REG-01", name="Front Counter", is_active=True)
    db_session.add(reg)
    db_session.commit()
    return reg


@pytest.fixture(scope='function')
def journaling_register(db_session):
    """Register that writes cash POS tickets into the ledger."""
    reg = CashRegister(
        company_id="acme", code="REG-02", name="Back Counter", is_active=True, journal_cash_sales=True
    )
    db_session.add(reg)
    db_session.commit()
    return reg


@pytest.fixture(scope='function')
def open_session(register):
    """Open session on ``register`` with a 100.00 float."""
    return session_service.open_session(register.id, ACTOR, 10000)


@pytest.fixture(scope='function')
def make_invoice(db_session):
    """Factory ingesting an invoice through the sales adapter."""
    counter = {"n": 0}

    def _make(items=None, *, session=None, register=None, payment_method="card", status="validated", **totals):
        counter["n"] += 1
        items = items if items is not None else [
            {"name": "Item", "quantity": 1, "total_ht_cents": 1000, "total_tva_cents": 200, "total_ttc_cents": 1200},
        ]
        if "total_ttc_cents" not in totals:
            totals["total_ttc_cents"] = sum(i.get("total_ttc_cents") or 0 for i in items)
            totals["total_ht_cents"] = sum(i.get("total_ht_cents") or 0 for i in items)
        payload = {
            "number": f"TIK-{counter['n']:06d}",
            "status": status,
            "payment_method": payment_method,
            "is_pos_ticket": True,
            "items": items,
            **totals,
        }
        if session is not None:
            payload["session_id"] = session.id
        if register is not None:
            payload["register_id"] = register.id
        return sales_adapter.ingest_invoice(payload, actor="sales")

    return _make


def actor_headers(actor: str = ACTOR) -> dict:
    """Helper to create the acting-user header."""
    return {'X-Actor-Id': actor}
