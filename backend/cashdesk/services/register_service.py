"""
Register management

DESIGN PRINCIPLES:
- Registers are never deleted once sessions reference them
- Inactive registers cannot open new sessions
- A register with an open session cannot be deactivated
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..errors import RegisterBusyError, RegisterNotFoundError, ValidationError
from ..extensions import db
from ..models import CashRegister, CashSession
from ..models.registers import SESSION_STATUS_OPEN
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


def create_register(
    company_id: str,
    code: str,
    name: str,
    location: str | None = None,
    *,
    journal_cash_sales: bool = False,
    actor: str | None = None,
) -> CashRegister:
    """
    Create a new till.

    Args:
        company_id: Tenant the register belongs to (opaque)
        code: Unique identifier within the company (e.g., "REG-01", "FRONT")
        name: Display name
        location: Physical location in store
        journal_cash_sales: Write cash POS tickets into the ledger as cash_in
    """
    company_id = (company_id or "").strip()
    code = (code or "").strip()
    name = (name or "").strip()
    if not company_id:
        raise ValidationError("company_id is required", field="company_id")
    if not code:
        raise ValidationError("code is required", field="code")
    if not name:
        raise ValidationError("name is required", field="name")

    existing = db.session.query(CashRegister).filter_by(company_id=company_id, code=code).first()
    if existing:
        raise ValidationError(
            f"Register '{code}' already exists for this company",
            company_id=company_id,
            code=code,
            register_id=existing.id,
        )

    register = CashRegister(
        company_id=company_id,
        code=code,
        name=name,
        location=location,
        is_active=True,
        journal_cash_sales=bool(journal_cash_sales),
    )
    db.session.add(register)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(
            f"Register '{code}' already exists for this company", company_id=company_id, code=code
        )

    append_audit_event(
        event_type="register.created",
        entity_type="cash_register",
        entity_id=register.id,
        actor=actor,
        register_id=register.id,
        payload={"code": code, "name": name, "company_id": company_id},
    )
    db.session.commit()

    logger.info("Register %s (%s) created for company %s", register.id, code, company_id)
    return register


def get_register(register_id: int) -> CashRegister:
    register = db.session.get(CashRegister, register_id)
    if not register:
        raise RegisterNotFoundError("Register not found", register_id=register_id)
    return register


def list_registers(company_id: str | None = None, *, include_inactive: bool = True) -> list[CashRegister]:
    query = db.session.query(CashRegister)
    if company_id:
        query = query.filter_by(company_id=company_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(CashRegister.company_id, CashRegister.code).all()


def update_register(
    register_id: int,
    *,
    name: str | None = None,
    location: str | None = None,
    journal_cash_sales: bool | None = None,
    actor: str | None = None,
) -> CashRegister:
    """Rename, relocate or toggle cash-sales journaling. The code is immutable."""
    def _op():
        register = lock_for_update(db.session.query(CashRegister).filter_by(id=register_id)).first()
        if not register:
            raise RegisterNotFoundError("Register not found", register_id=register_id)

        changes = {}
        if name is not None:
            cleaned = name.strip()
            if not cleaned:
                raise ValidationError("name cannot be blank", field="name")
            register.name = cleaned
            changes["name"] = cleaned
        if location is not None:
            register.location = location.strip() or None
            changes["location"] = register.location
        if journal_cash_sales is not None:
            register.journal_cash_sales = bool(journal_cash_sales)
            changes["journal_cash_sales"] = register.journal_cash_sales

        if changes:
            append_audit_event(
                event_type="register.updated",
                entity_type="cash_register",
                entity_id=register.id,
                actor=actor,
                register_id=register.id,
                payload=changes,
            )
        db.session.commit()
        return register

    return run_with_retry(_op)


def deactivate_register(register_id: int, *, actor: str | None = None) -> CashRegister:
    """
    Deactivate a register (soft delete).

    Inactive registers cannot open new sessions; history stays queryable.
    """
    def _op():
        register = lock_for_update(db.session.query(CashRegister).filter_by(id=register_id)).first()
        if not register:
            raise RegisterNotFoundError("Register not found", register_id=register_id)

        open_session = db.session.query(CashSession).filter_by(
            register_id=register_id,
            status=SESSION_STATUS_OPEN,
        ).first()
        if open_session:
            raise RegisterBusyError(
                "Cannot deactivate register with an open session. Close it first.",
                register_id=register_id,
                session_id=open_session.id,
            )

        if register.is_active:
            register.is_active = False
            append_audit_event(
                event_type="register.deactivated",
                entity_type="cash_register",
                entity_id=register.id,
                actor=actor,
                register_id=register.id,
            )
        db.session.commit()
        return register

    return run_with_retry(_op)


def activate_register(register_id: int, *, actor: str | None = None) -> CashRegister:
    def _op():
        register = lock_for_update(db.session.query(CashRegister).filter_by(id=register_id)).first()
        if not register:
            raise RegisterNotFoundError("Register not found", register_id=register_id)
        if not register.is_active:
            register.is_active = True
            append_audit_event(
                event_type="register.activated",
                entity_type="cash_register",
                entity_id=register.id,
                actor=actor,
                register_id=register.id,
            )
        db.session.commit()
        return register

    return run_with_retry(_op)
