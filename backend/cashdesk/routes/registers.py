# Overview: Flask API routes for register management; parses input and returns JSON responses.

"""
Register Management API Routes

DESIGN:
- Registers are created and edited here, never deleted
- Deactivation is refused while a session is open
- Each register listing carries its currently open session, if any
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import CashdeskError
from ..services import register_service, session_service
from ..validation import clean_text, coerce_bool, require_json_object
from ..decorators import require_actor


registers_bp = Blueprint("registers", __name__, url_prefix="/api/registers")


def _with_open_session(register) -> dict:
    d = register.to_dict()
    current_session = session_service.get_open_session(register.id)
    d["current_session"] = current_session.to_dict() if current_session else None
    return d


@registers_bp.post("/")
@registers_bp.post("")
@require_actor
def create_register_route():
    """
    Create a new register.

    Request body:
    {
        "company_id": "acme",
        "code": "REG-01",
        "name": "Front Counter",
        "location": "Main Floor",        (optional)
        "journal_cash_sales": false      (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        register = register_service.create_register(
            company_id=clean_text(data.get("company_id"), max_length=64),
            code=clean_text(data.get("code"), max_length=32),
            name=clean_text(data.get("name"), max_length=128),
            location=clean_text(data.get("location"), max_length=128),
            journal_cash_sales=coerce_bool(data.get("journal_cash_sales"), "journal_cash_sales"),
            actor=g.actor_id,
        )

        return jsonify({"register": register.to_dict()}), 201

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create register")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.get("/")
@registers_bp.get("")
@require_actor
def list_registers_route():
    """
    List registers with their open session.

    Query params:
    - company_id: filter by company
    - active_only: true to hide deactivated registers
    """
    try:
        company_id = request.args.get("company_id")
        active_only = coerce_bool(request.args.get("active_only"), "active_only")

        registers = register_service.list_registers(company_id, include_inactive=not active_only)
        return jsonify({"registers": [_with_open_session(r) for r in registers]}), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list registers")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.get("/<int:register_id>")
@require_actor
def get_register_route(register_id: int):
    try:
        register = register_service.get_register(register_id)
        return jsonify({"register": _with_open_session(register)}), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@registers_bp.patch("/<int:register_id>")
@require_actor
def update_register_route(register_id: int):
    """
    Update register settings.

    Request body (all optional):
    {
        "name": "...",
        "location": "...",
        "journal_cash_sales": true,
        "is_active": false
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        journal = data.get("journal_cash_sales")
        register = register_service.update_register(
            register_id,
            name=data.get("name"),
            location=data.get("location"),
            journal_cash_sales=coerce_bool(journal, "journal_cash_sales") if journal is not None else None,
            actor=g.actor_id,
        )

        if "is_active" in data:
            if coerce_bool(data.get("is_active"), "is_active"):
                register = register_service.activate_register(register_id, actor=g.actor_id)
            else:
                register = register_service.deactivate_register(register_id, actor=g.actor_id)

        current_app.logger.info("Register %s updated by %s", register_id, g.actor_id)
        return jsonify({"register": register.to_dict()}), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update register")
        return jsonify({"error": "Internal server error"}), 500
