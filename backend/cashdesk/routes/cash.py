# Overview: Flask API routes for cash sessions and movements; parses input and returns JSON responses.

"""
Cash Session API Routes

DESIGN:
- Session lifecycle: open -> close | cancel (read-only afterwards)
- Movements are appended only, through the session manager
- A close whose difference exceeds the threshold answers 409 with the
  figures; the client confirms by sending "override": true
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import CashdeskError, ValidationError
from ..services import audit_service, session_service
from ..validation import clean_text, coerce_bool, coerce_cents, coerce_int, require_json_object
from ..decorators import require_actor
from cashdesk.time_utils import parse_iso_datetime


cash_bp = Blueprint("cash", __name__, url_prefix="/api/cash")


# =============================================================================
# SESSIONS
# =============================================================================

@cash_bp.post("/sessions/open")
@require_actor
def open_session_route():
    """
    Open a session on a register.

    Request body:
    {
        "register_id": 1,
        "opening_float_cents": 10000
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        register_id = data.get("register_id")
        if register_id is None:
            return jsonify({"error": "register_id is required"}), 400

        session = session_service.open_session(
            register_id=coerce_int(register_id, "register_id"),
            opened_by=g.actor_id,
            opening_float_cents=coerce_cents(data.get("opening_float_cents", 0), "opening_float_cents"),
        )
        return jsonify({"session": session.to_dict()}), 201

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to open session")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/sessions/active")
@require_actor
def active_session_route():
    """Currently open session of a register (``register_id`` query param)."""
    register_id = request.args.get("register_id", type=int)
    if not register_id:
        return jsonify({"error": "register_id is required"}), 400

    try:
        session = session_service.get_open_session(register_id)
        if not session:
            return jsonify({"session": None}), 200

        data = session.to_dict()
        data["expected_cash_cents"] = session_service.compute_expected_cash(session.id)
        return jsonify({"session": data}), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load active session")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/sessions")
@require_actor
def list_sessions_route():
    """
    List sessions, newest first.

    Query params: register_id, status, from, to (ISO-8601), limit, offset
    """
    try:
        try:
            date_from = parse_iso_datetime(request.args.get("from"))
            date_to = parse_iso_datetime(request.args.get("to"))
        except ValueError:
            raise ValidationError("from/to must be ISO-8601 datetimes")

        limit = min(request.args.get("limit", 50, type=int), 200)
        offset = max(request.args.get("offset", 0, type=int), 0)

        sessions, total = session_service.list_sessions(
            register_id=request.args.get("register_id", type=int),
            status=request.args.get("status"),
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "sessions": [s.to_dict() for s in sessions],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list sessions")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/sessions/<int:session_id>")
@require_actor
def get_session_route(session_id: int):
    """Session with its movements and live expected cash."""
    try:
        return jsonify({"session": session_service.get_session_detail(session_id)}), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load session")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/sessions/<int:session_id>/audit")
@require_actor
def session_audit_route(session_id: int):
    """Audit events recorded against a session, oldest first."""
    try:
        session_service.get_session(session_id)
        limit = min(request.args.get("limit", 100, type=int), 500)
        events = audit_service.list_audit_events(session_id=session_id, limit=limit)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load session audit trail")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.post("/sessions/<int:session_id>/close")
@require_actor
def close_session_route(session_id: int):
    """
    Close a session.

    Request body (one of counted_cash_cents / denominations):
    {
        "counted_cash_cents": 11500,
        "denominations": {"2000": 5, "500": 3},
        "override": false,
        "notes": "..."
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        session = session_service.close_session(
            session_id,
            actor=g.actor_id,
            counted_cash_cents=coerce_cents(data.get("counted_cash_cents"), "counted_cash_cents", required=False),
            denominations=data.get("denominations"),
            override=coerce_bool(data.get("override"), "override"),
            notes=clean_text(data.get("notes"), max_length=2000),
        )
        return jsonify({"session": session.to_dict()}), 200

    except CashdeskError as e:
        if e.status_code == 409:
            current_app.logger.info("Close of session %s refused: %s", session_id, e.code)
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to close session")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.post("/sessions/<int:session_id>/cancel")
@require_actor
def cancel_session_route(session_id: int):
    try:
        data = request.get_json(silent=True) or {}
        session = session_service.cancel_session(
            session_id,
            actor=g.actor_id,
            reason=clean_text(data.get("reason"), max_length=255),
        )
        return jsonify({"session": session.to_dict()}), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# MOVEMENTS
# =============================================================================

@cash_bp.post("/movements")
@require_actor
def record_movement_route():
    """
    Append a cash movement to an open session.

    Request body:
    {
        "session_id": 7,
        "movement_type": "cash_in" | "cash_out" | "safe_drop" | "adjustment",
        "amount_cents": 2000,
        "reason": "Change from bank",
        "direction": "in" | "out"   (adjustment only)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        session_id = data.get("session_id")
        if session_id is None:
            return jsonify({"error": "session_id is required"}), 400

        movement = session_service.record_movement(
            session_id=coerce_int(session_id, "session_id"),
            movement_type=data.get("movement_type"),
            amount_cents=coerce_cents(data.get("amount_cents"), "amount_cents"),
            reason=data.get("reason"),
            actor=g.actor_id,
            direction=data.get("direction"),
        )
        expected = session_service.compute_expected_cash(movement.session_id)
        return jsonify({"movement": movement.to_dict(), "expected_cash_cents": expected}), 201

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record movement")
        return jsonify({"error": "Internal server error"}), 500
