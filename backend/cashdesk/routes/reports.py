# Overview: Flask API routes for X and Z cash reports; parses input and returns JSON responses.

from datetime import date

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import CashdeskError, ValidationError
from ..services import report_service
from ..validation import coerce_int, require_json_object
from ..decorators import require_actor
from cashdesk.time_utils import parse_iso_date


reports_bp = Blueprint("reports", __name__, url_prefix="/api/cash/reports")


def _parse_report_date(raw) -> date:
    try:
        report_date = parse_iso_date(raw)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError("date must be YYYY-MM-DD", field="date", value=raw)
    if report_date is None:
        raise ValidationError("date is required", field="date")
    return report_date


def _require_register_id(raw) -> int:
    if raw is None:
        raise ValidationError("register_id is required", field="register_id")
    return coerce_int(raw, "register_id")


@reports_bp.get("/x")
@require_actor
def x_report_route():
    """Live report of an open session (``session_id`` query param)."""
    try:
        session_id = request.args.get("session_id")
        if session_id is None:
            return jsonify({"error": "session_id is required"}), 400
        return jsonify(report_service.generate_x_report(coerce_int(session_id, "session_id"))), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate X report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.post("/z")
@require_actor
def generate_z_report_route():
    """
    Generate (or fetch) the locked Z report of a register for a day.

    Request body:
    {
        "register_id": 1,
        "date": "2024-05-01"
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        report = report_service.generate_z_report(
            _require_register_id(data.get("register_id")),
            _parse_report_date(data.get("date")),
            actor=g.actor_id,
        )
        return jsonify({"report": report}), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate Z report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/z")
@require_actor
def list_z_reports_route():
    register_id = request.args.get("register_id", type=int)
    limit = min(request.args.get("limit", 50, type=int), 200)
    reports = report_service.list_z_reports(register_id=register_id, limit=limit)
    return jsonify({"reports": [r.to_dict() for r in reports]}), 200


@reports_bp.get("/z/check")
@require_actor
def check_z_report_route():
    try:
        result = report_service.check_z_report(
            _require_register_id(request.args.get("register_id")),
            _parse_report_date(request.args.get("date")),
        )
        return jsonify(result), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/z/verify")
@require_actor
def verify_z_chain_route():
    try:
        result = report_service.verify_z_chain(_require_register_id(request.args.get("register_id")))
        return jsonify(result), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/z/<int:report_id>")
@require_actor
def get_z_report_route(report_id: int):
    try:
        return jsonify({"report": report_service.get_z_report(report_id).to_dict()}), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
