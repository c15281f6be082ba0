# Overview: Flask API routes for invoice ingestion and refunds; parses input and returns JSON responses.

"""
Invoice and Refund API Routes

DESIGN:
- Invoices arrive from the sales subsystem through the sales adapter
- Refunds are priced server-side from the stored invoice lines; clients
  send indexes and quantities, never amounts
- Over-refund and over-amount requests answer 422 with the figures
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import CashdeskError
from ..services import refund_service, sales_adapter
from ..validation import coerce_bool, coerce_int, require_json_object
from ..decorators import require_actor


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")
refunds_bp = Blueprint("refunds", __name__, url_prefix="/api/refunds")


@invoices_bp.post("/")
@invoices_bp.post("")
@require_actor
def ingest_invoice_route():
    """Store a sold invoice in the read model (see sales_adapter.ingest_invoice)."""
    try:
        invoice = sales_adapter.ingest_invoice(request.get_json(silent=True), actor=g.actor_id)
        return jsonify({"invoice": invoice.to_dict()}), 201

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to ingest invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/")
@invoices_bp.get("")
@require_actor
def list_invoices_route():
    """
    Query params: session_id, register_id, status, pos_only, limit, offset
    """
    try:
        limit = min(request.args.get("limit", 100, type=int), 500)
        offset = max(request.args.get("offset", 0, type=int), 0)
        invoices = sales_adapter.list_invoices(
            session_id=request.args.get("session_id", type=int),
            register_id=request.args.get("register_id", type=int),
            status=request.args.get("status"),
            pos_only=coerce_bool(request.args.get("pos_only"), "pos_only"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "invoices": [i.to_dict(include_items=False) for i in invoices],
            "limit": limit,
            "offset": offset,
        }), 200

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@invoices_bp.get("/<int:invoice_id>")
@require_actor
def get_invoice_route(invoice_id: int):
    try:
        invoice = sales_adapter.get_invoice(invoice_id)
        data = invoice.to_dict()
        data["credit_notes"] = [cn.to_dict() for cn in refund_service.list_credit_notes(invoice_id=invoice.id)]
        return jsonify({"invoice": data}), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@invoices_bp.get("/<int:invoice_id>/refundable")
@require_actor
def refundable_items_route(invoice_id: int):
    """Remaining refundable quantities per line and remaining amount."""
    try:
        return jsonify(refund_service.get_refundable_items(invoice_id)), 200
    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code


@refunds_bp.post("/")
@refunds_bp.post("")
@require_actor
def create_refund_route():
    """
    Issue a credit note.

    Request body:
    {
        "invoice_id": 12,
        "mode": "full" | "partial",
        "refund_method": "cash",
        "reason": "Damaged item",
        "lines": [{"original_item_index": 0, "quantity": 1, "reason": "..."}]  (partial)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        invoice_id = data.get("invoice_id")
        if invoice_id is None:
            return jsonify({"error": "invoice_id is required"}), 400

        result = refund_service.request_refund(
            invoice_id=coerce_int(invoice_id, "invoice_id"),
            mode=data.get("mode") or "full",
            lines=data.get("lines"),
            refund_method=data.get("refund_method"),
            reason=data.get("reason"),
            actor=g.actor_id,
        )
        current_app.logger.info(
            "Refund %s on invoice %s by %s",
            result["credit_note"]["number"], invoice_id, g.actor_id,
        )
        return jsonify(result), 201

    except CashdeskError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create refund")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.get("/chain/verify")
@require_actor
def verify_credit_note_chain_route():
    """
    Recompute the credit-note hash chain of a company for a year.

    Query params: company_id (omit for invoices without a register), year
    """
    year = request.args.get("year", type=int)
    if not year:
        return jsonify({"error": "year is required"}), 400

    try:
        result = refund_service.verify_credit_note_chain(request.args.get("company_id"), year)
        return jsonify(result), 200
    except Exception:
        current_app.logger.exception("Failed to verify credit note chain")
        return jsonify({"error": "Internal server error"}), 500
