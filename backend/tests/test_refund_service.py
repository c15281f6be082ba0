import re

import pytest

from cashdesk.errors import (
    AmountExceedsRemainingError,
    InvalidRefundLineError,
    InvoiceNotFoundError,
    InvoiceNotRefundableError,
    MissingReasonError,
    NothingToRefundError,
    OverRefundError,
    UnpricedLineError,
    ValidationError,
)
from cashdesk.models import CashMovement, CreditNote, Invoice
from cashdesk.services import refund_service, session_service

from conftest import ACTOR


THREE_UNITS = [
    {"name": "Mug", "quantity": 3, "total_ht_cents": 3000, "total_tva_cents": 600, "total_ttc_cents": 3600},
]


class TestPartialRefund:
    def test_scenario_c(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)

        result = refund_service.request_refund(
            invoice.id, "partial", lines=[{"original_item_index": 0, "quantity": 2}],
            refund_method="card", reason="Broken", actor=ACTOR,
        )

        note = result["credit_note"]
        assert note["total_ttc_cents"] == 2400
        assert note["total_ht_cents"] == 2000
        assert note["total_tva_cents"] == 400
        assert note["lines"][0]["quantity"] == 2
        assert note["lines"][0]["strategy"] == "stored_totals"

        item = result["refundable_items"]["items"][0]
        assert item == {
            "index": 0, "name": "Mug", "original_qty": 3, "refunded_qty": 2, "remaining_qty": 1, "can_refund": True,
        }
        assert result["refundable_items"]["remaining_amount_cents"] == 1200

    def test_line_with_only_ttc_total(self, make_invoice):
        invoice = make_invoice([{"name": "Mug", "quantity": 3, "total_ttc_cents": 3000}], total_ttc_cents=3000)

        first = refund_service.request_refund(
            invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
        )
        assert first["credit_note"]["total_ttc_cents"] == 1000
        assert first["credit_note"]["total_ht_cents"] == 1000
        assert first["refundable_items"]["items"][0]["remaining_qty"] == 2

        second = refund_service.request_refund(
            invoice.id, "partial", lines=[{"index": 0, "quantity": 2}], reason="x", actor=ACTOR,
        )
        assert second["credit_note"]["total_ttc_cents"] == 2000
        assert second["refundable_items"]["items"][0]["remaining_qty"] == 0

        with pytest.raises(OverRefundError):
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
            )

    def test_over_refund_rejected(self, make_invoice, db_session):
        invoice = make_invoice(THREE_UNITS)
        refund_service.request_refund(
            invoice.id, "partial", lines=[{"original_item_index": 0, "quantity": 2}], reason="x", actor=ACTOR,
        )

        with pytest.raises(OverRefundError) as exc:
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"original_item_index": 0, "quantity": 2}], reason="x", actor=ACTOR,
            )
        assert exc.value.details == {"index": 0, "requested": 2, "remaining": 1}
        assert db_session.query(CreditNote).count() == 1

    def test_duplicate_indexes_are_summed(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)

        with pytest.raises(OverRefundError):
            refund_service.request_refund(
                invoice.id, "partial",
                lines=[{"original_item_index": 0, "quantity": 2}, {"original_item_index": 0, "quantity": 2}],
                reason="x", actor=ACTOR,
            )

    def test_refunding_every_unit_in_steps_matches_total(self, make_invoice, db_session):
        items = [{"name": "Pen", "quantity": 3, "total_ht_cents": 833, "total_tva_cents": 167, "total_ttc_cents": 1000}]
        invoice = make_invoice(items)

        for _ in range(3):
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
            )

        notes = refund_service.list_credit_notes(invoice_id=invoice.id)
        assert sum(n.total_ttc_cents for n in notes) == 1000
        assert db_session.get(Invoice, invoice.id).refunded_total_cents == 1000
        with pytest.raises(NothingToRefundError):
            refund_service.request_refund(invoice.id, "full", reason="x", actor=ACTOR)

    def test_amount_exceeding_remaining_is_rejected(self, make_invoice):
        # Line totals larger than the invoice total (discounted ticket)
        invoice = make_invoice(THREE_UNITS, total_ttc_cents=2000, total_ht_cents=1667)

        with pytest.raises(AmountExceedsRemainingError) as exc:
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 0, "quantity": 2}], reason="x", actor=ACTOR,
            )
        assert exc.value.details["requested_cents"] == 2400
        assert exc.value.details["remaining_cents"] == 2000

    def test_unknown_line(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)
        with pytest.raises(InvalidRefundLineError):
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 5, "quantity": 1}], reason="x", actor=ACTOR,
            )

    @pytest.mark.parametrize("lines", [
        None, [], [{"index": 0, "quantity": 0}], [{"index": "a", "quantity": 1}], [{"index": 0, "quantity": 1.5}],
    ])
    def test_malformed_lines(self, make_invoice, lines):
        invoice = make_invoice(THREE_UNITS)
        with pytest.raises(InvalidRefundLineError):
            refund_service.request_refund(invoice.id, "partial", lines=lines, reason="x", actor=ACTOR)

    def test_unpriced_line(self, make_invoice):
        invoice = make_invoice([{"name": "Legacy", "quantity": 1}], total_ttc_cents=500)
        with pytest.raises(UnpricedLineError):
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
            )

    def test_unit_price_line(self, make_invoice):
        items = [{"name": "Tea", "quantity": 2, "unit_price_cents": 250, "tax_rate_bps": 550}]
        invoice = make_invoice(items, total_ttc_cents=528, total_ht_cents=500)

        result = refund_service.request_refund(
            invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
        )

        line = result["credit_note"]["lines"][0]
        assert line["strategy"] == "unit_price"
        assert line["total_ht_cents"] == 250
        assert line["total_ttc_cents"] == 264


class TestFullRefund:
    def test_full_refund_takes_remaining_amount(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)
        refund_service.request_refund(
            invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
        )

        result = refund_service.request_refund(invoice.id, "full", reason="Customer unhappy", actor=ACTOR)

        note = result["credit_note"]
        assert note["refund_type"] == "full"
        assert note["total_ttc_cents"] == 2400
        assert note["total_ht_cents"] == 2000
        assert note["lines"][0]["quantity"] == 2
        assert result["refundable_items"]["remaining_amount_cents"] == 0
        assert result["refundable_items"]["items"][0]["can_refund"] is False

    def test_full_then_any_refund_is_nothing_to_refund(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)
        refund_service.request_refund(invoice.id, "full", reason="x", actor=ACTOR)

        with pytest.raises(NothingToRefundError):
            refund_service.request_refund(invoice.id, "full", reason="x", actor=ACTOR)
        with pytest.raises(NothingToRefundError):
            refund_service.request_refund(
                invoice.id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
            )

    def test_credit_note_numbering(self, make_invoice):
        first = refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)
        second = refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)

        assert re.fullmatch(r"AV-\d{4}-000001", first["credit_note"]["number"])
        assert re.fullmatch(r"AV-\d{4}-000002", second["credit_note"]["number"])


class TestCashRefund:
    def test_cash_refund_writes_cash_out_on_open_session(self, open_session, make_invoice):
        invoice = make_invoice(THREE_UNITS, session=open_session, payment_method="cash")

        result = refund_service.request_refund(
            invoice.id, "partial", lines=[{"index": 0, "quantity": 1}],
            refund_method="cash", reason="Return", actor=ACTOR,
        )

        movement = result["cash_movement"]
        assert movement["movement_type"] == "cash_out"
        assert movement["amount_cents"] == 1200
        assert movement["credit_note_id"] == result["credit_note"]["id"]
        assert session_service.compute_expected_cash(open_session.id) == 10000 - 1200

    def test_card_refund_writes_no_movement(self, open_session, make_invoice, db_session):
        invoice = make_invoice(THREE_UNITS, session=open_session)

        result = refund_service.request_refund(invoice.id, "full", refund_method="card", reason="x", actor=ACTOR)

        assert result["cash_movement"] is None
        assert db_session.query(CashMovement).count() == 0

    def test_cash_refund_after_close_goes_to_current_session(self, register, open_session, make_invoice):
        invoice = make_invoice(THREE_UNITS, session=open_session, payment_method="cash")
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)
        current = session_service.open_session(register.id, ACTOR, 5000)

        result = refund_service.request_refund(invoice.id, "full", refund_method="cash", reason="x", actor=ACTOR)

        assert result["cash_movement"]["session_id"] == current.id
        assert result["credit_note"]["session_id"] == open_session.id
        assert session_service.compute_expected_cash(current.id) == 5000 - 3600

    def test_cash_refund_without_open_session_still_issues_note(self, open_session, make_invoice, caplog):
        invoice = make_invoice(THREE_UNITS, session=open_session, payment_method="cash")
        session_service.close_session(open_session.id, ACTOR, counted_cash_cents=10000)

        result = refund_service.request_refund(invoice.id, "full", refund_method="cash", reason="x", actor=ACTOR)

        assert result["credit_note"]["total_ttc_cents"] == 3600
        assert result["cash_movement"] is None
        assert "no open session" in caplog.text


class TestCreditNoteChain:
    def test_notes_are_chained(self, make_invoice):
        first = refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)
        second = refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)

        a, b = first["credit_note"], second["credit_note"]
        year = int(a["created_at"][:4])
        assert a["chain_scope"] == f"-/{year}"
        assert (a["sequence_number"], b["sequence_number"]) == (1, 2)
        assert a["previous_hash"] == refund_service.GENESIS_HASH
        assert b["previous_hash"] == a["hash"]

        result = refund_service.verify_credit_note_chain(None, year)
        assert result == {
            "chain_scope": f"-/{year}", "checked": 2, "valid": True, "broken_at": None, "reason": None,
        }

    def test_chain_is_per_company(self, register, make_invoice):
        own = refund_service.request_refund(
            make_invoice(THREE_UNITS, register=register).id, "full", reason="x", actor=ACTOR,
        )["credit_note"]
        loose = refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)["credit_note"]

        year = int(own["created_at"][:4])
        assert own["chain_scope"] == f"acme/{year}"
        assert own["sequence_number"] == 1
        assert loose["sequence_number"] == 1
        assert refund_service.verify_credit_note_chain("acme", year)["checked"] == 1

    def test_tampered_note_breaks_chain(self, make_invoice, db_session):
        note = refund_service.request_refund(
            make_invoice(THREE_UNITS).id, "partial", lines=[{"index": 0, "quantity": 1}], reason="x", actor=ACTOR,
        )["credit_note"]
        refund_service.request_refund(make_invoice(THREE_UNITS).id, "full", reason="x", actor=ACTOR)

        row = db_session.get(CreditNote, note["id"])
        row.total_ttc_cents = 1
        db_session.commit()

        result = refund_service.verify_credit_note_chain(None, int(note["created_at"][:4]))
        assert result["valid"] is False
        assert result["broken_at"] == 1
        assert result["reason"] == "hash_mismatch"

    def test_empty_chain_is_valid(self, db_session):
        assert refund_service.verify_credit_note_chain("acme", 2024)["valid"] is True


class TestValidation:
    def test_unknown_invoice(self, db_session):
        with pytest.raises(InvoiceNotFoundError):
            refund_service.request_refund(777, "full", reason="x", actor=ACTOR)

    def test_draft_invoice(self, make_invoice):
        invoice = make_invoice(THREE_UNITS, status="draft")
        with pytest.raises(InvoiceNotRefundableError):
            refund_service.request_refund(invoice.id, "full", reason="x", actor=ACTOR)

    def test_reason_required(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)
        with pytest.raises(MissingReasonError):
            refund_service.request_refund(invoice.id, "full", reason=" ", actor=ACTOR)

    def test_mode_and_method_checked(self, make_invoice):
        invoice = make_invoice(THREE_UNITS)
        with pytest.raises(ValidationError):
            refund_service.request_refund(invoice.id, "half", reason="x", actor=ACTOR)
        with pytest.raises(ValidationError):
            refund_service.request_refund(invoice.id, "full", refund_method="bitcoin", reason="x", actor=ACTOR)

    def test_refundable_items_unknown_invoice(self, db_session):
        with pytest.raises(InvoiceNotFoundError):
            refund_service.get_refundable_items(1)


class TestSessionRefundSummary:
    def test_summarize_by_method(self, open_session, make_invoice):
        a = make_invoice(THREE_UNITS, session=open_session)
        b = make_invoice(THREE_UNITS, session=open_session)
        refund_service.request_refund(a.id, "partial", lines=[{"index": 0, "quantity": 1}], refund_method="card", reason="x", actor=ACTOR)
        refund_service.request_refund(b.id, "full", refund_method="cash", reason="x", actor=ACTOR)

        summary = refund_service.summarize_session_refunds(open_session.id)

        assert summary["refund_count"] == 2
        assert summary["refund_total_cents"] == 1200 + 3600
        assert summary["by_method"] == {"card": 1200, "cash": 3600}
