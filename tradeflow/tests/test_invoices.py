"""
Tests for invoice generation, the invoice state machine and payment
settlement.
"""
from datetime import datetime, timedelta

import pytest

from tradeflow.core.errors import ConflictError
from tradeflow.db.models import (
    Invoice, InvoiceStatus, MarketplacePayment, Order, OrderStatus, OrderPaymentStatus,
    PaymentMethod,
)
from tradeflow.services import invoices, payments
from tradeflow.services.invoices import compute_financials, due_date_for
from tradeflow.tests.conftest import make_bare_order


class TestFinancials:

    def test_vat_on_subtotal(self):
        financials = compute_financials(1000, vat_rate=15, platform_fee_rate=0)
        assert financials["vat_amount"] == 150.0
        assert financials["total_amount"] == 1150.0
        assert financials["net_to_seller"] == 1150.0

    def test_platform_fee_on_total(self):
        financials = compute_financials(1000, vat_rate=15, platform_fee_rate=2)
        assert financials["platform_fee_amount"] == 23.0
        assert financials["net_to_seller"] == 1127.0

    def test_amounts_rounded_to_cents(self):
        financials = compute_financials(33.333, vat_rate=10, platform_fee_rate=0)
        assert financials["subtotal"] == 33.33
        assert financials["vat_amount"] == 3.33
        assert financials["total_amount"] == 36.66

    @pytest.mark.parametrize("terms,days", [("NET_0", 0), ("NET_7", 7), ("NET_30", 30)])
    def test_due_date_from_terms(self, terms, days):
        issued = datetime(2026, 3, 1, 12, 0)
        assert due_date_for(terms, issued) == issued + timedelta(days=days)


class TestAutoGeneration:

    def test_delivered_order_gets_issued_invoice(self, db, profiles, sink):
        order = make_bare_order(db)

        result = invoices.create_from_delivered_order(db, order.id)

        invoice = result["invoice"]
        assert invoice["subtotal"] == 1000
        assert invoice["vat_amount"] == 150.0
        assert invoice["total_amount"] == 1150.0
        assert invoice["status"] == InvoiceStatus.ISSUED.value
        assert invoice["issued_by"] == "system"
        assert invoice["payment_terms"] == "NET_30"
        assert invoice["invoice_number"] == f"INV-{datetime.utcnow().year}-0001"
        assert invoice["buyer_company"] == "Buyer Co"
        assert invoice["line_items"][0]["name"] == "Industrial Valve"
        assert ("buyer-1", "invoice_issued") in [s[:2] for s in sink.sent]

    def test_second_invoice_for_same_order_conflicts(self, db):
        order = make_bare_order(db)
        assert invoices.create_from_delivered_order(db, order.id)["success"]

        second = invoices.create_from_delivered_order(db, order.id)

        assert second["error"] == "Invoice already exists for this order"
        assert db.query(Invoice).filter(Invoice.order_id == order.id).count() == 1

    def test_undelivered_order_is_not_invoiced(self, db):
        order = make_bare_order(db, status=OrderStatus.SHIPPED.value)
        result = invoices.create_from_delivered_order(db, order.id)
        assert result["error_kind"] == "conflict"
        assert '"shipped"' in result["error"]

    def test_numbers_are_scoped_per_seller(self, db):
        first = make_bare_order(db, seller_id="seller-1")
        second = make_bare_order(db, seller_id="seller-2")

        a = invoices.create_from_delivered_order(db, first.id)["invoice"]
        b = invoices.create_from_delivered_order(db, second.id)["invoice"]

        assert a["invoice_number"] == b["invoice_number"]

    def test_unknown_terms_rejected(self, db):
        order = make_bare_order(db)
        result = invoices.create_from_delivered_order(db, order.id, payment_terms="NET_90")
        assert result["error_kind"] == "validation"

    def test_only_credit_orders_invoiced_at_confirmation(self, db):
        order = make_bare_order(db, status=OrderStatus.CONFIRMED.value)
        result = invoices.create_from_confirmed_order(db, order.id)
        assert result["error"] == "Only credit orders are invoiced at confirmation"

    def test_credit_invoice_at_confirmation(self, db):
        order = make_bare_order(
            db, status=OrderStatus.CONFIRMED.value,
            payment_method=PaymentMethod.CREDIT.value,
            payment_status=OrderPaymentStatus.UNPAID_CREDIT.value,
        )
        result = invoices.create_from_confirmed_order(db, order.id)
        assert result["invoice"]["status"] == InvoiceStatus.ISSUED.value

        history = invoices.get_invoice_history(db, result["invoice"]["id"], "seller-1")["events"]
        assert [e["event_type"] for e in history] == ["INVOICE_CREATED_AND_ISSUED"]


class TestImmutability:

    def test_issued_financials_are_frozen(self, db):
        order = make_bare_order(db)
        invoice_id = invoices.create_from_delivered_order(db, order.id)["invoice"]["id"]

        invoice = db.get(Invoice, invoice_id)
        invoice.total_amount = 1.0
        with pytest.raises(ConflictError):
            db.commit()
        db.rollback()

        assert db.get(Invoice, invoice_id).total_amount == 1150.0

    def test_non_financial_fields_stay_editable(self, db):
        order = make_bare_order(db)
        invoice_id = invoices.create_from_delivered_order(db, order.id)["invoice"]["id"]

        invoice = db.get(Invoice, invoice_id)
        invoice.notes = "Deliver copy to finance"
        db.commit()


class TestDraftInvoices:

    def test_draft_issue_flow(self, db):
        order = make_bare_order(db)
        draft = invoices.create_draft_invoice(db, order.id, "seller-1", payment_terms="NET_7")["invoice"]
        assert draft["status"] == InvoiceStatus.DRAFT.value
        assert draft["due_date"] is None

        issued = invoices.issue_invoice(db, draft["id"], "seller-1")["invoice"]

        assert issued["status"] == InvoiceStatus.ISSUED.value
        assert issued["issued_by"] == "seller-1"
        assert issued["due_date"] == issued["issued_at"] + timedelta(days=7)

    def test_buyer_cannot_see_drafts(self, db):
        order = make_bare_order(db)
        draft = invoices.create_draft_invoice(db, order.id, "seller-1")["invoice"]

        assert invoices.get_invoice(db, draft["id"], "buyer-1")["error_kind"] == "not_found"
        assert invoices.get_buyer_invoices(db, "buyer-1")["invoices"] == []
        assert invoices.get_seller_invoices(db, "seller-1")["total"] == 1

    def test_draft_can_be_cancelled(self, db):
        order = make_bare_order(db)
        draft = invoices.create_draft_invoice(db, order.id, "seller-1")["invoice"]

        result = invoices.cancel_invoice(db, draft["id"], "seller-1", reason="Wrong terms")

        assert result["invoice"]["status"] == InvoiceStatus.CANCELLED.value
        assert result["invoice"]["cancel_reason"] == "Wrong terms"

    def test_issued_invoice_cannot_be_cancelled(self, db):
        order = make_bare_order(db)
        invoice = invoices.create_from_delivered_order(db, order.id)["invoice"]
        result = invoices.cancel_invoice(db, invoice["id"], "seller-1")
        assert result["error"] == 'Cannot cancel invoice in "issued" status; invoice must be "draft"'

    def test_other_seller_cannot_draft(self, db):
        order = make_bare_order(db)
        result = invoices.create_draft_invoice(db, order.id, "seller-2")
        assert result["error_kind"] == "unauthorized"

    def test_draft_cannot_be_marked_paid(self, db):
        order = make_bare_order(db)
        draft = invoices.create_draft_invoice(db, order.id, "seller-1")["invoice"]
        result = invoices.mark_paid(db, draft["id"])
        assert result["error"] == "Cannot mark a draft invoice as paid; issue it first"


class TestSettlement:

    def _issued(self, db):
        order = make_bare_order(db)
        return order, invoices.create_from_delivered_order(db, order.id)["invoice"]

    def test_mark_paid_requires_full_coverage(self, db):
        order, invoice = self._issued(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 500)["payment"]
        payments.confirm_payment(db, payment["id"])

        result = invoices.mark_paid(db, invoice["id"], "seller-1")

        assert result["error"] == "Payments do not cover full invoice amount"

    def test_confirmed_payment_settles_invoice(self, db):
        order, invoice = self._issued(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 1150, bank_reference="REF-1")["payment"]
        assert payment["invoice_id"] == invoice["id"]

        result = payments.confirm_payment(db, payment["id"], actor_id="finance-1")

        assert result["invoice_settled"] is True
        assert db.get(Invoice, invoice["id"]).status == InvoiceStatus.PAID.value
        assert db.get(Order, order.id).payment_status == OrderPaymentStatus.PAID.value

    def test_partial_payments_accumulate(self, db):
        order, invoice = self._issued(db)
        for amount in (600, 550):
            payment = payments.record_payment(db, order.id, "buyer-1", amount)["payment"]
            result = payments.confirm_payment(db, payment["id"])

        assert result["invoice_settled"] is True
        loaded = invoices.get_invoice(db, invoice["id"], "buyer-1")["invoice"]
        assert loaded["paid_amount"] == 1150.0
        assert loaded["balance_due"] == 0.0

    def test_prepayment_is_associated_when_invoice_is_issued(self, db):
        order = make_bare_order(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 1150)["payment"]
        payments.confirm_payment(db, payment["id"])

        invoice = invoices.create_from_delivered_order(db, order.id)["invoice"]

        assert db.get(MarketplacePayment, payment["id"]).invoice_id == invoice["id"]
        assert db.get(Invoice, invoice["id"]).status == InvoiceStatus.PAID.value

    def test_paid_invoice_cannot_be_paid_again(self, db):
        order, invoice = self._issued(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 1150)["payment"]
        payments.confirm_payment(db, payment["id"])

        result = invoices.mark_paid(db, invoice["id"])
        assert result["error"] == "Invoice is already paid or cancelled"

    def test_failed_payment_does_not_count(self, db):
        order, invoice = self._issued(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 1150)["payment"]
        payments.fail_payment(db, payment["id"], reason="Bounced")

        assert invoices.mark_paid(db, invoice["id"])["success"] is False
        assert payments.confirm_payment(db, payment["id"])["error_kind"] == "conflict"

    def test_duplicate_bank_reference_is_rejected(self, db):
        order, _ = self._issued(db)
        assert payments.record_payment(db, order.id, "buyer-1", 500, bank_reference="REF-7")["success"]

        result = payments.record_payment(db, order.id, "buyer-1", 500, bank_reference="REF-7")

        assert result["error_kind"] == "conflict"
        assert db.query(MarketplacePayment).filter_by(order_id=order.id).count() == 1

    def test_amount_above_remaining_balance_is_rejected(self, db):
        order, _ = self._issued(db)
        payment = payments.record_payment(db, order.id, "buyer-1", 600)["payment"]
        payments.confirm_payment(db, payment["id"])

        result = payments.record_payment(db, order.id, "buyer-1", 600)

        assert result["error_kind"] == "validation"
        assert result["error"] == "Payment amount exceeds remaining balance of 550.00"

    def test_payment_on_cancelled_order_rejected(self, db):
        order = make_bare_order(db, status=OrderStatus.CANCELLED.value)
        result = payments.record_payment(db, order.id, "buyer-1", 10)
        assert result["error"] == "Cannot record payment for a cancelled order"


class TestOverdue:

    def test_sweep_marks_past_due_invoices_once(self, db):
        order = make_bare_order(db)
        invoice = invoices.create_from_delivered_order(db, order.id)["invoice"]
        later = datetime.utcnow() + timedelta(days=31)

        first = invoices.process_overdue_invoices(db, now=later)
        second = invoices.process_overdue_invoices(db, now=later)

        assert (first["processed"], first["marked"]) == (1, 1)
        assert (second["processed"], second["marked"]) == (0, 0)
        assert db.get(Invoice, invoice["id"]).status == InvoiceStatus.OVERDUE.value

    def test_invoices_not_yet_due_are_untouched(self, db):
        order = make_bare_order(db)
        invoices.create_from_delivered_order(db, order.id)
        result = invoices.process_overdue_invoices(db)
        assert result["processed"] == 0

    def test_only_issued_can_go_overdue(self, db):
        order = make_bare_order(db)
        draft = invoices.create_draft_invoice(db, order.id, "seller-1")["invoice"]
        result = invoices.mark_overdue(db, draft["id"])
        assert result["error"] == "Can only mark issued invoices as overdue"

    def test_overdue_invoice_can_still_be_paid(self, db):
        order = make_bare_order(db)
        invoice = invoices.create_from_delivered_order(db, order.id)["invoice"]
        invoices.mark_overdue(db, invoice["id"])

        payment = payments.record_payment(db, order.id, "buyer-1", 1150)["payment"]
        assert payments.confirm_payment(db, payment["id"])["invoice_settled"] is True


class TestInvoiceStats:

    def test_seller_and_buyer_totals(self, db):
        paid_order = make_bare_order(db)
        open_order = make_bare_order(db)
        invoices.create_from_delivered_order(db, paid_order.id)
        invoices.create_from_delivered_order(db, open_order.id)
        payment = payments.record_payment(db, paid_order.id, "buyer-1", 1150)["payment"]
        payments.confirm_payment(db, payment["id"])

        seller = invoices.get_seller_invoice_stats(db, "seller-1")["stats"]
        buyer = invoices.get_buyer_invoice_stats(db, "buyer-1")["stats"]

        assert seller["total_invoiced"] == 2300.0
        assert seller["total_paid"] == 1150.0
        assert seller["total_outstanding"] == 1150.0
        assert "draft" not in buyer["by_status"]
        assert buyer["total_due"] == 1150.0

    def test_unknown_status_filter(self, db):
        result = invoices.get_seller_invoices(db, "seller-1", status="void")
        assert result["error_kind"] == "validation"
