"""
Tests for the quote lifecycle: drafting, versioning, sending, rejection
and expiry.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from tradeflow.db.models import Order, Quote, QuoteEvent, QuoteStatus, QuoteVersion, RFQ, RFQStatus
from tradeflow.services import orders, quotes
from tradeflow.services.quotes import compute_total
from tradeflow.tests.conftest import quote_terms


class TestComputeTotal:

    def test_no_discount(self):
        assert compute_total(100, 10) == (0.0, 1000.0)

    def test_flat_discount_wins_over_percentage(self):
        assert compute_total(100, 10, discount=50, discount_percent=10) == (50.0, 950.0)

    def test_percentage_discount(self):
        assert compute_total(100, 10, discount_percent=10) == (100.0, 900.0)

    def test_discount_larger_than_gross_is_rejected(self):
        from tradeflow.core.errors import ValidationError
        with pytest.raises(ValidationError):
            compute_total(10, 1, discount=11)


class TestCreateDraft:

    def test_creates_version_one_draft(self, db, make_rfq):
        rfq = make_rfq()
        result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())

        assert result["success"] is True
        quote = result["quote"]
        assert quote["total_price"] == 1000
        assert quote["status"] == QuoteStatus.DRAFT.value
        assert quote["version"] == 1
        assert quote["quote_number"] == f"QT-{datetime.utcnow().year}-0001"

    def test_flat_discount_reduces_total(self, db, make_rfq):
        rfq = make_rfq()
        result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms(discount=50))
        assert result["quote"]["total_price"] == 950

    def test_second_draft_for_same_rfq_conflicts(self, db, make_rfq):
        rfq = make_rfq()
        assert quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["success"]

        second = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())
        assert second["success"] is False
        assert second["error_kind"] == "conflict"
        assert "draft quote already exists" in second["error"]
        assert db.query(Quote).filter(Quote.rfq_id == rfq.id).count() == 1

    def test_rival_draft_hits_one_draft_per_rfq_index(self, db, make_rfq):
        rfq = make_rfq()

        def allocate(session, kind, *args, **kwargs):
            # Another request slips a draft in after the duplicate check
            session.add(Quote(
                quote_number="QT-RIVAL-1", rfq_id=rfq.id, seller_id="seller-1", buyer_id="buyer-1",
                unit_price=100.0, quantity=10, total_price=1000.0, delivery_days=7,
                valid_until=datetime.utcnow() + timedelta(days=7), status=QuoteStatus.DRAFT.value,
            ))
            session.commit()
            return "QT-RACE-1"

        with patch("tradeflow.services.quotes.next_number", side_effect=allocate):
            result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())

        assert result["error"] == "A draft quote already exists for this RFQ"
        assert [q.quote_number for q in db.query(Quote).filter_by(rfq_id=rfq.id)] == ["QT-RIVAL-1"]
        assert db.query(QuoteVersion).count() == 0
        assert db.query(QuoteEvent).count() == 0

    def test_rejected_rfq_cannot_be_quoted(self, db, make_rfq):
        rfq = make_rfq(status=RFQStatus.REJECTED.value)
        result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())
        assert result["error"] == "Cannot create quote: RFQ was rejected"

    def test_accepted_rfq_cannot_be_quoted(self, db, make_rfq):
        rfq = make_rfq(status=RFQStatus.ACCEPTED.value)
        result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())
        assert result["error_kind"] == "conflict"
        assert '"accepted"' in result["error"]

    def test_other_seller_is_unauthorized(self, db, make_rfq):
        rfq = make_rfq(seller_id="seller-1")
        result = quotes.create_draft(db, rfq.id, "seller-2", quote_terms())
        assert result["error_kind"] == "unauthorized"

    def test_invalid_terms_are_validation_errors(self, db, make_rfq):
        rfq = make_rfq()
        result = quotes.create_draft(db, rfq.id, "seller-1", quote_terms(unit_price=-5))
        assert result["error_kind"] == "validation"
        assert "unit_price" in result["error"]

    def test_missing_rfq_is_not_found(self, db):
        result = quotes.create_draft(db, "missing", "seller-1", quote_terms())
        assert result["error_kind"] == "not_found"

    def test_seller_alias_may_quote(self, db, make_rfq):
        rfq = make_rfq(seller_id="seller-profile-9")
        result = quotes.create_draft(
            db, rfq.id, "seller-1", quote_terms(), alt_seller_ids={"seller-profile-9"},
        )
        assert result["success"] is True

    def test_line_items_are_priced(self, db, make_rfq):
        rfq = make_rfq()
        terms = quote_terms(line_items=[
            {"item_name": "Valve", "unit_price": 50, "quantity": 4, "discount": 20},
            {"item_name": "Gasket", "unit_price": 5, "quantity": 10},
        ])
        result = quotes.create_draft(db, rfq.id, "seller-1", terms)
        lines = result["quote"]["line_items"]
        assert [line["total_price"] for line in lines] == [180.0, 50.0]


class TestSendQuote:

    def test_send_marks_rfq_quoted_and_notifies_buyer(self, db, make_rfq, sink):
        rfq = make_rfq()
        draft = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]

        result = quotes.send_quote(db, draft["id"], "seller-1")

        assert result["quote"]["status"] == QuoteStatus.SENT.value
        assert db.get(RFQ, rfq.id).status == RFQStatus.QUOTED.value
        assert ("buyer-1", "quote_sent") == sink.sent[-1][:2]

    def test_expired_validity_cannot_be_sent(self, db, make_rfq):
        rfq = make_rfq()
        draft = quotes.create_draft(
            db, rfq.id, "seller-1", quote_terms(valid_until=datetime(2020, 1, 1)),
        )["quote"]

        result = quotes.send_quote(db, draft["id"], "seller-1")

        assert result["success"] is False
        assert "Cannot send expired quote" in result["error"]
        assert db.get(Quote, draft["id"]).status == QuoteStatus.DRAFT.value

    def test_sent_quote_cannot_be_sent_again(self, db, make_sent_quote):
        quote = make_sent_quote()
        result = quotes.send_quote(db, quote["id"], "seller-1")
        assert result["error"] == 'Cannot send quote in "sent" status'

    def test_other_quote_cannot_be_sent_once_rfq_accepted(self, db, make_rfq):
        rfq = make_rfq()
        first = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]
        assert quotes.send_quote(db, first, "seller-1")["success"]
        second = quotes.create_draft(db, rfq.id, "seller-1", quote_terms(unit_price=90))["quote"]["id"]
        assert orders.accept_quote(db, first, "buyer-1")["success"]

        sent = quotes.send_quote(db, second, "seller-1")
        updated = quotes.update_quote(db, second, "seller-1", {"unit_price": 80})

        assert sent["error"] == 'Cannot send quote: RFQ is in "accepted" status'
        assert updated["error"] == 'Cannot update quote: RFQ is in "accepted" status'
        assert db.get(Quote, second).status == QuoteStatus.DRAFT.value
        assert db.get(RFQ, rfq.id).status == RFQStatus.ACCEPTED.value
        assert orders.accept_quote(db, second, "buyer-1")["success"] is False
        assert db.query(Order).filter(Order.rfq_id == rfq.id).count() == 1

    def test_other_quote_cannot_be_sent_once_rfq_rejected(self, db, make_rfq):
        rfq = make_rfq()
        first = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]
        quotes.send_quote(db, first, "seller-1")
        second = quotes.create_draft(db, rfq.id, "seller-1", quote_terms(unit_price=90))["quote"]["id"]
        assert quotes.reject_quote(db, first, "buyer-1")["success"]

        result = quotes.send_quote(db, second, "seller-1")

        assert result["error_kind"] == "conflict"
        assert db.get(RFQ, rfq.id).status == RFQStatus.REJECTED.value


class TestVersioning:

    def test_round_trip_versions_and_events(self, db, make_rfq):
        rfq = make_rfq()
        quote_id = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]
        assert quotes.update_quote(db, quote_id, "seller-1", {"unit_price": 90})["success"]
        assert quotes.update_quote(db, quote_id, "seller-1", {"quantity": 12})["success"]
        assert quotes.send_quote(db, quote_id, "seller-1")["success"]
        revised = quotes.update_quote(db, quote_id, "seller-1", {"discount": 30, "change_reason": "Volume"})

        assert revised["quote"]["status"] == QuoteStatus.REVISED.value
        assert revised["quote"]["version"] == 4
        assert revised["quote"]["total_price"] == 90 * 12 - 30

        versions = db.query(QuoteVersion).filter_by(quote_id=quote_id).order_by(QuoteVersion.version).all()
        assert [(v.version, v.status) for v in versions] == [
            (1, "draft"), (2, "draft"), (3, "draft"), (4, "revised"),
        ]
        assert versions[-1].change_reason == "Volume"

        history = quotes.get_quote_history(db, quote_id, "seller-1")["events"]
        assert [e["event_type"] for e in history] == [
            "QUOTE_CREATED", "QUOTE_UPDATED", "QUOTE_UPDATED", "QUOTE_SENT", "QUOTE_REVISED",
        ]

    def test_revised_quote_can_be_resent(self, db, make_sent_quote):
        quote = make_sent_quote()
        quotes.update_quote(db, quote["id"], "seller-1", {"unit_price": 95})
        result = quotes.send_quote(db, quote["id"], "seller-1")
        assert result["quote"]["status"] == QuoteStatus.SENT.value
        assert result["quote"]["version"] == 2

    def test_accepted_quote_is_locked(self, db, make_order):
        order = make_order()
        result = quotes.update_quote(db, order.quote_id, "seller-1", {"unit_price": 1})
        assert result["error"] == 'Cannot update quote in "accepted" status'

    @pytest.mark.parametrize("field", ["valid_until", "delivery_days", "unit_price", "quantity"])
    def test_null_for_required_field_is_a_validation_error(self, db, make_rfq, field):
        rfq = make_rfq()
        quote_id = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]

        result = quotes.update_quote(db, quote_id, "seller-1", {field: None})

        assert result["error_kind"] == "validation"
        assert result["error"].startswith(f"{field}:")
        quote = db.get(Quote, quote_id)
        assert quote.version == 1
        assert getattr(quote, field) is not None

    def test_nullable_fields_can_be_cleared(self, db, make_rfq):
        rfq = make_rfq()
        quote_id = quotes.create_draft(
            db, rfq.id, "seller-1", quote_terms(notes="Incl. freight"),
        )["quote"]["id"]

        result = quotes.update_quote(db, quote_id, "seller-1", {"notes": None})

        assert result["success"] is True
        assert db.get(Quote, quote_id).notes is None

    def test_versions_visible_to_buyer_once_sent(self, db, make_sent_quote):
        quote = make_sent_quote()
        result = quotes.get_quote_versions(db, quote["id"], "buyer-1")
        assert [v["version"] for v in result["versions"]] == [1]


class TestRejectAndDelete:

    def test_buyer_rejection_closes_rfq(self, db, make_sent_quote):
        quote = make_sent_quote()
        result = quotes.reject_quote(db, quote["id"], "buyer-1", reason="Too expensive")

        assert result["quote"]["status"] == QuoteStatus.REJECTED.value
        assert db.get(RFQ, quote["rfq_id"]).status == RFQStatus.REJECTED.value

    def test_only_rfq_buyer_may_reject(self, db, make_sent_quote):
        quote = make_sent_quote()
        result = quotes.reject_quote(db, quote["id"], "buyer-2")
        assert result["error_kind"] == "unauthorized"

    def test_draft_can_be_deleted_and_events_survive(self, db, make_rfq):
        rfq = make_rfq()
        quote_id = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]

        assert quotes.delete_draft(db, quote_id, "seller-1")["success"]
        assert db.get(Quote, quote_id) is None
        assert db.query(QuoteEvent).filter_by(quote_id=quote_id).count() == 1

        # The slot is free for a new draft
        assert quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["success"]

    def test_sent_quote_cannot_be_deleted(self, db, make_sent_quote):
        quote = make_sent_quote()
        result = quotes.delete_draft(db, quote["id"], "seller-1")
        assert result["error_kind"] == "conflict"


class TestVisibility:

    def test_buyer_never_sees_drafts(self, db, make_rfq):
        rfq = make_rfq()
        quote_id = quotes.create_draft(db, rfq.id, "seller-1", quote_terms())["quote"]["id"]

        assert quotes.get_quote(db, quote_id, "buyer-1")["error_kind"] == "not_found"
        assert quotes.get_quotes_by_rfq(db, rfq.id, "buyer-1")["quotes"] == []

    def test_buyer_view_hides_internal_notes(self, db, make_sent_quote):
        quote = make_sent_quote(internal_notes="margin 12%")
        buyer_view = quotes.get_quote(db, quote["id"], "buyer-1")["quote"]
        seller_view = quotes.get_quote(db, quote["id"], "seller-1")["quote"]

        assert "internal_notes" not in buyer_view
        assert seller_view["internal_notes"] == "margin 12%"

    def test_stranger_is_unauthorized(self, db, make_sent_quote):
        quote = make_sent_quote()
        assert quotes.get_quote(db, quote["id"], "someone-else")["error_kind"] == "unauthorized"

    def test_seller_listing_is_paginated(self, db, make_sent_quote):
        for _ in range(3):
            make_sent_quote()
        result = quotes.get_seller_quotes(db, "seller-1", limit=2)
        assert result["total"] == 3
        assert len(result["quotes"]) == 2
        assert result["total_pages"] == 2


class TestExpiry:

    def test_expiry_is_idempotent(self, db, make_sent_quote):
        quote = make_sent_quote()
        later = datetime.utcnow() + timedelta(days=30)

        first = quotes.expire_quotes(db, now=later)
        second = quotes.expire_quotes(db, now=later)

        assert first["expired_count"] == 1
        assert second["expired_count"] == 0
        assert db.get(Quote, quote["id"]).status == QuoteStatus.EXPIRED.value

    def test_valid_quotes_are_untouched(self, db, make_sent_quote):
        make_sent_quote()
        result = quotes.expire_quotes(db)
        assert result["expired_count"] == 0
