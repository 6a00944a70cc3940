"""
Tests for post-order ratings and rating summaries.
"""
import pytest

from tradeflow.db.models import OrderStatus, OrderPaymentStatus
from tradeflow.services import ratings
from tradeflow.tests.conftest import make_bare_order


@pytest.fixture
def completed_order(db):
    return make_bare_order(db, payment_status=OrderPaymentStatus.PAID.value)


class TestEligibility:

    def test_completed_order_open_to_both(self, db, completed_order):
        eligibility = ratings.check_eligibility(db, completed_order.id)["eligibility"]
        assert eligibility["can_buyer_rate"] is True
        assert eligibility["can_seller_rate"] is True
        assert eligibility["reason_if_blocked"] is None

    def test_unpaid_order_is_blocked(self, db):
        order = make_bare_order(db)
        eligibility = ratings.check_eligibility(db, order.id)["eligibility"]
        assert eligibility["can_buyer_rate"] is False
        assert eligibility["reason_if_blocked"] == "Order is not yet completed (delivered and paid)"

    def test_missing_order(self, db):
        eligibility = ratings.check_eligibility(db, "missing")["eligibility"]
        assert eligibility["reason_if_blocked"] == "Order not found"

    def test_already_rated_side_is_closed(self, db, completed_order):
        ratings.create_rating(db, completed_order.id, "buyer-1", "buyer", 5)
        eligibility = ratings.check_eligibility(db, completed_order.id)["eligibility"]
        assert eligibility["buyer_already_rated"] is True
        assert eligibility["can_buyer_rate"] is False
        assert eligibility["can_seller_rate"] is True


class TestCreateRating:

    def test_buyer_rates_seller(self, db, completed_order):
        result = ratings.create_rating(
            db, completed_order.id, "buyer-1", "buyer", 4, tags=["on_time"], comment="Good packing",
        )
        rating = result["rating"]
        assert rating["target_role"] == "seller"
        assert rating["target_id"] == "seller-1"
        assert rating["tags"] == ["on_time"]

    def test_one_rating_per_side(self, db, completed_order):
        assert ratings.create_rating(db, completed_order.id, "buyer-1", "buyer", 4)["success"]
        second = ratings.create_rating(db, completed_order.id, "buyer-1", "buyer", 2)
        assert second["error"] == "You have already rated this order"

    @pytest.mark.parametrize("score", [0, 6, 3.5, True, "5"])
    def test_score_must_be_integer_one_to_five(self, db, completed_order, score):
        result = ratings.create_rating(db, completed_order.id, "buyer-1", "buyer", score)
        assert result["error"] == "Score must be an integer between 1 and 5"

    def test_comment_length_limit(self, db, completed_order):
        result = ratings.create_rating(db, completed_order.id, "buyer-1", "buyer", 5, comment="x" * 281)
        assert result["error_kind"] == "validation"

    def test_incomplete_order_cannot_be_rated(self, db):
        order = make_bare_order(db, status=OrderStatus.SHIPPED.value,
                                payment_status=OrderPaymentStatus.PAID.value)
        result = ratings.create_rating(db, order.id, "buyer-1", "buyer", 5)
        assert result["error"] == "Order must be delivered and paid before rating"

    def test_seller_must_own_order(self, db, completed_order):
        result = ratings.create_rating(db, completed_order.id, "seller-2", "seller", 5)
        assert result["error"] == "You are not the seller for this order"


class TestSummary:

    def test_average_and_distribution(self, db):
        for score in (5, 4, 4, 4):
            order = make_bare_order(db, payment_status=OrderPaymentStatus.PAID.value)
            ratings.create_rating(db, order.id, "buyer-1", "buyer", score)

        summary = ratings.get_target_summary(db, "seller", "seller-1")["summary"]

        assert summary["count"] == 4
        assert summary["avg_score"] == 4.3
        assert summary["distribution"] == {1: 0, 2: 0, 3: 0, 4: 3, 5: 1}
        assert summary["recent"][0]["order_number"].startswith("ORD-TEST-")

    def test_empty_summary(self, db):
        summary = ratings.get_target_summary(db, "buyer", "nobody")["summary"]
        assert summary["count"] == 0
        assert summary["avg_score"] == 0
        assert summary["recent"] == []

    def test_order_ratings_by_side(self, db, completed_order):
        ratings.create_rating(db, completed_order.id, "seller-1", "seller", 3)
        result = ratings.get_order_ratings(db, completed_order.id)
        assert result["buyer_rating"] is None
        assert result["seller_rating"]["score"] == 3
