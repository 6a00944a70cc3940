"""
Tests for outbox dispatch, retry backoff and dead-lettering.
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from tradeflow.db.models import OutboxEvent, OutboxStatus
from tradeflow.services import outbox

TEST_EVENT = "test.side_effect"


@pytest.fixture
def handler_mock():
    mock = MagicMock()
    with patch.dict(outbox.HANDLERS, {TEST_EVENT: mock}):
        yield mock


def _publish(db, payload=None, max_attempts=None):
    event_id = outbox.publish(db, TEST_EVENT, payload or {"order_id": "o-1"})
    if max_attempts:
        db.get(OutboxEvent, event_id).max_attempts = max_attempts
    db.commit()
    return event_id


class TestRetryDelay:

    @pytest.mark.parametrize("attempts,seconds", [(1, 1), (2, 2), (3, 4), (5, 16)])
    def test_exponential(self, attempts, seconds):
        assert outbox.retry_delay(attempts) == timedelta(seconds=seconds)

    def test_capped(self):
        assert outbox.retry_delay(30) == timedelta(seconds=300)


class TestDispatch:

    def test_delivers_and_passes_payload(self, db, handler_mock):
        event_id = _publish(db, {"order_id": "o-9"})

        assert outbox.dispatch_event(db, event_id) is True

        handler_mock.assert_called_once()
        assert handler_mock.call_args[0][1] == {"order_id": "o-9"}
        event = db.get(OutboxEvent, event_id)
        assert event.status == OutboxStatus.DELIVERED.value
        assert event.attempts == 1
        assert event.processed_at is not None

    def test_delivered_event_is_not_run_twice(self, db, handler_mock):
        event_id = _publish(db)
        outbox.dispatch_event(db, event_id)

        assert outbox.dispatch_event(db, event_id) is False
        assert handler_mock.call_count == 1

    def test_failure_schedules_retry(self, db, handler_mock):
        handler_mock.side_effect = RuntimeError("smtp timeout")
        event_id = _publish(db)
        now = datetime.utcnow()

        assert outbox.dispatch_event(db, event_id, now=now) is False

        event = db.get(OutboxEvent, event_id)
        assert event.status == OutboxStatus.FAILED.value
        assert event.attempts == 1
        assert event.last_error == "smtp timeout"
        assert event.next_attempt_at == now + timedelta(seconds=1)

    def test_dead_letter_after_max_attempts(self, db, handler_mock):
        handler_mock.side_effect = RuntimeError("still broken")
        event_id = _publish(db, max_attempts=2)

        outbox.dispatch_event(db, event_id)
        outbox.dispatch_event(db, event_id)

        event = db.get(OutboxEvent, event_id)
        assert event.status == OutboxStatus.DEAD.value
        assert event.attempts == 2
        assert outbox.dispatch_event(db, event_id) is False

    def test_unregistered_event_type_fails(self, db):
        event_id = outbox.publish(db, "nobody.listens", {})
        db.commit()

        assert outbox.dispatch_event(db, event_id) is False
        assert "No handler registered" in db.get(OutboxEvent, event_id).last_error

    def test_notify_without_recipient_is_noop(self, db):
        assert outbox.notify(db, None, "order_created", "order:1") is None
        assert db.query(OutboxEvent).count() == 0


class TestDispatchPending:

    def test_only_due_events_are_processed(self, db, handler_mock):
        handler_mock.side_effect = [RuntimeError("flaky"), None]
        event_id = _publish(db)
        now = datetime.utcnow()

        first = outbox.dispatch_pending(db, now=now)
        too_early = outbox.dispatch_pending(db, now=now)
        retried = outbox.dispatch_pending(db, now=now + timedelta(seconds=5))

        assert first == {"processed": 1, "delivered": 0, "failed": 1}
        assert too_early["processed"] == 0
        assert retried == {"processed": 1, "delivered": 1, "failed": 0}
        assert db.get(OutboxEvent, event_id).status == OutboxStatus.DELIVERED.value

    def test_batch_size_limits_work(self, db, handler_mock):
        for _ in range(3):
            _publish(db)
        result = outbox.dispatch_pending(db, batch_size=2)
        assert result["processed"] == 2

    def test_abandoned_claim_is_retried_after_lease(self, db, handler_mock):
        # Dispatcher claimed the row and died before recording an outcome
        event_id = _publish(db)
        now = datetime.utcnow()
        assert outbox._claim(db, event_id, now) is True
        lease = timedelta(seconds=outbox.settings.OUTBOX_LEASE_SECONDS)

        still_leased = outbox.dispatch_pending(db, now=now + lease - timedelta(seconds=1))
        recovered = outbox.dispatch_pending(db, now=now + lease + timedelta(seconds=1))

        assert still_leased["processed"] == 0
        assert recovered == {"processed": 1, "delivered": 1, "failed": 0}
        handler_mock.assert_called_once()
        assert db.get(OutboxEvent, event_id).status == OutboxStatus.DELIVERED.value

    def test_live_claim_is_not_taken_over(self, db, handler_mock):
        event_id = _publish(db)
        now = datetime.utcnow()
        outbox._claim(db, event_id, now)

        assert outbox.dispatch_event(db, event_id, now=now + timedelta(seconds=5)) is False
        handler_mock.assert_not_called()
        assert db.get(OutboxEvent, event_id).status == OutboxStatus.PROCESSING.value


class TestInlineDispatch:

    def test_disabled_inline_dispatch_leaves_events_pending(self, db, handler_mock):
        event_id = _publish(db)
        with patch.object(outbox.settings, "OUTBOX_INLINE_DISPATCH", False):
            outbox.dispatch_after_commit(db, [event_id])

        handler_mock.assert_not_called()
        assert db.get(OutboxEvent, event_id).status == OutboxStatus.PENDING.value

    def test_inline_dispatch_never_raises(self, db):
        with patch.object(outbox, "dispatch_event", side_effect=RuntimeError("db gone")):
            outbox.dispatch_after_commit(db, [1, None])


class TestHandlerResults:

    def test_conflict_results_are_treated_as_done(self):
        outbox._require_success({"success": False, "error_kind": "conflict", "error": "dup"}, "Invoice")

    def test_other_failures_are_retried(self):
        with pytest.raises(outbox.OutboxHandlerError):
            outbox._require_success({"success": False, "error_kind": "not_found", "error": "gone"}, "Invoice")
