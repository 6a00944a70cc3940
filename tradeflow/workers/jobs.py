"""
Background job definitions.

Reconciliation sweeps (quote expiry, invoice overdue) and outbox dispatch
run here on a schedule. Every job is safe to re-run: the sweeps select by
status and flip each row with a conditional update.
"""
from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler
from datetime import datetime, timedelta

from tradeflow.core.config import settings
from tradeflow.core.logging import get_logger

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


# ============= JOB FUNCTIONS =============

def expire_quotes_job(now: datetime = None) -> dict:
    """Expire open quotes whose validity has passed."""
    from tradeflow.db.session import get_db_context
    from tradeflow.services.quotes import expire_quotes

    logger.info("Running quote expiry sweep")
    with get_db_context() as db:
        result = expire_quotes(db, now=now)

    logger.info(f"Quote expiry: {result.get('expired_count', 0)}/{result.get('processed', 0)} expired")
    return result


def process_overdue_invoices_job(now: datetime = None) -> dict:
    """Flip issued invoices past their due date to overdue."""
    from tradeflow.db.session import get_db_context
    from tradeflow.services.invoices import process_overdue_invoices

    logger.info("Running invoice overdue sweep")
    with get_db_context() as db:
        result = process_overdue_invoices(db, now=now)

    if result.get("errors"):
        logger.warning(f"Invoice overdue sweep finished with {result['errors']} errors")
    return result


def dispatch_outbox_job(batch_size: int = None) -> dict:
    """Deliver pending and retry-due outbox events."""
    from tradeflow.db.session import get_db_context
    from tradeflow.services.outbox import dispatch_pending

    with get_db_context() as db:
        return dispatch_pending(db, batch_size=batch_size)


# ============= QUEUE HELPERS =============

def enqueue_quote_expiry():
    """Queue a quote expiry sweep."""
    queue = get_queue("low")
    return queue.enqueue(expire_quotes_job)


def enqueue_overdue_sweep():
    """Queue an invoice overdue sweep."""
    queue = get_queue("low")
    return queue.enqueue(process_overdue_invoices_job)


def enqueue_outbox_dispatch():
    """Queue an outbox dispatch batch."""
    queue = get_queue("high")
    return queue.enqueue(dispatch_outbox_job)


def setup_scheduled_jobs():
    """Setup scheduled jobs."""
    scheduler = get_scheduler()

    scheduler.schedule(
        scheduled_time=datetime.utcnow(),
        func=dispatch_outbox_job,
        interval=settings.OUTBOX_DISPATCH_INTERVAL_SECONDS,
        repeat=None,
    )

    scheduler.schedule(
        scheduled_time=datetime.utcnow() + timedelta(minutes=1),
        func=expire_quotes_job,
        interval=settings.QUOTE_EXPIRY_INTERVAL_SECONDS,
        repeat=None,
    )

    scheduler.schedule(
        scheduled_time=datetime.utcnow() + timedelta(minutes=2),
        func=process_overdue_invoices_job,
        interval=settings.INVOICE_OVERDUE_INTERVAL_SECONDS,
        repeat=None,
    )

    logger.info("Scheduled jobs configured")
