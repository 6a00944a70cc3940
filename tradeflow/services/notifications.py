"""
Notification sink interface.

Delivery (email, push, in-app) lives outside this service. Lifecycle
transitions publish ``notification.send`` outbox events; the outbox worker
hands them to whichever sink is installed.
"""
from abc import ABC, abstractmethod
from typing import Optional

from tradeflow.core.logging import get_logger

logger = get_logger(__name__)


QUOTE_SENT = "quote_sent"
ORDER_CREATED = "order_created"
ORDER_CONFIRMED = "order_confirmed"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"
INVOICE_ISSUED = "invoice_issued"


class NotificationSink(ABC):
    """Fire-and-forget notification target."""

    @abstractmethod
    def notify(self, user_id: str, notification_type: str, entity_ref: str,
               metadata: Optional[dict] = None) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes the notification to the application log."""

    def notify(self, user_id: str, notification_type: str, entity_ref: str,
               metadata: Optional[dict] = None) -> None:
        logger.info(
            f"Notify {user_id}: {notification_type} ({entity_ref})",
            extra={"user_id": user_id, "action": notification_type},
        )


_sink: NotificationSink = LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    return _sink


def set_notification_sink(sink: NotificationSink) -> NotificationSink:
    """Install a sink and return the previous one."""
    global _sink
    previous = _sink
    _sink = sink
    return previous
