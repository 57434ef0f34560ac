"""Best-effort order confirmations.

The order service does not send mail itself: it publishes ``order.created``
on the order events topic and the notifications service renders and sends
the e-mail. Nothing in here may raise into the caller.
"""
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional
import logging

import httpx

from app.core.config import settings
from app.core.errors import NotificationError
from app.kafka import producer

logger = logging.getLogger(__name__)

# one sender thread keeps confirmations in order and off the batch path
_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="order-notify")


def get_executor() -> Executor:
    return _executor


class NotificationDispatcher:
    def send(self, address: str, order_summary: dict) -> None:
        raise NotImplementedError


class LoggingDispatcher(NotificationDispatcher):
    def send(self, address: str, order_summary: dict) -> None:
        logger.info("Notifications disabled; would notify %s about order %s", address, order_summary.get("order_number"))


class KafkaNotificationDispatcher(NotificationDispatcher):
    def __init__(self, topic: str = settings.TOPIC_ORDER_EVENTS):
        self.topic = topic

    def send(self, address: str, order_summary: dict) -> None:
        event = {"type": "order.created", "user_email": address, **order_summary}
        try:
            future = producer.send(self.topic, key=str(order_summary.get("order_id")), value=event)
        except Exception:
            logger.warning("Could not queue order.created for %s", order_summary.get("order_number"), exc_info=True)
            return
        future.add_errback(
            lambda exc: logger.warning("order.created delivery failed for %s: %s", order_summary.get("order_number"), exc)
        )


def get_dispatcher() -> NotificationDispatcher:
    if settings.NOTIFICATIONS_ENABLED:
        return KafkaNotificationDispatcher()
    return LoggingDispatcher()


class CustomerDirectory:
    """Resolves where a customer's confirmations go."""

    def __init__(self, auth_base: str = settings.AUTH_BASE, timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.auth_base = auth_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def contact_address(self, customer_id: str, customer_email: str = "") -> Optional[str]:
        if customer_email:
            return customer_email
        if "@" in (customer_id or ""):
            return customer_id
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.get(f"{self.auth_base}/users/")
        except httpx.RequestError as exc:
            raise NotificationError(f"Auth service unavailable: {exc}") from exc
        if resp.status_code != 200:
            raise NotificationError(f"User lookup failed ({resp.status_code})")
        for user in resp.json():
            if str(user.get("id")) == str(customer_id):
                return user.get("email")
        return None
