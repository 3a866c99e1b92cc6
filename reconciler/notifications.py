"""
Customer notifications for status changes.

A Notification is what travels on the queue (order, new status, delivery attempts).
The worker renders it into customer-facing content from the order's current record and
hands it to a sender; the default sender POSTs to an automation webhook (e.g. the mailer).
"""
import json
import logging
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone

import httpx

from reconciler.order_state import HOLD_REASONS, HOLD_STATUSES, STATUS_DISPLAY, OrderStatus

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "order.status_changed"
NOTIFICATION_SOURCE = "print-order-reconciler"

_SUBJECTS: dict[OrderStatus, str] = {
    OrderStatus.PREPRESS: "We're preparing your order - {order_id}",
    OrderStatus.PRODUCTION: "Your order is printing! - {order_id}",
    OrderStatus.SHIPPED: "Your order has shipped! - {order_id}",
    OrderStatus.DELIVERED: "Your order has been delivered - {order_id}",
    OrderStatus.CANCELLED: "Order cancelled - {order_id}",
}
_HOLD_SUBJECT = "Action needed: order on hold - {order_id}"


@dataclass(frozen=True)
class Notification:
    notification_id: str
    order_id: str
    status: OrderStatus
    attempts: int = 0
    last_error: str | None = None
    failed_at: float | None = None

    @classmethod
    def new(cls, order_id: str, status: OrderStatus) -> "Notification":
        return cls(f"{order_id}:{status.value}:{uuid.uuid4().hex[:12]}", order_id, status)

    @classmethod
    def from_message(cls, raw: str) -> "Notification | None":
        """Decode a queue message; None if it is not a usable notification."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON from notification queue: %s", e)
            return None
        if not isinstance(data, dict) or not data.get("notification_id") or not data.get("order_id"):
            logger.warning("Notification message missing notification_id/order_id, skipping")
            return None
        try:
            status = OrderStatus(data.get("status"))
        except ValueError:
            logger.warning("Notification %s has unknown status %r, skipping", data["notification_id"], data.get("status"))
            return None
        return cls(
            notification_id=data["notification_id"],
            order_id=data["order_id"],
            status=status,
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
            failed_at=data.get("failed_at"),
        )

    def to_message(self) -> str:
        body = {k: v for k, v in asdict(self).items() if v is not None}
        body["status"] = self.status.value
        return json.dumps(body)

    def retried(self, error: str | None = None, failed_at: float | None = None) -> "Notification":
        return replace(self, attempts=self.attempts + 1, last_error=error, failed_at=failed_at)

    def reset(self) -> "Notification":
        """Fresh copy for a DLQ replay."""
        return replace(self, attempts=0, last_error=None, failed_at=None)


def render_notification(notification: Notification, order: dict | None = None) -> dict:
    """
    Customer-facing content for a status change.

    order is the current orders row when available; its tracking number, estimated delivery
    and vendor hold wording are included. Without it the generic text for the status is used.
    """
    order = order or {}
    status = notification.status
    label, description, progress = STATUS_DISPLAY[status]
    subject = (_HOLD_SUBJECT if status in HOLD_STATUSES else _SUBJECTS.get(status, "Order update - {order_id}"))
    content = {
        "orderId": notification.order_id,
        "status": status.value,
        "label": label,
        "subject": subject.format(order_id=notification.order_id),
        "message": description,
        "progress": progress,
    }
    if status in HOLD_STATUSES:
        content["holdReason"] = order.get("hold_reason") or HOLD_REASONS[status]
        content["message"] = f"{description}. Reason: {content['holdReason']}"
    if status == OrderStatus.SHIPPED:
        if order.get("tracking_number"):
            content["trackingNumber"] = order["tracking_number"]
        if order.get("estimated_delivery"):
            content["estimatedDelivery"] = order["estimated_delivery"].isoformat()
    return content


class WebhookNotificationSender:
    """
    POSTs rendered notifications to an automation webhook as
    {"event", "data", "timestamp", "source"}. Any non-2xx response raises httpx.HTTPStatusError,
    which the worker treats as a failed attempt.
    With no URL configured the content is only recorded by the worker.
    """

    def __init__(self, url: str | None, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def send(self, notification: Notification, content: dict) -> None:
        if not self.url:
            logger.info("No notification webhook configured; notification_id=%s recorded only", notification.notification_id)
            return
        client = await self._get_client()
        resp = await client.post(
            self.url,
            json={
                "event": NOTIFICATION_EVENT,
                "data": content,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "source": NOTIFICATION_SOURCE,
            },
            headers={"X-Notification-Id": notification.notification_id},
        )
        resp.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
