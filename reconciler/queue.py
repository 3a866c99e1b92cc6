"""
Push customer notifications to the queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
The notification worker drains the queue; the webhook path never waits on delivery.
"""
import asyncio
import logging

from reconciler.config import settings
from reconciler.metrics import notifications_enqueued_total
from reconciler.notifications import Notification
from reconciler.order_state import OrderStatus
from reconciler.redis_client import get_redis
from reconciler.sqs_client import SqsQueue

NOTIFICATION_QUEUE_KEY = "queue:customer_notifications"
NOTIFICATION_DLQ_KEY = "queue:customer_notifications:dlq"

logger = logging.getLogger(__name__)


async def push_to_queue(notification: Notification) -> None:
    if settings.sqs_queue_url:
        await asyncio.to_thread(SqsQueue(settings.sqs_queue_url).send, notification.to_message())
    else:
        r = await get_redis()
        await r.lpush(NOTIFICATION_QUEUE_KEY, notification.to_message())


class QueueNotificationDispatcher:
    """NotificationDispatcher that only enqueues; delivery happens in the worker."""

    async def notify(self, order_id: str, new_status: OrderStatus) -> None:
        notification = Notification.new(order_id, new_status)
        try:
            await push_to_queue(notification)
        except Exception:
            # status is already committed; a lost notification must be visible, not fatal
            logger.exception("Failed to enqueue notification for order_id=%s status=%s", order_id, new_status.value)
            return
        notifications_enqueued_total.inc()
        logger.info("Queued notification_id=%s", notification.notification_id)
