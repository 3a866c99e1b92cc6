"""
Notification worker: drain customer notifications from Redis or AWS SQS, render them from the
order's current record, send them and record each in customer_notifications.

Delivery is idempotent on notification_id: a notification already recorded is not sent again.
Failed deliveries are retried with exponential backoff. Redis dead-letters after
WORKER_MAX_RETRIES attempts; SQS leaves the message for its redrive policy.
Worker metrics are served on port 9090. SIGTERM/SIGINT stop polling and drain in-flight work.
Run: reconciler-worker (or python -m reconciler.worker)
"""
import asyncio
import logging
import signal
import sys
import threading
import time
from typing import NamedTuple, Protocol

import redis.asyncio as redis

from reconciler.config import settings
from reconciler.db import PostgresOrderRepository, close_pool, get_pool, init_schema, insert_notification, notification_recorded
from reconciler.metrics import notifications_dlq_total, notifications_failed_total, notifications_processed_total
from reconciler.notifications import Notification, WebhookNotificationSender, render_notification
from reconciler.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY
from reconciler.sqs_client import SqsQueue

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
SQS_MAX_BACKOFF_SEC = 900
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


class QueueMessage(NamedTuple):
    body: str
    receipt: str | None = None
    receive_count: int = 1


class NotificationQueue(Protocol):
    async def receive(self) -> list[QueueMessage]: ...

    async def ack(self, message: QueueMessage) -> None: ...

    async def retry(self, message: QueueMessage, notification: Notification, error: Exception) -> None: ...


class RedisNotificationQueue:
    """BRPOP consumer. Retries re-queue after 2**attempts seconds; the last failure goes to the DLQ list."""

    def __init__(self, r: redis.Redis, max_retries: int):
        self.r = r
        self.max_retries = max_retries

    async def receive(self) -> list[QueueMessage]:
        result = await self.r.brpop(NOTIFICATION_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
        if result is None:
            return []
        _key, raw = result
        return [QueueMessage(raw)]

    async def ack(self, message: QueueMessage) -> None:
        # BRPOP already removed it
        return None

    async def retry(self, message: QueueMessage, notification: Notification, error: Exception) -> None:
        if notification.attempts + 1 >= self.max_retries:
            dead = notification.retried(str(error), time.time())
            await self.r.lpush(NOTIFICATION_DLQ_KEY, dead.to_message())
            notifications_dlq_total.inc()
            logger.warning("Moved notification_id=%s to DLQ after %d attempts", notification.notification_id, dead.attempts)
            return
        backoff_sec = 2 ** notification.attempts
        logger.info(
            "Re-queuing notification_id=%s in %ds (attempt %d/%d)",
            notification.notification_id,
            backoff_sec,
            notification.attempts + 1,
            self.max_retries,
        )
        await asyncio.sleep(backoff_sec)
        await self.r.lpush(NOTIFICATION_QUEUE_KEY, notification.retried().to_message())


class SqsNotificationQueue:
    """A failed message is not deleted; its visibility is pushed out and SQS redrives it to the DLQ."""

    def __init__(self, queue: SqsQueue):
        self.queue = queue

    async def receive(self) -> list[QueueMessage]:
        messages = await asyncio.to_thread(self.queue.receive, 10, 5)
        return [
            QueueMessage(
                body=msg.get("Body") or "",
                receipt=msg.get("ReceiptHandle") or "",
                receive_count=int((msg.get("Attributes") or {}).get("ApproximateReceiveCount", 1)),
            )
            for msg in messages
        ]

    async def ack(self, message: QueueMessage) -> None:
        await asyncio.to_thread(self.queue.delete, message.receipt)

    async def retry(self, message: QueueMessage, notification: Notification, error: Exception) -> None:
        backoff = min(2 ** message.receive_count, SQS_MAX_BACKOFF_SEC)
        await asyncio.to_thread(self.queue.change_visibility, message.receipt, backoff)


class NotificationDelivery:
    def __init__(self, pool, sender: WebhookNotificationSender, orders=None):
        self.pool = pool
        self.sender = sender
        self.orders = orders or PostgresOrderRepository(pool)

    async def __call__(self, notification: Notification) -> None:
        if await notification_recorded(self.pool, notification.notification_id):
            logger.info("notification_id=%s already delivered, skipped", notification.notification_id)
            return
        order = await self.orders.get_order(notification.order_id)
        if order is None:
            logger.warning("Notification %s for unknown order_id=%s", notification.notification_id, notification.order_id)
        content = render_notification(notification, order)
        await self.sender.send(notification, content)
        await insert_notification(
            self.pool,
            notification.notification_id,
            notification.order_id,
            notification.status.value,
            content,
            notification.attempts,
        )
        notifications_processed_total.inc()
        logger.info(
            "Delivered notification_id=%s order_id=%s status=%s",
            notification.notification_id,
            notification.order_id,
            notification.status.value,
        )


async def process_one(queue: NotificationQueue, deliver, message: QueueMessage, sem: asyncio.Semaphore) -> None:
    notification = Notification.from_message(message.body)
    if notification is None:
        notifications_failed_total.inc()
        await queue.ack(message)
        return
    async with sem:
        try:
            await deliver(notification)
        except Exception as e:
            notifications_failed_total.inc()
            logger.exception(
                "Failed to deliver notification_id=%s (attempt %d): %s",
                notification.notification_id,
                notification.attempts + 1,
                e,
            )
            await queue.retry(message, notification, e)
            return
        await queue.ack(message)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def consume(queue: NotificationQueue, deliver, shutdown_event: asyncio.Event, concurrency: int) -> None:
    sem = asyncio.Semaphore(concurrency)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            for message in await queue.receive():
                t = asyncio.create_task(process_one(queue, deliver, message, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sender = WebhookNotificationSender(settings.notification_webhook_url, settings.notification_timeout_seconds)
    deliver = NotificationDelivery(pool, sender)
    r = None
    if settings.sqs_queue_url:
        queue = SqsNotificationQueue(SqsQueue(settings.sqs_queue_url))
        logger.info("Backend=SQS. Queue=%s (concurrency=%d)", settings.sqs_queue_url, settings.worker_concurrency)
    else:
        r = redis.from_url(settings.redis_url, decode_responses=True)
        queue = RedisNotificationQueue(r, settings.worker_max_retries)
        logger.info(
            "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d)",
            NOTIFICATION_QUEUE_KEY,
            settings.worker_concurrency,
            settings.worker_max_retries,
        )
    try:
        await consume(queue, deliver, shutdown_event, settings.worker_concurrency)
    finally:
        await sender.close()
        if r is not None:
            await r.aclose()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *a: shutdown_event.set())
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
