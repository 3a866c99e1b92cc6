"""
AWS SQS access for the customer notification queue. Used when SQS_QUEUE_URL is set.
boto3 is synchronous; async callers run these methods with asyncio.to_thread.
"""
import asyncio
import json
import logging
from typing import Any

import boto3

from reconciler.config import settings

logger = logging.getLogger(__name__)

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


class SqsQueue:
    def __init__(self, url: str, client: Any = None):
        self.url = url
        self.client = client or _get_client()

    def send(self, body: str) -> None:
        self.client.send_message(QueueUrl=self.url, MessageBody=body)

    def receive(self, max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
        """Long-poll. Each message carries ReceiptHandle, Body and ApproximateReceiveCount."""
        resp = self.client.receive_message(
            QueueUrl=self.url,
            MaxNumberOfMessages=max_number,
            WaitTimeSeconds=wait_seconds,
            AttributeNames=["ApproximateReceiveCount"],
        )
        return resp.get("Messages") or []

    def delete(self, receipt_handle: str) -> None:
        self.client.delete_message(QueueUrl=self.url, ReceiptHandle=receipt_handle)

    def change_visibility(self, receipt_handle: str, timeout_seconds: int) -> None:
        self.client.change_message_visibility(
            QueueUrl=self.url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=timeout_seconds,
        )

    def depth(self) -> tuple[int, int]:
        """(waiting, in flight)"""
        attrs = self.client.get_queue_attributes(
            QueueUrl=self.url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        ).get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )


def _replayable(body: str | None) -> dict | None:
    try:
        data = json.loads(body or "")
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not all(data.get(k) for k in ("notification_id", "order_id", "status")):
        return None
    return data


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Move up to limit notifications from the DLQ back to the main queue with attempts reset.
    Malformed DLQ messages are dropped. Returns the number of DLQ messages handled.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    dlq = SqsQueue(settings.sqs_dlq_url)
    main = SqsQueue(settings.sqs_queue_url)
    handled = 0
    while handled < limit:
        messages = await asyncio.to_thread(dlq.receive, min(10, limit - handled), 0)
        if not messages:
            break
        for msg in messages[: limit - handled]:
            data = _replayable(msg.get("Body"))
            if data is None:
                logger.warning("Dropping malformed DLQ message %s", msg.get("MessageId"))
            else:
                data.update(attempts=0)
                data.pop("last_error", None)
                data.pop("failed_at", None)
                await asyncio.to_thread(main.send, json.dumps(data))
            await asyncio.to_thread(dlq.delete, msg.get("ReceiptHandle") or "")
            handled += 1
    logger.info("Replayed %d message(s) from the notification DLQ", handled)
    return handled
