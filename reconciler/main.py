import asyncio
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from reconciler.config import settings
from reconciler.db import PostgresOrderRepository, close_pool, get_pool, init_schema
from reconciler.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from reconciler.order_state import TRANSITIONS, validate_transition_table
from reconciler.queue import QueueNotificationDispatcher
from reconciler.reconcile import Reconciler
from reconciler.redis_client import RedisSignalLedger, close_redis, get_redis
from reconciler.routes import admin, orders, webhooks
from reconciler.signature import StaticSecretStore
from reconciler.sqs_client import SqsQueue
from reconciler.vendor_mapping import load_registry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # An inconsistent transition table or mapping file aborts startup.
    validate_transition_table(TRANSITIONS)
    registry = load_registry(settings.vendor_mappings_path)

    pool = await get_pool()
    await init_schema(pool)
    r = await get_redis()
    repository = PostgresOrderRepository(pool)

    app.state.registry = registry
    app.state.repository = repository
    app.state.dispatcher = QueueNotificationDispatcher()
    app.state.reconciler = Reconciler(
        registry=registry,
        repository=repository,
        secrets=StaticSecretStore(settings.vendor_webhook_secrets),
        ledger=RedisSignalLedger(r, ttl_seconds=settings.signal_dedup_ttl_seconds),
        max_retries=settings.reconcile_max_retries,
    )
    if not settings.vendor_webhook_secrets:
        logger.warning("No vendor webhook secrets configured: every vendor webhook will be rejected")
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Print Order Reconciler", lifespan=lifespan)
app.include_router(webhooks.router)
app.include_router(orders.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: webhook and reconcile counters, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await asyncio.to_thread(SqsQueue(settings.sqs_queue_url).depth)
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception as e:
            logger.warning("Could not read SQS queue depth: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )


def run() -> None:
    uvicorn.run("reconciler.main:app", host=settings.api_host, port=settings.api_port)
