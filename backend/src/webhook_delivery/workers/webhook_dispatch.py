"""Webhook dispatch worker.

Drains the delivery queue on a short cron tick and periodically returns
rows stuck in DELIVERING (after a worker crash) to the queue.

Usage (with ARQ):
    arq webhook_delivery.workers.webhook_dispatch.WorkerSettings
"""
from typing import Any, Optional

import httpx
import structlog
from arq import cron
from arq.connections import RedisSettings

from webhook_delivery.cache import redis_connection
from webhook_delivery.config import settings
from webhook_delivery.database import AsyncSessionLocal
from webhook_delivery.middleware.logging import setup_logging
from webhook_delivery.services.circuit_breaker import CircuitBreaker
from webhook_delivery.services.delivery_executor import DeliveryExecutor
from webhook_delivery.services.webhook_service import WebhookDeliveryService

logger = structlog.get_logger(__name__)


async def process_webhook_queue(ctx: Optional[dict[str, Any]] = None) -> dict[str, int]:
    """
    Claim and attempt one batch of due deliveries.

    ``ctx`` may provide ``session_factory``, ``redis`` and ``http_client``;
    anything missing falls back to the process-wide instances.

    Args:
        ctx: ARQ context

    Returns:
        Dict with the number of claimed rows
    """
    ctx = ctx or {}
    session_factory = ctx.get("session_factory") or AsyncSessionLocal
    redis = ctx["redis_client"] if "redis_client" in ctx else redis_connection.client()

    breaker = CircuitBreaker.from_settings(redis)
    executor = DeliveryExecutor.from_settings(session_factory, breaker, http_client=ctx.get("http_client"))

    async with session_factory() as db:
        try:
            service = WebhookDeliveryService(db, executor=executor)
            claimed = await service.process_queue(concurrency_limit=settings.webhook_batch_size)
        except Exception as e:
            await db.rollback()
            logger.exception("webhook_queue_processing_failed", exc_info=e)
            raise

    if claimed:
        logger.info("webhook_queue_drained", claimed=claimed)

    return {"claimed": claimed}


async def reclaim_stuck_webhook_deliveries(ctx: Optional[dict[str, Any]] = None) -> dict[str, int]:
    """
    Return deliveries claimed longer than ``webhook_stuck_after_seconds`` ago to the queue.

    Args:
        ctx: ARQ context

    Returns:
        Dict with the number of reclaimed rows
    """
    ctx = ctx or {}
    session_factory = ctx.get("session_factory") or AsyncSessionLocal

    async with session_factory() as db:
        try:
            service = WebhookDeliveryService(db)
            reclaimed = await service.reclaim_stuck_deliveries(settings.webhook_stuck_after_seconds)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.exception("webhook_reclaim_failed", exc_info=e)
            raise

    return {"reclaimed": reclaimed}


async def startup(ctx: dict[str, Any]) -> None:
    """Create the clients shared by every job in this worker process."""
    setup_logging()
    ctx["http_client"] = httpx.AsyncClient(
        timeout=settings.webhook_timeout_seconds,
        follow_redirects=False,
    )
    ctx["redis_client"] = redis_connection.client()
    logger.info("webhook_worker_started", batch_size=settings.webhook_batch_size)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Close shared clients."""
    http_client = ctx.pop("http_client", None)
    if http_client is not None:
        await http_client.aclose()
    ctx.pop("redis_client", None)
    await redis_connection.close()
    logger.info("webhook_worker_stopped")


class WorkerSettings:
    """
    ARQ worker settings for webhook dispatch.

    Schedule:
    - Queue drain: every ``webhook_dispatch_interval_seconds``
    - Stuck delivery reclaim: every minute

    Usage:
        arq webhook_delivery.workers.webhook_dispatch.WorkerSettings
    """

    functions = [
        process_webhook_queue,
        reclaim_stuck_webhook_deliveries,
    ]

    cron_jobs = [
        cron(
            process_webhook_queue,
            second=set(range(0, 60, settings.webhook_dispatch_interval_seconds)),
            timeout=settings.webhook_timeout_seconds * 2,
            unique=True,
        ),
        cron(
            reclaim_stuck_webhook_deliveries,
            second=30,
            timeout=60,
            unique=True,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))
    max_jobs = 2
