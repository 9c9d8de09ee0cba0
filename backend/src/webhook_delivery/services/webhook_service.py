"""Webhook fan-out and queue draining."""
import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_delivery.metrics import (
    webhook_deliveries_claimed_total,
    webhook_deliveries_deduplicated_total,
    webhook_deliveries_queued_total,
    webhook_deliveries_reclaimed_total,
)
from webhook_delivery.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from webhook_delivery.models.webhook_endpoint import WebhookEndpoint
from webhook_delivery.services.delivery_executor import DeliveryExecutor, DeliveryJob

logger = structlog.get_logger(__name__)

_IDEMPOTENCY_KEY = ["endpoint_id", "event_type", "resource_id"]
_UPSERT_DIALECTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


class WebhookValidationError(ValueError):
    """Raised when an event cannot be queued as given."""


class WebhookDeliveryService:
    """Service for webhook fan-out, queue draining and delivery status."""

    MAX_RETRIES = 5

    def __init__(
        self,
        db: AsyncSession,
        executor: Optional[DeliveryExecutor] = None,
        max_retries: Optional[int] = None,
    ):
        """
        Initialize webhook delivery service.

        Args:
            db: Database session used for enqueue, claims and status reads
            executor: Delivery executor (required for ``process_queue``)
            max_retries: Attempts after which a failed row is no longer selected
        """
        self.db = db
        self.executor = executor
        if max_retries is not None:
            self.max_retries = max_retries
        elif executor is not None:
            self.max_retries = executor.max_retries
        else:
            self.max_retries = self.MAX_RETRIES

    async def queue_webhook(
        self,
        owner_id: str,
        event_type: str,
        data: dict[str, Any],
        resource_id: Optional[str] = None,
    ) -> int:
        """
        Queue an event for delivery to every subscribed endpoint of an owner.

        Queuing the same (endpoint, event type, resource) twice is a no-op for
        the second call. The session is flushed but not committed, so the rows
        can join the caller's transaction.

        Args:
            owner_id: Account that owns the endpoints
            event_type: Event type (e.g., "incident.created")
            data: Event data, snapshotted into the payload
            resource_id: Entity the event concerns (defaults to data["id"] or data["resource_id"])

        Returns:
            Number of delivery rows created

        Raises:
            WebhookValidationError: If no resource identity can be resolved
        """
        resolved_resource_id = self._resolve_resource_id(data, resource_id)

        result = await self.db.execute(
            select(WebhookEndpoint)
            .where(
                and_(
                    WebhookEndpoint.owner_id == owner_id,
                    WebhookEndpoint.enabled.is_(True),
                )
            )
            .order_by(WebhookEndpoint.created_at)
        )
        endpoints = [endpoint for endpoint in result.scalars().all() if endpoint.subscribes_to(event_type)]

        if not endpoints:
            logger.debug("webhook_no_subscribers", owner_id=owner_id, event_type=event_type)
            return 0

        payload = {
            "id": f"evt_{uuid4().hex}",
            "type": event_type,
            "created_at": datetime.utcnow().isoformat() + "Z",
            "data": json.loads(json.dumps(data, default=str)),
        }

        created_ids: list[UUID] = []
        for endpoint in endpoints:
            delivery_id = await self._insert_delivery(endpoint.id, event_type, resolved_resource_id, payload)
            if delivery_id is not None:
                created_ids.append(delivery_id)

        await self.db.flush()

        duplicates = len(endpoints) - len(created_ids)
        if created_ids:
            webhook_deliveries_queued_total.labels(event_type=event_type).inc(len(created_ids))
        if duplicates:
            webhook_deliveries_deduplicated_total.labels(event_type=event_type).inc(duplicates)

        logger.info(
            "webhooks_queued",
            owner_id=owner_id,
            event_type=event_type,
            resource_id=resolved_resource_id,
            event_id=payload["id"],
            endpoint_count=len(endpoints),
            created=len(created_ids),
            duplicates=duplicates,
        )

        return len(created_ids)

    @staticmethod
    def _resolve_resource_id(data: dict[str, Any], resource_id: Optional[str]) -> str:
        for candidate in (resource_id, data.get("id"), data.get("resource_id")):
            if candidate is not None and str(candidate) != "":
                return str(candidate)
        raise WebhookValidationError("resource_id is required (pass it explicitly or include 'id' in data)")

    async def _insert_delivery(
        self,
        endpoint_id: UUID,
        event_type: str,
        resource_id: str,
        payload: dict[str, Any],
    ) -> Optional[UUID]:
        """Insert one delivery row; returns None when the idempotency key already exists."""
        now = datetime.utcnow()
        values = {
            "id": uuid4(),
            "endpoint_id": endpoint_id,
            "event_type": event_type,
            "resource_id": resource_id,
            "payload": payload,
            "status": WebhookDeliveryStatus.PENDING,
            "attempts": 0,
            "next_attempt_at": now,
            "created_at": now,
            "updated_at": now,
        }

        upsert = _UPSERT_DIALECTS.get(self.db.get_bind().dialect.name)
        if upsert is not None:
            result = await self.db.execute(
                upsert(WebhookDelivery)
                .values(**values)
                .on_conflict_do_nothing(index_elements=_IDEMPOTENCY_KEY)
                .returning(WebhookDelivery.id)
            )
            return result.scalar_one_or_none()

        try:
            async with self.db.begin_nested():
                await self.db.execute(insert(WebhookDelivery).values(**values))
        except IntegrityError:
            return None
        return values["id"]

    async def process_queue(self, concurrency_limit: int = 10) -> int:
        """
        Claim a batch of due deliveries and attempt them concurrently.

        The claim is committed before any HTTP call is made, so overlapping
        drains in other processes skip the claimed rows. Each attempt
        persists its own outcome; one failing attempt never affects others.

        Args:
            concurrency_limit: Maximum rows claimed by this drain

        Returns:
            Number of rows claimed
        """
        if self.executor is None:
            raise RuntimeError("process_queue requires a DeliveryExecutor")

        claimed = await self._claim_due_deliveries(concurrency_limit)
        await self.db.commit()

        if not claimed:
            return 0

        webhook_deliveries_claimed_total.inc(len(claimed))
        logger.info("webhook_queue_processing", count=len(claimed))

        jobs = await self._build_jobs(claimed)
        results = await asyncio.gather(
            *(self.executor.deliver(job) for job in jobs),
            return_exceptions=True,
        )

        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error(
                    "webhook_delivery_error",
                    delivery_id=str(job.delivery_id),
                    endpoint_id=str(job.endpoint_id),
                    error=str(result),
                    exc_info=result,
                )

        return len(claimed)

    async def _claim_due_deliveries(self, limit: int) -> list[WebhookDelivery]:
        """
        Atomically move due rows to DELIVERING.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) so concurrent drains
        never receive overlapping rows. Backends without row locks rely on
        the single UPDATE statement being atomic.
        """
        now = datetime.utcnow()
        due = (
            select(WebhookDelivery.id)
            .where(
                or_(
                    WebhookDelivery.status == WebhookDeliveryStatus.PENDING,
                    and_(
                        WebhookDelivery.status == WebhookDeliveryStatus.FAILED,
                        WebhookDelivery.next_attempt_at.isnot(None),
                        WebhookDelivery.next_attempt_at <= now,
                        WebhookDelivery.attempts < self.max_retries,
                    ),
                )
            )
            .order_by(WebhookDelivery.next_attempt_at.asc().nulls_first(), WebhookDelivery.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        result = await self.db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id.in_(due))
            .values(status=WebhookDeliveryStatus.DELIVERING, claimed_at=now, updated_at=now)
            .returning(WebhookDelivery)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        return list(result.scalars().all())

    async def _build_jobs(self, deliveries: list[WebhookDelivery]) -> list[DeliveryJob]:
        """Attach endpoint url/secret to claimed rows; close rows whose endpoint is gone."""
        endpoint_ids = {delivery.endpoint_id for delivery in deliveries}
        result = await self.db.execute(select(WebhookEndpoint).where(WebhookEndpoint.id.in_(endpoint_ids)))
        endpoints = {endpoint.id: endpoint for endpoint in result.scalars().all()}

        jobs: list[DeliveryJob] = []
        for delivery in deliveries:
            endpoint = endpoints.get(delivery.endpoint_id)
            if endpoint is None or not endpoint.enabled:
                reason = "Webhook endpoint no longer exists" if endpoint is None else "Webhook endpoint is disabled"
                await self._close_undeliverable(delivery.id, reason)
                continue

            jobs.append(
                DeliveryJob(
                    delivery_id=delivery.id,
                    endpoint_id=endpoint.id,
                    url=endpoint.url,
                    secret=endpoint.secret,
                    event_type=delivery.event_type,
                    resource_id=delivery.resource_id,
                    payload=delivery.payload,
                    attempts=delivery.attempts,
                )
            )

        await self.db.commit()
        return jobs

    async def _close_undeliverable(self, delivery_id: UUID, reason: str) -> None:
        now = datetime.utcnow()
        await self.db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(
                status=WebhookDeliveryStatus.FAILED,
                next_attempt_at=None,
                claimed_at=None,
                last_error=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning("webhook_undeliverable", delivery_id=str(delivery_id), reason=reason)

    async def reclaim_stuck_deliveries(self, stuck_after_seconds: int) -> int:
        """
        Return rows stuck in DELIVERING (e.g. after a worker crash) to the queue.

        Args:
            stuck_after_seconds: Claims older than this are considered abandoned

        Returns:
            Number of reclaimed rows
        """
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=stuck_after_seconds)
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                and_(
                    WebhookDelivery.status == WebhookDeliveryStatus.DELIVERING,
                    WebhookDelivery.claimed_at < cutoff,
                )
            )
            .values(
                status=WebhookDeliveryStatus.PENDING,
                claimed_at=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        reclaimed = result.rowcount or 0
        if reclaimed:
            webhook_deliveries_reclaimed_total.inc(reclaimed)
            logger.warning("webhook_deliveries_reclaimed", count=reclaimed, cutoff=cutoff.isoformat())
        return reclaimed

    async def get_delivery_status(self, delivery_id: UUID) -> Optional[WebhookDelivery]:
        """
        Get a delivery row by ID.

        Args:
            delivery_id: Webhook delivery UUID

        Returns:
            Webhook delivery or None if not found
        """
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_endpoint_deliveries(self, endpoint_id: UUID, limit: int = 100) -> list[WebhookDelivery]:
        """
        Get the most recent deliveries for an endpoint.

        Args:
            endpoint_id: Webhook endpoint UUID
            limit: Maximum number of rows

        Returns:
            Deliveries, newest first
        """
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.endpoint_id == endpoint_id)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
