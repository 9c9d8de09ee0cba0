"""Integration tests for webhook fan-out, queue draining and status reads."""
import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import func, select

from webhook_delivery.database import SessionFactory
from webhook_delivery.models import WebhookDelivery, WebhookDeliveryStatus
from webhook_delivery.services.circuit_breaker import CircuitBreaker
from webhook_delivery.services.delivery_executor import DeliveryExecutor
from webhook_delivery.services.webhook_service import WebhookDeliveryService, WebhookValidationError

from tests.utils.factories import EventDataFactory, add_delivery, add_endpoint
from tests.utils.fakes import RecordingTransport


def _executor(session_factory: SessionFactory, client: httpx.AsyncClient, max_retries: int = 5) -> DeliveryExecutor:
    return DeliveryExecutor(
        session_factory,
        CircuitBreaker(None),
        http_client=client,
        max_retries=max_retries,
        retry_jitter_ratio=0,
    )


async def _deliveries(session_factory: SessionFactory) -> list[WebhookDelivery]:
    async with session_factory() as db:
        result = await db.execute(select(WebhookDelivery).order_by(WebhookDelivery.created_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_queue_fans_out_to_subscribed_endpoints(session_factory: SessionFactory) -> None:
    """Test that one row is created per enabled endpoint subscribed to the event type."""
    owner_id = "acct_fanout"
    async with session_factory() as db:
        specific = await add_endpoint(db, owner_id=owner_id, events=["incident.created"])
        wildcard = await add_endpoint(db, owner_id=owner_id, events=["*"])
        await add_endpoint(db, owner_id=owner_id, events=["incident.resolved"])
        await add_endpoint(db, owner_id=owner_id, events=["*"], enabled=False)
        await add_endpoint(db, owner_id="acct_other", events=["*"])

    data = EventDataFactory.create()
    async with session_factory() as db:
        created = await WebhookDeliveryService(db).queue_webhook(owner_id, "incident.created", data)
        await db.commit()

    assert created == 2

    rows = await _deliveries(session_factory)
    assert {row.endpoint_id for row in rows} == {specific.id, wildcard.id}
    for row in rows:
        assert row.status == WebhookDeliveryStatus.PENDING
        assert row.attempts == 0
        assert row.resource_id == data["id"]
        assert row.payload["type"] == "incident.created"
        assert row.payload["id"].startswith("evt_")
        assert row.payload["data"]["id"] == data["id"]
    # Every endpoint receives the same envelope
    assert rows[0].payload == rows[1].payload


@pytest.mark.asyncio
async def test_queue_is_idempotent(session_factory: SessionFactory) -> None:
    """Test that queuing the same event for the same resource twice creates no duplicates."""
    async with session_factory() as db:
        endpoint = await add_endpoint(db, owner_id="acct_idem")

    data = EventDataFactory.create()
    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        first = await service.queue_webhook("acct_idem", "incident.created", data)
        second = await service.queue_webhook("acct_idem", "incident.created", data)
        await db.commit()

    async with session_factory() as db:
        third = await WebhookDeliveryService(db).queue_webhook("acct_idem", "incident.created", data)
        await db.commit()

    assert (first, second, third) == (1, 0, 0)
    rows = await _deliveries(session_factory)
    assert len(rows) == 1
    assert rows[0].endpoint_id == endpoint.id


@pytest.mark.asyncio
async def test_queue_distinguishes_event_types_and_resources(session_factory: SessionFactory) -> None:
    """Test that the idempotency key covers event type and resource, not just the endpoint."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_keys")

    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        counts = [
            await service.queue_webhook("acct_keys", "incident.created", {"id": "inc_1"}),
            await service.queue_webhook("acct_keys", "incident.resolved", {"id": "inc_1"}),
            await service.queue_webhook("acct_keys", "incident.created", {"id": "inc_2"}),
        ]
        await db.commit()

    assert counts == [1, 1, 1]


@pytest.mark.asyncio
async def test_queue_resource_id_resolution(session_factory: SessionFactory) -> None:
    """Test that an explicit resource id wins over the data fields."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_resolve")

    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        await service.queue_webhook("acct_resolve", "a.created", {"id": "from_id"}, resource_id="explicit")
        await service.queue_webhook("acct_resolve", "b.created", {"resource_id": "from_resource_id"})
        await db.commit()

    rows = await _deliveries(session_factory)
    assert {(row.event_type, row.resource_id) for row in rows} == {
        ("a.created", "explicit"),
        ("b.created", "from_resource_id"),
    }


@pytest.mark.asyncio
async def test_queue_without_resource_id_raises(session_factory: SessionFactory) -> None:
    """Test that events without a resource identity are rejected."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_noid")

    async with session_factory() as db:
        with pytest.raises(WebhookValidationError):
            await WebhookDeliveryService(db).queue_webhook("acct_noid", "incident.created", {"title": "x"})

    assert await _deliveries(session_factory) == []


@pytest.mark.asyncio
async def test_queue_without_subscribers_returns_zero(session_factory: SessionFactory) -> None:
    """Test that an owner with no matching endpoints gets no rows."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_quiet", events=["invoice.paid"])

    async with session_factory() as db:
        created = await WebhookDeliveryService(db).queue_webhook(
            "acct_quiet", "incident.created", EventDataFactory.create()
        )
        await db.commit()

    assert created == 0
    assert await _deliveries(session_factory) == []


@pytest.mark.asyncio
async def test_queue_joins_caller_transaction(session_factory: SessionFactory) -> None:
    """Test that queued rows disappear when the caller rolls back."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_tx")

    async with session_factory() as db:
        created = await WebhookDeliveryService(db).queue_webhook(
            "acct_tx", "incident.created", EventDataFactory.create()
        )
        await db.rollback()

    assert created == 1
    assert await _deliveries(session_factory) == []


@pytest.mark.asyncio
async def test_process_queue_delivers_pending_rows(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that a drain claims due rows and completes them."""
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        for _ in range(3):
            await add_delivery(db, endpoint.id)

    async with session_factory() as db:
        claimed = await WebhookDeliveryService(db, executor=_executor(session_factory, http_client)).process_queue()

    assert claimed == 3
    assert len(transport.requests) == 3
    rows = await _deliveries(session_factory)
    assert all(row.status == WebhookDeliveryStatus.COMPLETED for row in rows)
    assert all(row.attempts == 1 for row in rows)


@pytest.mark.asyncio
async def test_process_queue_respects_limit(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that a drain claims at most the requested number of rows."""
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        for _ in range(5):
            await add_delivery(db, endpoint.id)

    async with session_factory() as db:
        service = WebhookDeliveryService(db, executor=_executor(session_factory, http_client))
        claimed = await service.process_queue(concurrency_limit=2)

    assert claimed == 2
    rows = await _deliveries(session_factory)
    assert sum(row.status == WebhookDeliveryStatus.PENDING for row in rows) == 3


@pytest.mark.asyncio
async def test_concurrent_drains_never_share_rows(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that overlapping drains claim disjoint sets of rows."""
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        for _ in range(15):
            await add_delivery(db, endpoint.id)

    async def drain() -> int:
        async with session_factory() as db:
            service = WebhookDeliveryService(db, executor=_executor(session_factory, http_client))
            return await service.process_queue(concurrency_limit=10)

    claimed = await asyncio.gather(drain(), drain())

    assert sum(claimed) == 15
    delivered_ids = [request.headers["X-Webhook-Id"] for request in transport.requests]
    assert len(delivered_ids) == 15
    assert len(set(delivered_ids)) == 15


@pytest.mark.asyncio
async def test_process_queue_skips_rows_not_yet_due(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that failed rows wait for their scheduled time and exhausted rows are never picked."""
    now = datetime.utcnow()
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        due = await add_delivery(
            db, endpoint.id, status=WebhookDeliveryStatus.FAILED, attempts=1, next_attempt_at=now - timedelta(seconds=5)
        )
        await add_delivery(
            db, endpoint.id, status=WebhookDeliveryStatus.FAILED, attempts=1, next_attempt_at=now + timedelta(hours=1)
        )
        await add_delivery(
            db, endpoint.id, status=WebhookDeliveryStatus.FAILED, attempts=5, next_attempt_at=now - timedelta(hours=1)
        )
        await add_delivery(db, endpoint.id, status=WebhookDeliveryStatus.FAILED, attempts=2, next_attempt_at=None)
        await add_delivery(db, endpoint.id, status=WebhookDeliveryStatus.COMPLETED, attempts=1)
        await add_delivery(db, endpoint.id, status=WebhookDeliveryStatus.DELIVERING, claimed_at=now)

    async with session_factory() as db:
        claimed = await WebhookDeliveryService(db, executor=_executor(session_factory, http_client)).process_queue()

    assert claimed == 1
    assert [request.headers["X-Webhook-Id"] for request in transport.requests] == [str(due.id)]


@pytest.mark.asyncio
async def test_exhausted_rows_stay_failed_after_drains(session_factory: SessionFactory) -> None:
    """Test that a row failing every attempt ends terminal and is no longer claimed."""
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        delivery = await add_delivery(db, endpoint.id)

    failing = RecordingTransport(status_code=500)
    async with httpx.AsyncClient(transport=failing) as client:
        executor = _executor(session_factory, client, max_retries=3)
        for _ in range(4):
            async with session_factory() as db:
                # Make any scheduled retry due immediately
                await db.execute(
                    WebhookDelivery.__table__.update()
                    .where(WebhookDelivery.next_attempt_at.isnot(None))
                    .values(next_attempt_at=datetime.utcnow() - timedelta(seconds=1))
                )
                await db.commit()
            async with session_factory() as db:
                await WebhookDeliveryService(db, executor=executor).process_queue()

    assert len(failing.requests) == 3

    async with session_factory() as db:
        row = await WebhookDeliveryService(db).get_delivery_status(delivery.id)

    assert row.status == WebhookDeliveryStatus.FAILED
    assert row.attempts == 3
    assert row.next_attempt_at is None
    assert row.last_error.startswith("Max retries (3) exceeded")


@pytest.mark.asyncio
async def test_disabled_endpoint_closes_claimed_rows(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that rows for disabled or removed endpoints fail terminally without a request."""
    async with session_factory() as db:
        disabled = await add_endpoint(db, enabled=False)
        from_disabled = await add_delivery(db, disabled.id)
        orphan = await add_delivery(db, uuid4())

    async with session_factory() as db:
        claimed = await WebhookDeliveryService(db, executor=_executor(session_factory, http_client)).process_queue()

    assert claimed == 2
    assert transport.requests == []

    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        disabled_row = await service.get_delivery_status(from_disabled.id)
        orphan_row = await service.get_delivery_status(orphan.id)

    assert disabled_row.status == WebhookDeliveryStatus.FAILED
    assert disabled_row.next_attempt_at is None
    assert disabled_row.last_error == "Webhook endpoint is disabled"
    assert orphan_row.status == WebhookDeliveryStatus.FAILED
    assert orphan_row.last_error == "Webhook endpoint no longer exists"


@pytest.mark.asyncio
async def test_process_queue_requires_executor(db_session) -> None:
    """Test that draining without an executor is a programming error."""
    with pytest.raises(RuntimeError):
        await WebhookDeliveryService(db_session).process_queue()


@pytest.mark.asyncio
async def test_reclaim_returns_stuck_rows_to_queue(session_factory: SessionFactory) -> None:
    """Test that only claims older than the cutoff are released."""
    now = datetime.utcnow()
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        stuck = await add_delivery(
            db, endpoint.id, status=WebhookDeliveryStatus.DELIVERING, claimed_at=now - timedelta(minutes=30)
        )
        fresh = await add_delivery(
            db, endpoint.id, status=WebhookDeliveryStatus.DELIVERING, claimed_at=now - timedelta(seconds=10)
        )

    async with session_factory() as db:
        reclaimed = await WebhookDeliveryService(db).reclaim_stuck_deliveries(stuck_after_seconds=600)
        await db.commit()

    assert reclaimed == 1

    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        stuck_row = await service.get_delivery_status(stuck.id)
        fresh_row = await service.get_delivery_status(fresh.id)

    assert stuck_row.status == WebhookDeliveryStatus.PENDING
    assert stuck_row.claimed_at is None
    assert stuck_row.attempts == 0
    assert fresh_row.status == WebhookDeliveryStatus.DELIVERING


@pytest.mark.asyncio
async def test_get_endpoint_deliveries_newest_first(session_factory: SessionFactory) -> None:
    """Test that endpoint history is ordered newest first and limited."""
    now = datetime.utcnow()
    async with session_factory() as db:
        endpoint = await add_endpoint(db)
        other = await add_endpoint(db)
        rows = [
            await add_delivery(db, endpoint.id, created_at=now - timedelta(minutes=offset))
            for offset in (30, 20, 10)
        ]
        await add_delivery(db, other.id)

    async with session_factory() as db:
        service = WebhookDeliveryService(db)
        history = await service.get_endpoint_deliveries(endpoint.id)
        limited = await service.get_endpoint_deliveries(endpoint.id, limit=2)
        missing = await service.get_delivery_status(uuid4())

    assert [d.id for d in history] == [rows[2].id, rows[1].id, rows[0].id]
    assert [d.id for d in limited] == [rows[2].id, rows[1].id]
    assert missing is None


@pytest.mark.asyncio
async def test_queue_then_drain_end_to_end(
    session_factory: SessionFactory,
    transport: RecordingTransport,
    http_client: httpx.AsyncClient,
) -> None:
    """Test that a queued event reaches every subscribed endpoint exactly once."""
    async with session_factory() as db:
        await add_endpoint(db, owner_id="acct_e2e")
        await add_endpoint(db, owner_id="acct_e2e", events=["incident.created"])

    async with session_factory() as db:
        await WebhookDeliveryService(db).queue_webhook("acct_e2e", "incident.created", EventDataFactory.create())
        await db.commit()

    executor = _executor(session_factory, http_client)
    for _ in range(2):
        async with session_factory() as db:
            await WebhookDeliveryService(db, executor=executor).process_queue()

    assert len(transport.requests) == 2
    async with session_factory() as db:
        result = await db.execute(
            select(func.count())
            .select_from(WebhookDelivery)
            .where(WebhookDelivery.status == WebhookDeliveryStatus.COMPLETED)
        )
        assert result.scalar_one() == 2
