"""Single delivery attempt: circuit check, signing, HTTP POST, outcome persistence."""
import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import httpx
import structlog
from sqlalchemy import update

from webhook_delivery.config import settings
from webhook_delivery.database import SessionFactory
from webhook_delivery.metrics import webhook_deliveries_total, webhook_delivery_duration_seconds
from webhook_delivery.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from webhook_delivery.services.circuit_breaker import CircuitBreaker
from webhook_delivery.services.signature import HmacSha256Signer, WebhookSigner
from webhook_delivery.utils.sanitize import sanitize_error_message
from webhook_delivery.utils.url_validator import InvalidWebhookUrlError, validate_webhook_url

logger = structlog.get_logger(__name__)

CIRCUIT_OPEN_ERROR = "Circuit breaker open for endpoint"

# Receiver response bodies kept for diagnosis
MAX_RESPONSE_BODY_LENGTH = 10 * 1024


@dataclass(frozen=True)
class DeliveryJob:
    """A claimed delivery row with its endpoint's url and secret embedded."""

    delivery_id: UUID
    endpoint_id: UUID
    url: str
    secret: str = field(repr=False)
    event_type: str
    resource_id: str
    payload: dict[str, Any]
    attempts: int


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt, as persisted on the row."""

    delivery_id: UUID
    status: WebhookDeliveryStatus
    attempts: int
    next_attempt_at: Optional[datetime] = None
    response_code: Optional[int] = None
    error: Optional[str] = None
    response_body: Optional[str] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == WebhookDeliveryStatus.COMPLETED


class DeliveryExecutor:
    """Performs exactly one HTTP attempt for exactly one delivery row."""

    def __init__(
        self,
        session_factory: SessionFactory,
        circuit_breaker: CircuitBreaker,
        signer: Optional[WebhookSigner] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 5,
        retry_base_delay_seconds: float = 60,
        retry_max_delay_seconds: float = 7200,
        retry_jitter_ratio: float = 0.1,
        timeout_seconds: float = 30.0,
        user_agent: str = "WebhookDelivery/1.0",
        allow_private_urls: bool = False,
    ):
        """
        Initialize the executor.

        Args:
            session_factory: Opens the session used to persist the outcome
            circuit_breaker: Per-endpoint failure isolation
            signer: Signature strategy (HMAC-SHA256 by default)
            http_client: Shared client; a short-lived one is created per attempt if omitted
            max_retries: Attempts after which a failed row becomes terminal
            retry_base_delay_seconds: Backoff delay after the first failure
            retry_max_delay_seconds: Upper bound for any backoff delay
            retry_jitter_ratio: Random jitter added to the delay, as a fraction
            timeout_seconds: Per-attempt HTTP timeout
            user_agent: User-Agent header value
            allow_private_urls: Permit loopback/private endpoint URLs
        """
        self.session_factory = session_factory
        self.circuit_breaker = circuit_breaker
        self.signer = signer or HmacSha256Signer()
        self.http_client = http_client
        self.max_retries = max_retries
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.retry_jitter_ratio = retry_jitter_ratio
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.allow_private_urls = allow_private_urls

    @classmethod
    def from_settings(
        cls,
        session_factory: SessionFactory,
        circuit_breaker: CircuitBreaker,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "DeliveryExecutor":
        """Build an executor configured from application settings."""
        return cls(
            session_factory,
            circuit_breaker,
            http_client=http_client,
            max_retries=settings.webhook_max_retries,
            retry_base_delay_seconds=settings.webhook_retry_base_delay_seconds,
            retry_max_delay_seconds=settings.webhook_retry_max_delay_seconds,
            retry_jitter_ratio=settings.webhook_retry_jitter_ratio,
            timeout_seconds=settings.webhook_timeout_seconds,
            user_agent=settings.webhook_user_agent,
            allow_private_urls=settings.webhook_allow_private_urls,
        )

    def backoff_seconds(self, attempts: int) -> float:
        """
        Delay before the next attempt after ``attempts`` failures.

        Exponential in the attempt number, plus jitter, capped at the maximum.
        """
        base = self.retry_base_delay_seconds * (2 ** max(attempts - 1, 0))
        jitter = random.uniform(0, base * self.retry_jitter_ratio) if self.retry_jitter_ratio else 0.0
        return min(self.retry_max_delay_seconds, base + jitter)

    async def deliver(self, job: DeliveryJob) -> DeliveryResult:
        """
        Attempt delivery of one claimed row and persist the outcome.

        Args:
            job: Claimed delivery with endpoint url and secret

        Returns:
            Result written to the delivery row
        """
        attempts = job.attempts + 1

        if await self.circuit_breaker.is_circuit_open(job.endpoint_id):
            logger.warning(
                "webhook_skipped_circuit_open",
                delivery_id=str(job.delivery_id),
                endpoint_id=str(job.endpoint_id),
            )
            return await self._handle_failure(job, attempts, None, CIRCUIT_OPEN_ERROR, outcome="circuit_open")

        try:
            validate_webhook_url(job.url, allow_private=self.allow_private_urls)
        except InvalidWebhookUrlError as e:
            logger.error(
                "webhook_url_rejected",
                delivery_id=str(job.delivery_id),
                endpoint_id=str(job.endpoint_id),
                error=str(e),
            )
            result = await self._persist(
                DeliveryResult(
                    delivery_id=job.delivery_id,
                    status=WebhookDeliveryStatus.FAILED,
                    attempts=attempts,
                    error=sanitize_error_message(f"Invalid webhook URL: {e}"),
                )
            )
            await self.circuit_breaker.record_failure(job.endpoint_id)
            webhook_deliveries_total.labels(outcome="rejected").inc()
            return result

        body = json.dumps(job.payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Webhook-Id": str(job.delivery_id),
            "X-Webhook-Event": job.event_type,
        }
        headers.update(self.signer.sign(body, job.secret, int(time.time())))

        started = time.perf_counter()
        try:
            # One deadline for the whole attempt; httpx timeouts apply per phase
            async with asyncio.timeout(self.timeout_seconds):
                response = await self._post(job.url, body, headers)
        except (httpx.TimeoutException, TimeoutError):
            return await self._record_attempt_failure(
                job, attempts, None, f"Request timeout after {self.timeout_seconds}s"
            )
        except httpx.HTTPError as e:
            return await self._record_attempt_failure(job, attempts, None, f"HTTP error: {str(e) or type(e).__name__}")
        except Exception as e:
            logger.error("webhook_unexpected_error", delivery_id=str(job.delivery_id), error=str(e), exc_info=True)
            return await self._record_attempt_failure(job, attempts, None, f"Unexpected error: {e}")
        finally:
            webhook_delivery_duration_seconds.observe(time.perf_counter() - started)

        response_body = response.text[:MAX_RESPONSE_BODY_LENGTH]

        if 200 <= response.status_code < 300:
            result = await self._persist(
                DeliveryResult(
                    delivery_id=job.delivery_id,
                    status=WebhookDeliveryStatus.COMPLETED,
                    attempts=attempts,
                    response_code=response.status_code,
                    response_body=response_body,
                )
            )
            await self.circuit_breaker.record_success(job.endpoint_id)
            webhook_deliveries_total.labels(outcome="completed").inc()
            logger.info(
                "webhook_delivered",
                delivery_id=str(job.delivery_id),
                endpoint_id=str(job.endpoint_id),
                event_type=job.event_type,
                attempts=attempts,
                status_code=response.status_code,
            )
            return result

        return await self._record_attempt_failure(
            job,
            attempts,
            response.status_code,
            f"HTTP {response.status_code}: {response.reason_phrase}",
            response_body=response_body,
        )

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(url, content=body, headers=headers, timeout=self.timeout_seconds)

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, content=body, headers=headers)

    async def _record_attempt_failure(
        self,
        job: DeliveryJob,
        attempts: int,
        response_code: Optional[int],
        error: str,
        response_body: Optional[str] = None,
    ) -> DeliveryResult:
        result = await self._handle_failure(job, attempts, response_code, error, response_body=response_body)
        await self.circuit_breaker.record_failure(job.endpoint_id)
        return result

    async def _handle_failure(
        self,
        job: DeliveryJob,
        attempts: int,
        response_code: Optional[int],
        error: str,
        outcome: Optional[str] = None,
        response_body: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Mark the row failed and schedule a retry, or make it terminal.

        Args:
            job: Delivery being attempted
            attempts: Attempt count including this one
            response_code: HTTP status, if a response arrived
            error: Raw error text (sanitized here)
            outcome: Metrics label override
            response_body: Truncated receiver response, if one arrived
        """
        if attempts < self.max_retries:
            delay = self.backoff_seconds(attempts)
            result = DeliveryResult(
                delivery_id=job.delivery_id,
                status=WebhookDeliveryStatus.FAILED,
                attempts=attempts,
                next_attempt_at=datetime.utcnow() + timedelta(seconds=delay),
                response_code=response_code,
                error=sanitize_error_message(error),
                response_body=response_body,
            )
            logger.warning(
                "webhook_retry_scheduled",
                delivery_id=str(job.delivery_id),
                endpoint_id=str(job.endpoint_id),
                attempts=attempts,
                next_retry_in_seconds=round(delay, 1),
                error=result.error,
            )
            label = outcome or "retry_scheduled"
        else:
            result = DeliveryResult(
                delivery_id=job.delivery_id,
                status=WebhookDeliveryStatus.FAILED,
                attempts=attempts,
                response_code=response_code,
                error=sanitize_error_message(f"Max retries ({self.max_retries}) exceeded: {error}"),
                response_body=response_body,
            )
            logger.error(
                "webhook_permanently_failed",
                delivery_id=str(job.delivery_id),
                endpoint_id=str(job.endpoint_id),
                attempts=attempts,
                error=result.error,
            )
            label = outcome or "exhausted"

        webhook_deliveries_total.labels(outcome=label).inc()
        return await self._persist(result)

    async def _persist(self, result: DeliveryResult) -> DeliveryResult:
        """
        Write the outcome onto the row, provided this attempt still owns it.

        A row that left DELIVERING in the meantime (reclaimed and picked up
        by another drain) is not touched.
        """
        now = datetime.utcnow()
        values: dict[str, Any] = {
            "status": result.status,
            "attempts": result.attempts,
            "next_attempt_at": result.next_attempt_at,
            "last_attempt_at": now,
            "claimed_at": None,
            "response_code": result.response_code,
            "response_body": result.response_body,
            "last_error": result.error,
            "updated_at": now,
        }
        if result.succeeded:
            values["completed_at"] = now

        async with self.session_factory() as db:
            updated = await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == result.delivery_id,
                    WebhookDelivery.status == WebhookDeliveryStatus.DELIVERING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if not updated.rowcount:
            logger.warning(
                "webhook_outcome_discarded",
                delivery_id=str(result.delivery_id),
                status=result.status.value,
                attempts=result.attempts,
            )

        return result
