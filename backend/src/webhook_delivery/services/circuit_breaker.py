"""Per-endpoint circuit breaker backed by Redis.

The breaker is an advisory signal. It fails open: when Redis is missing or
unreachable every circuit reads as closed and failure/success bookkeeping
becomes a no-op. Losing breaker state only weakens isolation between
endpoints; delivery outcomes live in the database.
"""
import time
from typing import Any, Callable
from uuid import UUID

import structlog

from webhook_delivery.config import settings

logger = structlog.get_logger(__name__)

# KEYS[1] = failure counter, KEYS[2] = open marker
# ARGV[1] = counter ttl (s), ARGV[2] = threshold, ARGV[3] = opened-at (ms), ARGV[4] = cooldown (ms)
RECORD_FAILURE_SCRIPT = """
local threshold = tonumber(ARGV[2])
local failures = redis.call('INCR', KEYS[1])
if failures > threshold and redis.call('EXISTS', KEYS[2]) == 0 then
    redis.call('SET', KEYS[1], 1)
    failures = 1
end
redis.call('EXPIRE', KEYS[1], ARGV[1])
if failures >= threshold and redis.call('EXISTS', KEYS[2]) == 0 then
    redis.call('SET', KEYS[2], ARGV[3], 'PX', ARGV[4])
end
return failures
"""


def failures_key(endpoint_id: UUID | str) -> str:
    """Redis key holding the consecutive failure counter."""
    return f"circuit:failures:{endpoint_id}"


def open_key(endpoint_id: UUID | str) -> str:
    """Redis key holding the opened-at marker (epoch milliseconds)."""
    return f"circuit:open:{endpoint_id}"


class CircuitBreaker:
    """Tracks consecutive delivery failures per endpoint."""

    def __init__(
        self,
        redis: Any | None,
        failure_threshold: int = 10,
        cooldown_seconds: int = 300,
        failure_ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the circuit breaker.

        Args:
            redis: ``redis.asyncio.Redis`` client, or None to disable the breaker
            failure_threshold: Consecutive failures that open the circuit
            cooldown_seconds: How long an open circuit stays open
            failure_ttl_seconds: Lifetime of the failure counter between failures
            clock: Returns current epoch seconds
        """
        self.redis = redis
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.failure_ttl_seconds = failure_ttl_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, redis: Any | None) -> "CircuitBreaker":
        """Build a breaker configured from application settings."""
        return cls(
            redis,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
            failure_ttl_seconds=settings.circuit_breaker_failure_ttl_seconds,
        )

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def is_circuit_open(self, endpoint_id: UUID | str) -> bool:
        """
        Check whether deliveries to an endpoint should be skipped.

        An open marker older than the cooldown is cleared together with the
        failure counter, so the next failure starts counting from one.

        Args:
            endpoint_id: Webhook endpoint ID

        Returns:
            True if the circuit is open, False if closed or state is unavailable
        """
        if self.redis is None:
            return False

        try:
            opened_at = await self.redis.get(open_key(endpoint_id))
            if opened_at is None:
                return False

            if self._now_ms() - int(opened_at) >= self.cooldown_seconds * 1000:
                await self.redis.delete(open_key(endpoint_id), failures_key(endpoint_id))
                logger.info("circuit_breaker_reset", endpoint_id=str(endpoint_id))
                return False

            return True

        except Exception as e:
            logger.warning("circuit_breaker_check_failed", endpoint_id=str(endpoint_id), error=str(e))
            return False

    async def record_failure(self, endpoint_id: UUID | str) -> None:
        """
        Count a failed delivery and open the circuit at the threshold.

        Uses a single Lua script so concurrent workers cannot lose increments
        or open the circuit twice. Falls back to separate commands when
        scripting is unavailable.

        Args:
            endpoint_id: Webhook endpoint ID
        """
        if self.redis is None:
            return

        try:
            failures = await self.redis.eval(
                RECORD_FAILURE_SCRIPT,
                2,
                failures_key(endpoint_id),
                open_key(endpoint_id),
                self.failure_ttl_seconds,
                self.failure_threshold,
                self._now_ms(),
                self.cooldown_seconds * 1000,
            )
        except Exception as e:
            logger.debug("circuit_breaker_script_unavailable", endpoint_id=str(endpoint_id), error=str(e))
            try:
                failures = await self._record_failure_non_atomic(endpoint_id)
            except Exception as fallback_error:
                logger.warning(
                    "circuit_breaker_record_failure_failed",
                    endpoint_id=str(endpoint_id),
                    error=str(fallback_error),
                )
                return

        if int(failures) == self.failure_threshold:
            logger.warning(
                "circuit_breaker_opened",
                endpoint_id=str(endpoint_id),
                failures=int(failures),
                cooldown_seconds=self.cooldown_seconds,
            )

    async def _record_failure_non_atomic(self, endpoint_id: UUID | str) -> int:
        # Same steps as RECORD_FAILURE_SCRIPT; concurrent writers may over- or under-count.
        fail_key = failures_key(endpoint_id)
        marker_key = open_key(endpoint_id)

        failures = int(await self.redis.incr(fail_key))
        if failures > self.failure_threshold and not await self.redis.exists(marker_key):
            await self.redis.set(fail_key, 1)
            failures = 1
        await self.redis.expire(fail_key, self.failure_ttl_seconds)

        if failures >= self.failure_threshold and not await self.redis.exists(marker_key):
            await self.redis.set(marker_key, self._now_ms(), px=self.cooldown_seconds * 1000)

        return failures

    async def record_success(self, endpoint_id: UUID | str) -> None:
        """
        Close the circuit after a successful delivery.

        Args:
            endpoint_id: Webhook endpoint ID
        """
        if self.redis is None:
            return

        try:
            await self.redis.delete(failures_key(endpoint_id), open_key(endpoint_id))
        except Exception as e:
            logger.warning("circuit_breaker_record_success_failed", endpoint_id=str(endpoint_id), error=str(e))
