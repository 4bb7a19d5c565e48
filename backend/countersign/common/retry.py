import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from countersign.common.context import RequestContext
from countersign.common.errors import RETRYABLE_PROVIDER_ERRORS, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_ms: int = 200
    factor: float = 2.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.send_retry_attempts,
            base_ms=settings.send_retry_base_ms,
            factor=settings.send_retry_factor,
            jitter=settings.send_retry_jitter,
        )

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait after the given 1-based failed attempt."""
        rng = rng or random
        base = (self.base_ms / 1000.0) * (self.factor ** (attempt - 1))
        return base * (1 + rng.uniform(-self.jitter, self.jitter))


async def retry_provider_call(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    ctx: RequestContext,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``call`` retrying ProviderUnavailable/ProviderTimeout with backoff.

    ProviderReject and everything else propagates immediately. A backoff that
    would overrun the request deadline surfaces as ProviderTimeout.
    """
    attempt = 0
    while True:
        attempt += 1
        ctx.ensure_active()
        try:
            return await call()
        except RETRYABLE_PROVIDER_ERRORS as exc:
            if attempt >= policy.attempts:
                raise
            delay = policy.delay(attempt)
            remaining = ctx.remaining()
            if remaining is not None and delay >= remaining:
                raise ProviderTimeout("deadline exceeded while retrying signing provider") from exc
            logger.warning(
                "Signing provider attempt %d/%d failed (%s); retrying in %.3fs",
                attempt,
                policy.attempts,
                exc.code.value,
                delay,
            )
            await sleep(delay)
