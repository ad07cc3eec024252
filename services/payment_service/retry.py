import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from shared.config.settings import settings
from shared.observability.metrics import ecomm_gateway_retries_total

from .gateway import GatewayError

logger = structlog.get_logger(__name__)


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff for outbound calls."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (GatewayError,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.base_delay * (self.multiplier ** (attempt - 1))

    async def run(self, operation: Callable[..., Awaitable], *args, **kwargs):
        attempt = 1
        while True:
            try:
                return await operation(*args, **kwargs)
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error("retry_exhausted", attempts=attempt, error=str(exc))
                    raise
                delay = self.delay_for(attempt)
                ecomm_gateway_retries_total.inc()
                logger.warning("retrying_operation", attempt=attempt, delay=delay, error=str(exc))
                await self.sleep(delay)
                attempt += 1


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.max_retry_attempts, base_delay=settings.retry_delay_seconds)
