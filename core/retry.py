# core/retry.py
import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
import logging
from util.errors import ProviderRateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_MARKERS = ("429", "rate_limit", "Rate limit")


def is_rate_limited(exc: BaseException) -> bool:
    """
    True for ProviderRateLimited, anything carrying a 429 status, or an error
    message that mentions a rate limit.
    """
    if isinstance(exc, ProviderRateLimited):
        return True
    if getattr(exc, "status_code", None) == 429:
        return True
    msg = str(exc)
    return any(m in msg for m in _RATE_LIMIT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1200
    max_jitter_ms: int = 500

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> int:
        """attempt is 0-based; delay = base * 2^attempt + jitter in [0, max_jitter)."""
        r = rng or random
        jitter = r.randrange(self.max_jitter_ms) if self.max_jitter_ms > 0 else 0
        return self.base_delay_ms * (2**attempt) + jitter


async def with_backoff(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_wait: Optional[Callable[[int, int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
    label: str = "provider",
) -> T:
    """
    Run `call` up to policy.max_attempts times.
    - Rate-limited failure with attempts left: await on_wait(delay_ms, attempt), sleep, retry.
    - Any other failure, or the last attempt failing: re-raise to the caller.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await call()
        except Exception as e:
            if not is_rate_limited(e) or attempt == attempts - 1:
                raise
            delay = policy.delay_ms(attempt, rng)
            logger.warning(
                "retry.rate_limited label=%s attempt=%d delay_ms=%d",
                label,
                attempt + 1,
                delay,
            )
            if on_wait is not None:
                await on_wait(delay, attempt)
            await sleep(delay / 1000.0)
    raise AssertionError("unreachable")
