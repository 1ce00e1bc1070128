import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Mapping, Optional, Tuple, Type, TypeVar

from execution.errors import TransientNetworkError, ValidationError


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff shared by every exchange-facing retry."""

    max_attempts: int = 5
    base_delay_s: float = 1.0
    factor: float = 2.0
    max_delay_s: float = 32.0
    jitter_s: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError("retry max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.jitter_s < 0:
            raise ValidationError("retry delays must be non-negative")
        if self.factor < 1.0:
            raise ValidationError("retry factor must be >= 1.0")
        if self.max_delay_s < self.base_delay_s:
            raise ValidationError("retry max_delay_s must be >= base_delay_s")

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> 'RetryPolicy':
        section = section or {}
        return cls(
            max_attempts=int(section.get('max_attempts', cls.max_attempts)),
            base_delay_s=float(section.get('base_delay_s', cls.base_delay_s)),
            factor=float(section.get('factor', cls.factor)),
            max_delay_s=float(section.get('max_delay_s', cls.max_delay_s)),
            jitter_s=float(section.get('jitter_s', cls.jitter_s)),
        )

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based): 1s, 2s, 4s ... capped."""
        delay = min(self.base_delay_s * (self.factor ** max(retry_index, 0)), self.max_delay_s)
        if self.jitter_s:
            delay += random.uniform(0, self.jitter_s)
        return delay

    def delays(self) -> Iterator[float]:
        for index in range(self.max_attempts - 1):
            yield self.delay_for(index)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = 'operation',
    retry_on: Tuple[Type[BaseException], ...] = (TransientNetworkError,),
    should_retry: Optional[Callable[[T], bool]] = None,
    on_retry: Optional[Callable[[int, Any], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` under ``policy``.

    Exceptions listed in ``retry_on`` are retried and re-raised once the
    attempts are exhausted. When ``should_retry`` is given, returned values
    it flags are retried too and the last one is returned on exhaustion.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %s attempts: %s", description, attempt, exc)
                raise
            outcome: Any = exc
        else:
            if should_retry is None or not should_retry(result):
                return result
            if attempt >= policy.max_attempts:
                logger.error("%s still failing after %s attempts: %s", description, attempt, result)
                return result
            outcome = result

        delay = policy.delay_for(attempt - 1)
        logger.warning(
            "%s failed (attempt %s/%s): %s; retrying in %.1fs",
            description,
            attempt,
            policy.max_attempts,
            outcome,
            delay,
        )
        if on_retry is not None:
            on_retry(attempt, outcome)
        await sleep(delay)
