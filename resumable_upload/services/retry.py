# services/retry.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple, TypeVar

import httpx

from ..exceptions import PausedError, TransportError, UploadCancelledError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for raw data-transfer calls.

    Backend callbacks (signing, create/list/complete/abort) are never
    run through this policy.
    """

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential: bool = True
    retry_delays_ms: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be non-negative")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        if self.retry_delays_ms is not None:
            if any(delay < 0 for delay in self.retry_delays_ms):
                raise ValueError("retry delays must be non-negative")
            object.__setattr__(self, "retry_delays_ms", tuple(self.retry_delays_ms))

    @classmethod
    def with_delays(cls, delays_ms: Sequence[int]) -> "RetryPolicy":
        """One retry per entry, e.g. [0, 1000, 3000, 5000]"""
        return cls(max_retries=len(delays_ms), retry_delays_ms=tuple(delays_ms), exponential=False)

    def calculate_delay(self, attempt: int) -> int:
        """
        Delay in milliseconds before retry number `attempt` (1-based).

        Attempt 0 is the first try and is never delayed. An explicit
        delay table repeats its last value beyond its length.
        """
        if attempt <= 0:
            return 0

        if self.retry_delays_ms:
            index = min(attempt - 1, len(self.retry_delays_ms) - 1)
            return self.retry_delays_ms[index]

        if not self.exponential:
            return self.initial_delay_ms

        return min(self.initial_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        if isinstance(error, TransportError):
            return error.retryable
        return isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: Optional[CancellationToken] = None,
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Run `operation` until it succeeds or the retry budget is spent.

        Pause and cancellation propagate immediately and do not consume
        the budget.
        """
        should_retry = should_retry or self.is_retryable
        attempt = 0

        while True:
            if token is not None:
                token.throw_if_cancelled()
            try:
                return await operation()
            except (PausedError, UploadCancelledError):
                raise
            except Exception as e:
                if token is not None and token.is_cancelled:
                    raise token.error() from e

                attempt += 1
                if not should_retry(e) or attempt > self.max_retries:
                    raise

                delay_ms = self.calculate_delay(attempt)
                logger.warning(f"Retry {attempt}/{self.max_retries} in {delay_ms}ms after error: {e}")
                if on_retry is not None:
                    on_retry(attempt, e)

                if token is not None:
                    await token.guard(asyncio.sleep(delay_ms / 1000))
                else:
                    await asyncio.sleep(delay_ms / 1000)
