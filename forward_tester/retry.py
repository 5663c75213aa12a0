import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from forward_tester.config import RETRY_BASE_DELAY, RETRY_MAX_DELAY
from forward_tester.errors import NetworkError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float = RETRY_BASE_DELAY, cap: float = RETRY_MAX_DELAY) -> Callable[[int], float]:
    """Delay for retry n (1-based): base * 2**(n-1), capped."""

    def _delay(attempt: int) -> float:
        return min(cap, base * (2 ** max(0, attempt - 1)))

    return _delay


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkError, RateLimited))


@dataclass
class RetryPolicy:
    """
    Bounded retry shared by the market data and order submission paths.

    `max_attempts` counts the first call, so 4 means up to 3 retries.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int, exc: BaseException) -> float:
        delay = self.backoff(attempt)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            delay = max(delay, float(retry_after))
        return delay

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number, retry_state.outcome.exception())

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        on_retry: Optional[Callable[[int, BaseException, float], Awaitable[None] | None]] = None,
    ) -> T:
        # before_sleep is synchronous; the report is delivered from the async sleep
        pending: List[Tuple[int, BaseException, float]] = []

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self.max_attempts} failed "
                f"({type(exc).__name__}: {exc}); retrying in {delay:.2f}s"
            )
            pending.append((retry_state.attempt_number, exc, delay))

        async def _sleep(delay: float) -> None:
            while pending:
                attempt, exc, wait = pending.pop(0)
                if on_retry is not None:
                    maybe = on_retry(attempt, exc, wait)
                    if asyncio.iscoroutine(maybe):
                        await maybe
            await self.sleep(delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.retryable),
            before_sleep=_before_sleep,
            sleep=_sleep,
            reraise=True,
        )
        return await retrying(fn)
