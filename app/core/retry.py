# app/core/retry.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Literal, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from app.core.exceptions import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
        Reusable retry wrapper for fallible async operations.

        - "exponential": waits base_delay * 2^(attempt-1) between attempts.
        - "fixed": waits base_delay between every attempt.

        Only exceptions listed in `retry_on` are retried (transient network
        failures by default); anything else propagates on the first attempt.
        The last error is re-raised once attempts are exhausted.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff: Literal["exponential", "fixed"] = "exponential",
        retry_on: Tuple[Type[BaseException], ...] = (TransientNetworkError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff strategy: {backoff}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff = backoff
        self.retry_on = retry_on
        self._sleep = sleep

    def _wait(self):
        if self.backoff == "fixed":
            return wait_fixed(self.base_delay)
        return wait_exponential(multiplier=self.base_delay, exp_base=2, min=0)

    def _log_attempt(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "Attempt %d/%d failed. Retrying in %.2fs... %s",
            retry_state.attempt_number,
            self.max_attempts,
            delay,
            exc,
        )

    async def run(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=self._log_attempt,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation(*args, **kwargs)
        except self.retry_on as e:
            logger.error("All %d attempts failed: %s", self.max_attempts, e)
            raise
        return result


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> T:
    return await RetryPolicy(max_attempts, base_delay, backoff="exponential").run(operation)


async def retry_with_fixed_delay(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 1.0,
) -> T:
    return await RetryPolicy(max_attempts, delay, backoff="fixed").run(operation)
