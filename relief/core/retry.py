import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..settings import settings
from .errors import RetriesExhaustedError, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableOperation:
    """Bounded retry with capped exponential backoff.

    The delay after the n-th failed attempt (1-based) is ``base * 2 ** (n - 1)``,
    capped at ``max_seconds``. Errors the classifier rejects propagate on the
    first occurrence. Exhausting ``max_attempts`` raises ``RetriesExhaustedError``
    chained to the last failure.
    """

    def __init__(
        self,
        name: str,
        *,
        classifier: Callable[[BaseException], bool] = is_transient_error,
        max_attempts: int | None = None,
        base_seconds: float | None = None,
        max_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self.classifier = classifier
        self.max_attempts = max(
            int(settings.CHAIN_RETRY_MAX_ATTEMPTS if max_attempts is None else max_attempts), 1
        )
        self.base_seconds = float(settings.CHAIN_RETRY_BASE_SECONDS if base_seconds is None else base_seconds)
        self.max_seconds = float(settings.CHAIN_RETRY_MAX_SECONDS if max_seconds is None else max_seconds)
        self._sleep = sleep or asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_seconds, max=self.max_seconds),
            retry=retry_if_exception(self.classifier),
            before=self._log_attempt,
            before_sleep=self._log_delay,
            sleep=self._sleep,
        )

        # tenacity only awaits callables it recognizes as coroutine functions
        async def _call() -> T:
            return await operation()

        try:
            return await retrying(_call)
        except RetryError as exc:
            last = exc.last_attempt
            cause = last.exception()
            logger.error(
                "retry_exhausted operation=%s attempts=%s error=%s",
                self.name,
                last.attempt_number,
                cause,
            )
            raise RetriesExhaustedError(
                f"{self.name} failed after {last.attempt_number} attempts: {cause}",
                attempts=last.attempt_number,
                cause=cause,
            ) from cause

    def _log_attempt(self, retry_state: RetryCallState) -> None:
        logger.info(
            "retry_attempt operation=%s attempt=%s max_attempts=%s",
            self.name,
            retry_state.attempt_number,
            self.max_attempts,
        )

    def _log_delay(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "retry_scheduled operation=%s attempt=%s delay_seconds=%.1f error=%s",
            self.name,
            retry_state.attempt_number,
            delay,
            error,
        )
