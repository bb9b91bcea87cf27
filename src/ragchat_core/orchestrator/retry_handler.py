"""Retry handler with exponential backoff."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ragchat_core.cancellation import CancellationToken, run_cancellable
from ragchat_core.exceptions import CoreError, ProviderError, classify_error
from ragchat_core.telemetry.logger import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

Classifier = Callable[[BaseException], ProviderError]
SleepFunc = Callable[[float], Awaitable[None]]


class RetryConfig(BaseModel):
    """Retry policy. Delays are in seconds."""

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)

    def delays(self) -> list[float]:
        """Sleep schedule between consecutive attempts."""
        return [
            min(self.initial_delay * self.backoff_factor**n, self.max_delay)
            for n in range(self.max_retries)
        ]


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.kind.retryable


class RetryHandler:
    """Retries an async operation while its failures classify as retryable."""

    def __init__(self, config: RetryConfig | None = None, sleep: SleepFunc | None = None):
        """Initialize retry handler."""
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        func: Callable[..., T | Awaitable[T]],
        *args,
        cancel_token: CancellationToken | None = None,
        classify: Classifier | None = None,
        on_retry: Callable[[ProviderError, int, float], None] | None = None,
        **kwargs,
    ) -> T:
        """Execute ``func`` with retry logic.

        Errors that are not already part of the taxonomy are passed through
        ``classify`` (``classify_error`` by default) before the retry decision.
        Core errors such as ``CircuitOpenError`` are re-raised untouched.
        """
        classifier = classify or classify_error

        async def sleep(delay: float) -> None:
            await run_cancellable(self._sleep(delay), cancel_token)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "retrying_after_error",
                attempt=retry_state.attempt_number,
                max_attempts=self.config.max_retries + 1,
                delay=delay,
                kind=error.kind.value,
                provider=error.provider,
                error=str(error),
            )
            if on_retry:
                on_retry(error, retry_state.attempt_number, delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.config.initial_delay,
                exp_base=self.config.backoff_factor,
                max=self.config.max_delay,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                try:
                    result = func(*args, **kwargs)
                    if inspect.isawaitable(result):
                        result = await run_cancellable(result, cancel_token)
                    return result
                except CoreError:
                    raise
                except Exception as e:
                    raise classifier(e) from e

        # This should never be reached
        raise RuntimeError("Retry loop completed without returning")
