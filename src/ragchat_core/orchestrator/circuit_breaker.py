"""Circuit breaker implementation for fault tolerance."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from ragchat_core.exceptions import CircuitOpenError, OperationCancelledError
from ragchat_core.telemetry.logger import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration. ``recovery_timeout`` is in seconds."""

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout: float = Field(default=300.0, ge=0)
    half_open_max_calls: int = Field(default=1, ge=1)


class CircuitBreaker:
    """Per-provider breaker: stops calling a failing provider, then tries it again.

    State changes happen synchronously between awaits, so a single event loop
    needs no lock around them.
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker."""
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self.opened_until: float | None = None
        self.half_open_calls = 0

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute ``func`` with circuit breaker protection."""
        self._before_call()

        try:
            result = await func(*args, **kwargs)
        except (asyncio.CancelledError, OperationCancelledError):
            self._on_cancel()
            raise
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def _before_call(self) -> None:
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition(CircuitState.HALF_OPEN)
                self.half_open_calls = 0
            else:
                raise CircuitOpenError(self.name, retry_after=self._remaining_cooldown())

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                raise CircuitOpenError(self.name)
            self.half_open_calls += 1

    def _on_success(self) -> None:
        """Handle successful call."""
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        self.failure_count = 0
        self.opened_until = None
        self.half_open_calls = 0

    def _on_failure(self, exception: Exception) -> None:
        """Handle failed call."""
        now = self._clock()
        self.failure_count += 1
        self.last_failure_time = now

        if self.state == CircuitState.HALF_OPEN:
            self._open(now)
        elif self.failure_count >= self.config.failure_threshold:
            self._open(now)

        logger.debug(
            "circuit_failure_recorded",
            breaker=self.name,
            state=self.state.value,
            failure_count=self.failure_count,
            error=type(exception).__name__,
        )

    def _on_cancel(self) -> None:
        # an abandoned trial call leaves the breaker open but ready for another trial
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.opened_until = self._clock()
            self.half_open_calls = 0

    def _open(self, now: float) -> None:
        self.opened_until = now + self.config.recovery_timeout
        self.half_open_calls = 0
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        logger.info(
            "circuit_state_changed",
            breaker=self.name,
            from_state=self.state.value,
            to_state=new_state.value,
            failure_count=self.failure_count,
        )
        self.state = new_state

    def _should_attempt_reset(self) -> bool:
        """Check if circuit should attempt reset."""
        if self.opened_until is None:
            return True
        return self._clock() >= self.opened_until

    def _remaining_cooldown(self) -> float | None:
        if self.opened_until is None:
            return None
        return max(0.0, self.opened_until - self._clock())

    @property
    def allows_calls(self) -> bool:
        """Whether a call made now would be admitted, without changing state."""
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            return self._should_attempt_reset()
        return self.half_open_calls < self.config.half_open_max_calls

    @property
    def is_open(self) -> bool:
        """Check if circuit is open."""
        return self.state == CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed."""
        return self.state == CircuitState.CLOSED

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "opened_until": self.opened_until,
        }

    def reset(self) -> None:
        """Reset circuit breaker."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.opened_until = None
        self.half_open_calls = 0
