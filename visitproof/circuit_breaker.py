"""
Circuit Breaker for remote dependencies

State machine:

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(recovery_timeout elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN

While OPEN, calls fail immediately with CircuitOpenError without touching the
dependency. Every call, in any state, is raced against `request_timeout`; a
timeout counts as a failure. The timed-out action is not cancelled: it keeps
running in the background and its result is discarded.

One breaker exists per dependency name. Call sites share protection state by
looking breakers up in a CircuitBreakerRegistry.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .logging_config import audit_log

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Breaker state."""
    CLOSED = "CLOSED"         # Normal operation
    OPEN = "OPEN"             # Rejecting calls
    HALF_OPEN = "HALF_OPEN"   # Single trial call in flight


class CircuitOpenError(Exception):
    """Raised when a call is rejected without reaching the dependency."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit {name} is open (retry in {retry_in:.1f}s)")


class CircuitTimeoutError(Exception):
    """Raised when a guarded call exceeds the request timeout."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Circuit {name}: call exceeded {timeout}s")


def _discard_outcome(task: "asyncio.Future") -> None:
    # Retrieve the exception of an abandoned call so it is not reported as
    # never-retrieved.
    if not task.cancelled():
        task.exception()


class CircuitBreaker:
    """
    Guards calls to one named dependency.

    Usage:
        breaker = CircuitBreaker("receipt-ocr", failure_threshold=5)
        result = await breaker.call(lambda: fetch_receipt(...))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.request_timeout = request_timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._trial_in_flight = False

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        previous = self.state
        self.state = new_state
        audit_log.circuit_state_change(self.name, previous.value, new_state.value, self.failure_count)

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _retry_in(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self.last_failure_time))

    def _before_call(self) -> None:
        """Admit or reject a call; may move OPEN -> HALF_OPEN."""
        if self.state == CircuitState.OPEN:
            if not self._recovery_elapsed():
                raise CircuitOpenError(self.name, self._retry_in())
            self._transition(CircuitState.HALF_OPEN)
            self._trial_in_flight = True
        elif self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, self._retry_in())
            self._trial_in_flight = True

    def _on_success(self) -> None:
        self._trial_in_flight = False
        self.failure_count = 0
        self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._trial_in_flight = False
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def _race_timeout(self, action: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(action())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_outcome)
            raise CircuitTimeoutError(self.name, self.request_timeout) from None

    async def call(self, action: Callable[[], Awaitable[T]]) -> T:
        """
        Run `action` under breaker protection.

        Raises:
            CircuitOpenError: the circuit is open (the action was not invoked)
            CircuitTimeoutError: the action exceeded request_timeout
            Exception: whatever the action raised
        """
        self._before_call()
        try:
            result = await self._race_timeout(action)
        except Exception as e:
            self._on_failure()
            logger.warning("Circuit %s call failed (%d/%d): %s",
                           self.name, self.failure_count, self.failure_threshold, e)
            raise
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self.failure_count = 0
        self.last_failure_time = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_in": self._retry_in() if self.state == CircuitState.OPEN else 0.0,
        }


class CircuitBreakerRegistry:
    """One breaker per dependency name; repeated lookups share state."""

    def __init__(self):
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **options: Any) -> CircuitBreaker:
        """
        Return the breaker registered under `name`, creating it on first use.

        Options only apply when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **options)
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def clear(self) -> None:
        self._breakers.clear()


# Process-wide registry used by the service composition root
default_registry = CircuitBreakerRegistry()
