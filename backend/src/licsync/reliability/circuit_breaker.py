"""Circuit breaker for external service calls.

The breaker is an explicit object holding one of three state variants:

- ``Closed``: calls pass through; consecutive failures are counted
- ``Open``: calls fail fast until the cool-down has elapsed
- ``HalfOpen``: exactly one probe call is admitted

Instances are injected into clients, so each external system gets its own
breaker and tests can drive transitions with a fake clock.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from ..errors import CircuitOpenError, ValidationError
from ..logging import get_context_logger

logger = get_context_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitState(str, Enum):
    """Circuit breaker state names."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class Closed:
    failures: int = 0


@dataclass(frozen=True)
class Open:
    opened_at: float


@dataclass(frozen=True)
class HalfOpen:
    probe_in_flight: bool = False


BreakerState = Closed | Open | HalfOpen


@dataclass
class CircuitBreakerMetrics:
    """Counters exposed on the status endpoint."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """Stops calling a failing dependency and probes for recovery."""

    def __init__(
        self,
        name: str = "external_license_api",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock | None = None,
    ):
        """Initialize the breaker.

        Args:
            name: Dependency name used in errors and logs
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds to stay open before admitting a probe
            clock: Monotonic time source (seconds)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock or time.monotonic
        self._state: BreakerState = Closed()
        self.metrics = CircuitBreakerMetrics()

    @property
    def state(self) -> CircuitState:
        """Current state name, accounting for an elapsed cool-down."""
        state = self._state
        if isinstance(state, Open):
            if self._cooldown_elapsed(state):
                return CircuitState.HALF_OPEN
            return CircuitState.OPEN
        if isinstance(state, HalfOpen):
            return CircuitState.HALF_OPEN
        return CircuitState.CLOSED

    @property
    def failure_count(self) -> int:
        state = self._state
        return state.failures if isinstance(state, Closed) else self.failure_threshold

    def reset(self) -> None:
        """Force the breaker back to closed."""
        self._transition(Closed())

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Execute ``func`` under breaker protection.

        Raises:
            CircuitOpenError: If the call was rejected without running
        """
        self.metrics.total_calls += 1
        self._admit()

        try:
            result = await func()
        except ValidationError:
            # The dependency answered; a bad payload says nothing about its health
            self._release_probe()
            raise
        except Exception:
            self.metrics.failed_calls += 1
            self._on_failure()
            raise
        except BaseException:
            # Cancelled: the call never finished, so the probe slot is freed
            self._release_probe()
            raise

        self.metrics.successful_calls += 1
        self._on_success()
        return result

    def _cooldown_elapsed(self, state: Open) -> bool:
        return self._clock() - state.opened_at >= self.reset_timeout

    def _admit(self) -> None:
        state = self._state

        if isinstance(state, Open):
            if not self._cooldown_elapsed(state):
                self.metrics.rejected_calls += 1
                retry_in = self.reset_timeout - (self._clock() - state.opened_at)
                raise CircuitOpenError(self.name, retry_in)
            state = HalfOpen()

        if isinstance(state, HalfOpen):
            if state.probe_in_flight:
                self.metrics.rejected_calls += 1
                raise CircuitOpenError(self.name, 0.0)
            self._transition(HalfOpen(probe_in_flight=True))

    def _release_probe(self) -> None:
        if isinstance(self._state, HalfOpen):
            self._state = HalfOpen(probe_in_flight=False)

    def _on_success(self) -> None:
        if not isinstance(self._state, Closed) or self._state.failures:
            self._transition(Closed())

    def _on_failure(self) -> None:
        state = self._state

        if isinstance(state, HalfOpen):
            self._transition(Open(opened_at=self._clock()))
            return

        if isinstance(state, Closed):
            failures = state.failures + 1
            if failures >= self.failure_threshold:
                self._transition(Open(opened_at=self._clock()))
            else:
                self._state = Closed(failures=failures)

    def _transition(self, new_state: BreakerState) -> None:
        old_name = self.state
        self._state = new_state
        new_name = self.state
        if old_name != new_name:
            self.metrics.state_changes += 1
            log = logger.warning if new_name == CircuitState.OPEN else logger.info
            log(
                f"Circuit breaker {self.name}: {old_name.value} -> {new_name.value}",
                extra={"breaker": self.name, "from": old_name.value, "to": new_name.value},
            )
