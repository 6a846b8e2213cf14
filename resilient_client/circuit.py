"""Circuit breaker pattern for fault tolerance."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .errors import ErrorKind, TypedError
from .log import get_logger

T = TypeVar("T")

logger = get_logger("circuit")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Circuit tripped, requests fail fast
    HALF_OPEN = "half_open"  # One trial request tests recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: float = 60.0  # Seconds in OPEN before a trial call


class CircuitOpenError(TypedError):
    """Raised when the circuit is open and the call is rejected."""

    def __init__(self, name: str, remaining_timeout: float = 0):
        super().__init__(
            ErrorKind.UNKNOWN_ERROR,
            f"Circuit '{name}' is open",
            details={"circuit": name, "remaining_timeout": remaining_timeout},
            retryable=True,
        )
        self.circuit_name = name
        self.remaining_timeout = remaining_timeout


class CircuitBreaker:
    """
    Circuit breaker implementation.

    States:
    - CLOSED: Normal operation. Consecutive failures increment a counter;
      reaching the threshold opens the circuit.
    - OPEN: All calls fail fast until the recovery timeout has elapsed
      since the last failure.
    - HALF_OPEN: Exactly one trial call is let through. Success closes the
      circuit, failure reopens it.

    Any exception raised by the wrapped call counts as a failure. Only the
    half-open trial can close or reopen the circuit; calls admitted earlier
    that finish after a state change only touch the failure count.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._trial_in_flight = False

        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Get current consecutive failure count."""
        return self._failure_count

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _recovery_elapsed(self) -> bool:
        return self._clock() - self._last_failure_time > self.config.recovery_timeout

    def _get_remaining_timeout(self) -> float:
        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self.config.recovery_timeout - elapsed)

    def _transition(self, state: CircuitState) -> None:
        if state != self._state:
            logger.info(
                "circuit_state_changed",
                circuit=self.name,
                from_state=self._state.value,
                to_state=state.value,
                failure_count=self._failure_count,
            )
        self._state = state

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Must hold the lock."""
        if self._state == CircuitState.OPEN:
            if not self._recovery_elapsed():
                return False
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True

        return True

    def _record_success(self, trial: bool) -> None:
        with self._lock:
            if trial and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._failure_count = 0
                self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def _record_failure(self, trial: bool) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if trial and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async operation through the circuit breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            Result from the operation

        Raises:
            CircuitOpenError: If the call was rejected without being attempted
        """
        with self._lock:
            if not self._admit():
                raise CircuitOpenError(self.name, remaining_timeout=self._get_remaining_timeout())
            trial = self._state == CircuitState.HALF_OPEN

        try:
            result = await operation()
        except BaseException:
            self._record_failure(trial)
            raise

        self._record_success(trial)
        return result

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = 0.0
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def trip(self) -> None:
        """Manually trip the circuit breaker to open state."""
        with self._lock:
            self._last_failure_time = self._clock()
            self._trial_in_flight = False
            self._transition(CircuitState.OPEN)

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.config.failure_threshold,
                "remaining_timeout": self._get_remaining_timeout() if self._state == CircuitState.OPEN else 0,
            }


class CircuitBreakerRegistry:
    """
    Named breakers, one per downstream dependency.

    Breakers created here share the registry's default config and clock,
    so a whole set of dependencies can be driven by one fake clock in tests.
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get_or_create(
        self, name: str, config: Optional[CircuitBreakerConfig] = None
    ) -> CircuitBreaker:
        """Get the breaker for a dependency, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config or self.default_config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(name)

    def all(self) -> Dict[str, CircuitBreaker]:
        """Snapshot of every registered breaker by name."""
        with self._lock:
            return dict(self._breakers)

    def open_circuits(self) -> List[str]:
        """Names of the dependencies currently failing fast."""
        return [name for name, breaker in self.all().items() if breaker.is_open]

    def reset_all(self) -> None:
        for breaker in self.all().values():
            breaker.reset()

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self.all().items()}


def circuit_breaker(breaker: CircuitBreaker):
    """
    Decorator routing every call of an async function through a breaker.

    Args:
        breaker: The breaker instance to use
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await breaker.execute(lambda: func(*args, **kwargs))

        wrapper._circuit_breaker = breaker  # type: ignore
        return wrapper

    return decorator
