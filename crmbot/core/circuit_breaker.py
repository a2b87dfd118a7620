"""
Circuit Breaker for outbound channel calls.

After repeated failures the breaker opens and sends fail fast with
CircuitBreakerOpenError until the cool-down passes; a few trial calls in
half-open decide whether it closes again.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from crmbot.core.exceptions import CircuitBreakerOpenError
from crmbot.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5       # failures before opening
    success_threshold: int = 2       # half-open successes before closing
    timeout_seconds: float = 30.0    # open -> half-open cool-down
    half_open_max_calls: int = 3


class CircuitBreaker:
    """One breaker per external service, shared process-wide"""

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        # threading.Lock: Celery tasks run each on their own event loop
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> "CircuitBreaker":
        with cls._instances_lock:
            if service_name not in cls._instances:
                cls._instances[service_name] = cls(service_name, config)
            return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._successes = 0
        self._half_open_calls = 0
        if new_state == CircuitState.CLOSED:
            self._failures = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    return False
                self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failures >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance(
        "whatsapp_cloud",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )
