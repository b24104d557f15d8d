"""
CircuitBreaker - Prevents hammering a failing backend by blocking requests.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Backend is failing, requests are blocked
- HALF_OPEN: One trial request is allowed to test recovery

Transitions:
- CLOSED → OPEN: When failure_count reaches threshold
- OPEN → HALF_OPEN: After timeout expires (or manual half_open())
- HALF_OPEN → CLOSED: On success
- HALF_OPEN → OPEN: On failure (timeout is re-armed)
- any → OPEN (terminal): When should_fail_forever(err) is true
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Union

from loguru import logger

from querycache.reactive import Cell


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


def _always(err: BaseException | None = None) -> bool:
    return True


def _never(err: BaseException | None = None) -> bool:
    return False


ErrorPredicate = Callable[[BaseException | None], bool]


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    threshold: int = 5  # Failures before opening
    timeout: timedelta = timedelta(seconds=30)  # Time before half-open
    should_fail: ErrorPredicate = field(default=_always)
    should_fail_forever: ErrorPredicate = field(default=_never)


class CircuitBreaker:
    """
    Circuit breaker for a single backend, shareable between resources.

    Usage:
        cb = CircuitBreaker("my_service")

        if cb.is_open:
            return  # disabled, do not try

        try:
            result = await make_request()
            cb.success()
        except Exception as e:
            cb.fail(e)
            raise
    """

    def __init__(
        self,
        service_id: str = "default",
        config: CircuitBreakerConfig | None = None,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()

        self._failure_count: float = 0
        self._half_open = False
        self._failed_forever = False
        self._opened_at: datetime | None = None
        self._last_failure_time: datetime | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._destroyed = False

        self.status: Cell[CircuitState] = Cell(CircuitState.CLOSED)

    @property
    def failure_count(self) -> float:
        return self._failure_count

    @property
    def state(self) -> CircuitState:
        return self.status.get()

    @property
    def is_open(self) -> bool:
        """True while requests are blocked."""
        return self.state == CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def can_request(self) -> bool:
        """Check if a request is allowed (CLOSED or HALF_OPEN)."""
        return not self.is_open

    def fail(self, err: BaseException | None = None) -> None:
        """Record a failure. May open the circuit."""
        if self.config.should_fail_forever(err):
            self._fail_forever()
            return
        if self.config.should_fail(err):
            self._failure_count += 1
            self._half_open = False
            self._last_failure_time = datetime.now()
            self._transition()
        # Non-breaking error: nothing to record

    def success(self) -> None:
        """Record a success. Closes the circuit."""
        self._failure_count = 0
        self._half_open = False
        self._cancel_timer()
        self._transition()

    def half_open(self) -> None:
        """Force a trial request now, bypassing the timeout."""
        if self.is_closed:
            return
        self._cancel_timer()
        self._half_open = True
        self._failure_count = self.config.threshold - 1
        self._transition()

    def reset(self) -> None:
        """Manually reset the circuit breaker, including a fail-forever state."""
        self._failed_forever = False
        self._last_failure_time = None
        self.success()
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def destroy(self) -> None:
        """Cancel the pending auto-retry timer."""
        self._destroyed = True
        self._cancel_timer()

    def _fail_forever(self) -> None:
        self._failed_forever = True
        self._cancel_timer()
        self._failure_count = math.inf
        self._half_open = False
        self._last_failure_time = datetime.now()
        self._transition()
        logger.error(
            f"Circuit breaker '{self.service_id}' OPENED permanently, "
            "manual reload required"
        )

    def _compute_state(self) -> CircuitState:
        if self._failure_count >= self.config.threshold:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN if self._half_open else CircuitState.CLOSED

    def _transition(self) -> None:
        previous = self.status.get()
        current = self._compute_state()
        if current == previous:
            return

        if current == CircuitState.OPEN:
            self._opened_at = datetime.now()
            if not self._failed_forever:
                self._arm_timer()
            logger.warning(
                f"Circuit breaker '{self.service_id}' OPENED after "
                f"{self._failure_count} failures"
            )
        elif current == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")
        else:
            self._opened_at = None
            logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

        self.status.set(current)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._destroyed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(
                f"Circuit breaker '{self.service_id}' has no running loop, "
                "auto half-open disabled"
            )
            return
        self._timer = loop.call_later(
            self.config.timeout.total_seconds(), self._on_timeout
        )

    def _on_timeout(self) -> None:
        self._timer = None
        self.half_open()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if not self.is_open or not self._opened_at or self._failed_forever:
            return None

        reset_at = self._opened_at + self.config.timeout
        remaining = (reset_at - datetime.now()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failed_forever": self._failed_forever,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class NeverBrokenCircuitBreaker(CircuitBreaker):
    """Disabled breaker: always CLOSED, ignores every call."""

    def __init__(self, service_id: str = "disabled"):
        super().__init__(service_id)

    def fail(self, err: BaseException | None = None) -> None:
        pass

    def success(self) -> None:
        pass

    def half_open(self) -> None:
        pass

    def reset(self) -> None:
        pass


CircuitBreakerOptions = Union[bool, CircuitBreaker, CircuitBreakerConfig, None]


def create_circuit_breaker(
    options: CircuitBreakerOptions = None,
    default_config: CircuitBreakerConfig | None = None,
    service_id: str = "default",
) -> CircuitBreaker:
    """
    Resolve breaker options into a breaker instance.

    - None / False: disabled breaker that never trips
    - True: new breaker with the default config
    - CircuitBreaker: shared instance, returned as-is
    - CircuitBreakerConfig: new breaker with that config
    """
    if options is None or options is False:
        return NeverBrokenCircuitBreaker()
    if isinstance(options, CircuitBreaker):
        return options
    if options is True:
        return CircuitBreaker(service_id, default_config)
    return CircuitBreaker(service_id, options)


class CircuitBreakerRegistry:
    """
    Registry of named breakers, for resources that should fail together.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("my_backend")
    """

    def __init__(self, default_config: CircuitBreakerConfig | None = None):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self._default_config,
            )
        return self._breakers[service_id]

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits."""
        return [
            service_id for service_id, cb in self._breakers.items() if cb.is_open
        ]

    def destroy(self) -> None:
        for cb in self._breakers.values():
            cb.destroy()
        self._breakers.clear()
