"""
Circuit breaker pattern implementation for resilient upstream calls.

One breaker exists per named dependency. The admission decision (fail fast or
attempt) is taken under a short-held lock before the wrapped coroutine is
awaited, so an open breaker never waits on network I/O.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable, NamedTuple

from shared.logging import get_logger


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if upstream recovered


@dataclass
class BreakerState:
    """Point-in-time state of a single breaker."""
    dependency_name: str
    state: CircuitBreakerState = CircuitBreakerState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    last_error: Optional[str] = None
    last_failure_at: Optional[float] = None
    total_calls: int = 0
    total_failures: int = 0
    total_rejections: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected without reaching the upstream."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN - call rejected")


StateChangeCallback = Callable[[str, CircuitBreakerState, CircuitBreakerState], None]


class _Ticket(NamedTuple):
    """Admission stamp for one call."""
    generation: int
    trial: bool


class CircuitBreaker:
    """Circuit breaker guarding a single upstream dependency."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.time,
                 on_state_change: Optional[StateChangeCallback] = None):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.on_state_change = on_state_change
        self.logger = get_logger(f"gateway.circuit_breaker.{name}")

        self._lock = threading.Lock()
        self._state = BreakerState(dependency_name=name)
        self._trial_in_flight = False
        # bumped whenever the breaker opens or is reset
        self._generation = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state.state

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state.state == CircuitBreakerState.OPEN

    def _transition(self, new_state: CircuitBreakerState) -> Optional[CircuitBreakerState]:
        """Move to new_state; caller holds the lock. Returns the previous state on change."""
        old_state = self._state.state
        if old_state == new_state:
            return None
        self._state.state = new_state
        if new_state == CircuitBreakerState.OPEN:
            self._state.opened_at = self.clock()
            self._generation += 1
        elif new_state == CircuitBreakerState.CLOSED:
            self._state.opened_at = None
        return old_state

    def _notify(self, old_state: Optional[CircuitBreakerState]) -> None:
        if old_state is None:
            return
        new_state = self._state.state
        log = self.logger.warning if new_state == CircuitBreakerState.OPEN else self.logger.info
        log(
            "Circuit breaker state change",
            dependency=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            consecutive_failures=self._state.consecutive_failures,
            threshold=self.failure_threshold
        )
        if self.on_state_change is not None:
            self.on_state_change(self.name, old_state, new_state)

    def _admit(self):
        """Decide whether a call may proceed. Caller holds the lock.

        Returns (admitted, previous_state_if_changed, ticket). The ticket pairs
        the generation the call was admitted in with whether it is the
        half-open trial.
        """
        state = self._state
        if state.state == CircuitBreakerState.CLOSED:
            return True, None, _Ticket(self._generation, False)

        if state.state == CircuitBreakerState.OPEN:
            elapsed = self.clock() - (state.opened_at or 0.0)
            if elapsed >= self.recovery_timeout:
                changed = self._transition(CircuitBreakerState.HALF_OPEN)
                self._trial_in_flight = True
                return True, changed, _Ticket(self._generation, True)
            return False, None, None

        # HALF_OPEN: exactly one trial call at a time
        if self._trial_in_flight:
            return False, None, None
        self._trial_in_flight = True
        return True, None, _Ticket(self._generation, True)

    def _is_current(self, ticket: _Ticket) -> bool:
        return ticket.generation == self._generation

    def _retry_after(self) -> float:
        if self._state.opened_at is None:
            return 0.0
        remaining = self.recovery_timeout - (self.clock() - self._state.opened_at)
        return max(0.0, remaining)

    async def call(self, func: Callable[..., Awaitable[Any]], *args,
                   timeout: Optional[float] = None, **kwargs) -> Any:
        """Execute func with circuit breaker protection.

        A timeout is reported as a failure. A rejected call raises
        CircuitBreakerOpenError and is not counted as a failure. Calls that
        finish after the breaker has tripped since they were admitted only
        update the totals; while HALF_OPEN only the trial moves the state.
        """
        with self._lock:
            admitted, changed, ticket = self._admit()
            if admitted:
                self._state.total_calls += 1
            else:
                self._state.total_rejections += 1
                retry_after = self._retry_after()
        self._notify(changed)

        if not admitted:
            self.logger.info("Circuit breaker rejected call", dependency=self.name,
                             retry_after=round(retry_after, 3))
            raise CircuitBreakerOpenError(self.name, retry_after)

        try:
            if timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            else:
                result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            with self._lock:
                if ticket.trial and self._is_current(ticket):
                    self._trial_in_flight = False
            raise
        except asyncio.TimeoutError as e:
            self._record_failure(ticket, e, f"timeout after {timeout}s")
            raise
        except Exception as e:
            self._record_failure(ticket, e)
            raise

        self._record_success(ticket)
        return result

    def _record_success(self, ticket: _Ticket) -> None:
        with self._lock:
            changed = None
            if self._is_current(ticket) and self._state.state != CircuitBreakerState.OPEN:
                if ticket.trial:
                    self._trial_in_flight = False
                    self._state.consecutive_failures = 0
                    changed = self._transition(CircuitBreakerState.CLOSED)
                elif self._state.state == CircuitBreakerState.CLOSED:
                    self._state.consecutive_failures = 0
        self._notify(changed)

    def _record_failure(self, ticket: _Ticket, error: BaseException, message: Optional[str] = None) -> None:
        with self._lock:
            state = self._state
            state.total_failures += 1
            state.last_failure_at = self.clock()
            state.last_error = message or f"{type(error).__name__}: {error}"

            changed = None
            if self._is_current(ticket):
                if ticket.trial and state.state == CircuitBreakerState.HALF_OPEN:
                    state.consecutive_failures += 1
                    self._trial_in_flight = False
                    changed = self._transition(CircuitBreakerState.OPEN)
                elif state.state == CircuitBreakerState.CLOSED:
                    state.consecutive_failures += 1
                    if state.consecutive_failures >= self.failure_threshold:
                        changed = self._transition(CircuitBreakerState.OPEN)
        self._notify(changed)

    def reset(self) -> None:
        """Manually reset the breaker to CLOSED with zero failures."""
        with self._lock:
            self._state.consecutive_failures = 0
            self._trial_in_flight = False
            self._generation += 1
            changed = self._transition(CircuitBreakerState.CLOSED)
        self._notify(changed)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            payload = self._state.to_dict()
            payload["failure_threshold"] = self.failure_threshold
            payload["recovery_timeout"] = self.recovery_timeout
            payload["retry_after_seconds"] = (
                round(self._retry_after(), 3) if self._state.state == CircuitBreakerState.OPEN else 0.0
            )
        return payload


class CircuitBreakerRegistry:
    """Process-local registry holding one breaker per dependency name."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 default_timeout: Optional[float] = 10.0,
                 clock: Callable[[], float] = time.time,
                 on_state_change: Optional[StateChangeCallback] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.default_timeout = default_timeout
        self.clock = clock
        self.on_state_change = on_state_change
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("gateway.circuit_breaker_registry")

    def get_circuit_breaker(self,
                            name: str,
                            failure_threshold: Optional[int] = None,
                            recovery_timeout: Optional[float] = None) -> CircuitBreaker:
        """Get or lazily create a circuit breaker."""
        breaker = self.circuit_breakers.get(name)
        if breaker is not None:
            return breaker

        with self._lock:
            breaker = self.circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name,
                    failure_threshold=failure_threshold or self.failure_threshold,
                    recovery_timeout=recovery_timeout or self.recovery_timeout,
                    clock=self.clock,
                    on_state_change=self.on_state_change
                )
                self.circuit_breakers[name] = breaker
                self.logger.info("Created circuit breaker", name=name)
        return breaker

    async def call(self, dependency_name: str, func: Callable[..., Awaitable[Any]], *args,
                   timeout: Optional[float] = None, **kwargs) -> Any:
        """Run func through the named breaker with a bounded timeout."""
        breaker = self.get_circuit_breaker(dependency_name)
        effective_timeout = timeout if timeout is not None else self.default_timeout
        return await breaker.call(func, *args, timeout=effective_timeout, **kwargs)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in list(self.circuit_breakers.items())
        }

    def reset(self, name: str) -> bool:
        breaker = self.circuit_breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True
