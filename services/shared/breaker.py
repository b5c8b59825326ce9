"""
Shared - circuit breaker around the Dependency Caller

Built on pybreaker:

  CLOSED    calls pass through. `fail_max` server faults in a row -> OPEN
  OPEN      calls are answered locally with an UNAVAILABLE outcome, no
            network I/O. After `reset_timeout` seconds -> HALF_OPEN
  HALF_OPEN the next call is a trial. Success -> CLOSED, failure -> OPEN

Only server faults count as failures. A 402 decline or a 404 is a valid
answer from a healthy dependency and resets the failure count.
"""

import logging
from typing import Any

import pybreaker

from .dependency import DependencyCaller, DependencyOutcome, OutcomeKind

logger = logging.getLogger(__name__)


class ServerFault(Exception):
    """Carries a failed outcome through the breaker so it is counted."""

    def __init__(self, outcome: DependencyOutcome) -> None:
        super().__init__(outcome.cause)
        self.outcome = outcome


class StateChangeLogger(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state) -> None:
        old = getattr(old_state, "name", None)
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(
                "Circuit %s opened for %.1fs (was %s)", cb.name, cb.reset_timeout, old
            )
        else:
            logger.info("Circuit %s %s -> %s", cb.name, old, new_state.name)


def make_breaker(
    name: str, *, fail_max: int = 5, reset_timeout: float = 10.0
) -> pybreaker.CircuitBreaker:
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        name=name,
        listeners=[StateChangeLogger()],
    )


class BreakerCaller:
    """A DependencyCaller look-alike whose request() goes through a breaker."""

    def __init__(self, caller: DependencyCaller, breaker: pybreaker.CircuitBreaker) -> None:
        self.caller = caller
        self.breaker = breaker

    async def request(
        self, dependency: str, method: str, url: str, **kwargs: Any
    ) -> DependencyOutcome:
        outcome = None
        try:
            with self.breaker.calling():
                outcome = await self.caller.request(dependency, method, url, **kwargs)
                if outcome.is_server_fault:
                    raise ServerFault(outcome)
        except ServerFault as fault:
            return fault.outcome
        except pybreaker.CircuitBreakerError:
            # Raised in place of ServerFault by the call that trips the breaker.
            if outcome is not None:
                return outcome
            return DependencyOutcome(
                dependency,
                OutcomeKind.UNAVAILABLE,
                cause=f"circuit {self.breaker.name} is open",
            )
        return outcome

    async def best_effort(self, dependency: str, method: str, url: str, **kwargs: Any) -> Any:
        return await self.caller.best_effort(dependency, method, url, **kwargs)
