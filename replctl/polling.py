#!/usr/bin/env python3
"""
Bounded polling with explicit backoff parameters.

Every wait in replctl goes through poll_until, so no loop can spin forever:
each Backoff carries an attempt budget, a timeout, or both.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Tuple, Type

from .config import RecoveryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Delay schedule for a polling loop."""
    initial_delay: float
    multiplier: float = 1.0
    max_delay: Optional[float] = None
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("Backoff needs max_attempts or timeout")

    @classmethod
    def fixed(cls, interval: float, timeout: float) -> "Backoff":
        return cls(initial_delay=interval, timeout=timeout)

    @classmethod
    def from_policy(cls, policy: RecoveryPolicy) -> "Backoff":
        return cls(
            initial_delay=policy.initial_delay,
            multiplier=policy.multiplier,
            max_delay=policy.max_delay,
            max_attempts=policy.max_attempts,
        )

    def delays(self) -> Iterator[float]:
        delay = self.initial_delay
        while True:
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            yield delay
            delay *= self.multiplier


class PollExhausted(Exception):
    """Raised by poll_until when the budget runs out before the condition holds."""

    def __init__(self, attempts: int, elapsed: float, last_value: Any = None,
                 last_error: Optional[BaseException] = None):
        super().__init__(f"condition not met after {attempts} attempts ({elapsed:.1f}s)")
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_value = last_value
        self.last_error = last_error


def poll_until(
    check: Callable[[], Any],
    done: Callable[[Any], bool],
    backoff: Backoff,
    retry_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    label: str = "condition",
) -> Any:
    """
    Call ``check`` until ``done(result)`` is true or the budget is spent.

    Args:
        check: Produces the current value
        done: Predicate on the value
        backoff: Delay schedule and budget
        retry_on: Exceptions from ``check`` that count as a failed attempt
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)
        label: Used in log messages

    Returns:
        The first value accepted by ``done``

    Raises:
        PollExhausted: budget spent; carries the last value and error
    """
    start = clock()
    attempts = 0
    last_value = None
    last_error = None
    delays = backoff.delays()

    while True:
        attempts += 1
        try:
            last_value = check()
            last_error = None
            if done(last_value):
                return last_value
        except retry_on as e:
            last_error = e
            logger.warning(f"Waiting for {label}: attempt {attempts} failed: {e}")

        if backoff.max_attempts is not None and attempts >= backoff.max_attempts:
            break

        delay = next(delays)
        if backoff.timeout is not None:
            remaining = backoff.timeout - (clock() - start)
            if remaining <= 0:
                break
            delay = min(delay, remaining)

        logger.debug(f"Waiting for {label}: retry {attempts} in {delay:.1f}s")
        sleep(delay)

    raise PollExhausted(attempts, clock() - start, last_value, last_error)
