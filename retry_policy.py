#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Bounded Waits                                   ║
║                  One retry/backoff helper for every suspension point         ║
╚══════════════════════════════════════════════════════════════════════════════╝

Every remote-dependent step (dropdown repopulation, CAPTCHA classification,
record rendering, backward navigation) waits through this module so that:
  - every wait has an upper bound
  - cancellation interrupts any interval sleep at its next tick
  - tests swap the Clock for a virtual one and never sleep for real

Author: POWER-IGR Team
Version: 1.0.0
"""

import time
import threading
import logging
from typing import Callable, Optional, TypeVar

from igr_errors import WaitTimeout, SessionCancelled

logger = logging.getLogger('RetryPolicy')

T = TypeVar('T')


class Clock:
    """
    Wall clock with a cancel-aware sleep.

    sleep() blocks on the cancel event instead of time.sleep, so cancel()
    from another thread wakes it immediately and raises SessionCancelled.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event or threading.Event()

    def now(self) -> float:
        return time.monotonic()

    def timestamp(self) -> float:
        """Epoch seconds, for things shown to people"""
        return time.time()

    def sleep(self, seconds: float):
        self.check_cancelled()
        if seconds <= 0:
            return
        if self.cancel_event.wait(seconds):
            raise SessionCancelled('Session cancelled during wait')

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise SessionCancelled('Session cancelled')


def wait_until(
    predicate: Callable[[], T],
    timeout: float,
    interval: float,
    clock: Clock,
    what: str = 'condition'
) -> T:
    """
    Poll predicate until it returns something truthy.

    Returns the truthy value. Raises WaitTimeout once `timeout` seconds of
    clock time have passed; the predicate always runs at least once.
    """
    deadline = clock.now() + timeout
    while True:
        clock.check_cancelled()
        value = predicate()
        if value:
            return value
        remaining = deadline - clock.now()
        if remaining <= 0:
            raise WaitTimeout(what, timeout)
        clock.sleep(min(interval, remaining))


def retry(
    fn: Callable[[int], T],
    attempts: int,
    backoff: float,
    clock: Clock,
    accept: Callable[[T], bool] = bool,
    factor: float = 1.0,
    on_retry: Optional[Callable[[int, T], None]] = None,
    what: str = 'operation'
) -> T:
    """
    Call fn(attempt) up to `attempts` times until accept(result) holds.

    Sleeps `backoff` between attempts, multiplied by `factor` each time.
    Returns the last result even when it was never accepted; exceptions
    from fn propagate. on_retry(attempt, result) runs before each sleep.
    """
    delay = backoff
    result = None
    for attempt in range(1, attempts + 1):
        clock.check_cancelled()
        result = fn(attempt)
        if accept(result):
            return result
        if attempt < attempts:
            logger.debug(f"{what}: attempt {attempt}/{attempts} not accepted, waiting {delay:.1f}s")
            if on_retry:
                on_retry(attempt, result)
            clock.sleep(delay)
            delay *= factor
    return result
