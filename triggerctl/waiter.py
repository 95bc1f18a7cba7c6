"""Retry-until-true polling with fixed or exponential delays."""

import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def pause(seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
    """
    Sleep for ``seconds``. Returns False if the pause was cancelled.

    Cancellation is either the event being set or a KeyboardInterrupt
    arriving while asleep.
    """
    if cancel_event is not None and cancel_event.is_set():
        return False
    try:
        if cancel_event is not None:
            return not cancel_event.wait(seconds)
        time.sleep(seconds)
        return True
    except KeyboardInterrupt:
        logger.warning("Interrupted while waiting, giving up")
        return False


class Waiter:
    """Calls a predicate until it returns True, sleeping a fixed delay between tries."""

    def __init__(self, retries: int, delay: float, cancel_event: Optional[threading.Event] = None):
        # retries == 0 means keep trying forever
        self.retries = max(retries, 0)
        self.delay = delay
        self.cancel_event = cancel_event
        self.cancelled = False

    def next_delay(self, attempt: int) -> Optional[float]:
        """Delay before the next try, or None to stop waiting."""
        return self.delay

    def retry_until(self, predicate: Callable[[], bool]) -> bool:
        """Returns True once the predicate holds, False when out of tries or cancelled."""
        attempt = 0
        while self.retries == 0 or attempt < self.retries:
            if predicate():
                return True
            attempt += 1
            if self.retries and attempt >= self.retries:
                break
            delay = self.next_delay(attempt)
            if delay is None:
                break
            if not pause(delay, self.cancel_event):
                # if the wait has been interrupted, finish things up.
                self.cancelled = True
                break
        return False


class ExponentialWaiter(Waiter):
    """
    Waiter whose delay doubles after each miss, capped at ``max_delay``.

    The number of tries is derived from ``max_wait`` divided into ``tick``
    sized polling slots, so the default gives a run 15 minutes to start.
    """

    def __init__(self, max_wait: float = 900.0, initial_delay: float = 1.0, max_delay: float = 30.0,
                 tick: float = 1.0, cancel_event: Optional[threading.Event] = None):
        retries = max(int(math.ceil(max_wait / tick)), 1) if tick > 0 else 1
        super().__init__(retries, initial_delay, cancel_event)
        self.max_wait = max_wait
        self.max_delay = max_delay
        self.waited = 0.0

    def next_delay(self, attempt: int) -> Optional[float]:
        remaining = self.max_wait - self.waited
        if remaining <= 0:
            return None
        # attempt is 1 after the first miss
        delay = min(self.delay * (2 ** min(attempt - 1, 32)), self.max_delay, remaining)
        self.waited += delay
        return delay
