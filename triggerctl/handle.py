"""Future-like handle to a queued submission."""

import threading
from enum import Enum
from typing import Optional

from .errors import Cancelled, TriggerError
from .host import ExecutionHost
from .models import Run


class HandleState(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    FAILED = "failed"


class JobHandle:
    """
    Tracks one submission from QUEUED to exactly one of STARTED or FAILED.

    Once resolved the handle never changes again.
    """

    def __init__(self, host: ExecutionHost, job_name: str, ticket: str):
        self.host = host
        self.job_name = job_name
        self.ticket = ticket
        self._lock = threading.Lock()
        self._state = HandleState.QUEUED
        self._run: Optional[Run] = None
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def run(self) -> Optional[Run]:
        return self._run

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def done(self) -> bool:
        return self._state != HandleState.QUEUED

    def _resolve(self, run: Optional[Run] = None, error: Optional[BaseException] = None) -> bool:
        with self._lock:
            if self._state != HandleState.QUEUED:
                return False
            if run is not None:
                self._state = HandleState.STARTED
                self._run = run
            else:
                self._state = HandleState.FAILED
                self._error = error
            return True

    def poll(self) -> bool:
        """Ask the host whether the submission has become a run. Returns True once resolved."""
        if self.done:
            return True
        try:
            run = self.host.ticket_to_run(self.ticket)
        except TriggerError as e:
            self._resolve(error=e)
            return True
        if run is None:
            return False
        self._resolve(run=run)
        return True

    def cancel(self) -> bool:
        """Drop the submission if the host has not started it yet."""
        if self.done:
            return False
        if not self.host.cancel_ticket(self.ticket):
            # The host started it in the meantime
            self.poll()
            return False
        return self._resolve(error=Cancelled(f"Queued {self.job_name} was cancelled"))

    def __repr__(self) -> str:
        target = self._run.id if self._run is not None else self.job_name
        return f"JobHandle({target}, {self._state.value})"
