"""Automatic one-shot retry of runs that finished badly."""

import logging
import threading
import weakref
from typing import Optional, Union

from .errors import NeverStarted, RunNotFound, TriggerError
from .host import ExecutionHost
from .models import Cause, CauseKind, Config, ParameterSet, RetryDecision, RetryPolicy, Run, RunState
from .trigger import JobTrigger

logger = logging.getLogger(__name__)

ALREADY_RETRIED = "already retried"

# retried_as holds this prefix and the queue ticket until the retry starts
QUEUED_PREFIX = "queued:"


def is_started_retry(marker: Optional[str]) -> bool:
    """True when a ``retried_as`` marker names an actual run."""
    return bool(marker) and not marker.startswith(QUEUED_PREFIX)


class RetryController:
    """
    Decides, once a run completes, whether to schedule it again.

    A run is retried at most once: the original gets a ``retried_as``
    marker and the retry carries ``retry_of``, and a run carrying either is
    never retried again.
    """

    def __init__(self, host: ExecutionHost, config: Optional[Config] = None, trigger: Optional[JobTrigger] = None):
        self.host = host
        self.config = config or Config()
        self.trigger = trigger or JobTrigger(host, self.config)
        self._locks = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def _lock_for(self, run_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[run_id] = lock
            return lock

    def _link(self, run_id: str, new_run: Run) -> None:
        self.host.set_retry_provenance(new_run.id, run_id)
        self.host.set_retried_as(run_id, new_run.id)
        logger.info("%s retried as %s", run_id, new_run.id)

    def retried_as(self, run: Union[Run, str]) -> Optional[str]:
        """
        The ``retried_as`` marker of a run: the retry's run id, a queued
        marker, "" while a retry is being scheduled, or None.

        A queued retry is looked up through its ticket; once it has started
        both runs are linked and the new run id is returned.
        """
        run_id = run.id if isinstance(run, Run) else run
        marker = self.host.get_retried_as(run_id)
        if marker is None or not marker.startswith(QUEUED_PREFIX):
            return marker

        try:
            new_run = self.host.ticket_to_run(marker[len(QUEUED_PREFIX):])
        except TriggerError as e:
            logger.warning("Queued retry of %s was dropped: %s", run_id, e)
            self.host.set_retried_as(run_id, None)
            return None
        if new_run is None:
            return marker
        self._link(run_id, new_run)
        return new_run.id

    def already_retried(self, run: Run) -> bool:
        """Queried from the host every time, never cached."""
        if run.cause.kind == CauseKind.RETRY:
            return True
        if self.host.get_retry_provenance(run.id) is not None:
            return True
        return self.retried_as(run) is not None

    def maybe_retry(self, run: Union[Run, str], policy: Optional[RetryPolicy] = None) -> RetryDecision:
        policy = policy or RetryPolicy(threshold=self.config.retry_threshold)
        run_id = run.id if isinstance(run, Run) else run

        with self._lock_for(run_id):
            current = self.host.get_run(run_id)
            if current is None:
                raise RunNotFound(run_id)
            if current.state != RunState.FINISHED or current.result is None:
                return RetryDecision.not_retried("not finished")
            if current.group is not None:
                # the group's own teardown issues a single retry
                return RetryDecision.not_retried(f"deferred to group {current.group}")
            if current.result.is_better_than(policy.threshold):
                return RetryDecision.not_retried(
                    f"result {current.result.value} is better than {policy.threshold.value}"
                )
            if self.already_retried(current):
                logger.warning("%s %s. Not retrying again.", run_id, ALREADY_RETRIED)
                marker = self.host.get_retried_as(run_id)
                return RetryDecision.not_retried(
                    ALREADY_RETRIED, run_id=marker if is_started_retry(marker) else None
                )

            logger.info("retrying %s (result %s)", run_id, current.result.value)
            # Mark before scheduling so a concurrent evaluation sees it
            self.host.set_retried_as(run_id, "")
            try:
                handle = self.trigger.schedule(
                    current.job,
                    ParameterSet(values=current.parameters),
                    Cause.retry(current),
                    trigger_only=True,
                )
            except TriggerError:
                # nothing was queued, a later evaluation may try again
                self.host.set_retried_as(run_id, None)
                raise
            self.host.set_retried_as(run_id, QUEUED_PREFIX + handle.ticket)

            if not self.trigger.build_waiter.wait_started(handle):
                logger.warning("Retry of %s is still queued, it is linked once it starts", run_id)
                raise NeverStarted(current.job, self.config.start_max_wait, handle=handle)
            if handle.run is None:
                self.host.set_retried_as(run_id, None)
                raise TriggerError(f"Retry of {run_id} failed to start: {handle.error}")
            self._link(run_id, handle.run)
            return RetryDecision.retried_as(handle.run)

    def teardown(self, run: Union[Run, str], policy: Optional[RetryPolicy] = None) -> RetryDecision:
        """End-of-lifecycle hook. Errors are logged and reported as not retried."""
        try:
            return self.maybe_retry(run, policy)
        except TriggerError as e:
            logger.error("Couldn't retry %s: %s", run.id if isinstance(run, Run) else run, e)
            return RetryDecision.not_retried(str(e))
