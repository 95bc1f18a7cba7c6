"""Submitting jobs to the execution host."""

import logging
import threading
from typing import Optional

from .build_waiter import BuildWaiter
from .errors import Cancelled, JobNotFound, NeverStarted, QueueRejected
from .handle import JobHandle
from .host import ExecutionHost
from .models import Cause, Config, Job, ParameterSet
from .parameters import resolve_parameters
from .waiter import Waiter

logger = logging.getLogger(__name__)


class JobTrigger:
    """Resolves parameters, queues a job and optionally waits for it to start."""

    def __init__(self, host: ExecutionHost, config: Optional[Config] = None, cancel_event: Optional[threading.Event] = None):
        self.host = host
        self.config = config or Config()
        self.cancel_event = cancel_event
        self.build_waiter = BuildWaiter(host, self.config, cancel_event)

    def find_job(self, job_name: str) -> Job:
        job = self.host.get_job(job_name)
        if job is None:
            raise JobNotFound(job_name, "is not a Project")
        if not job.triggerable:
            raise JobNotFound(job_name, "is disabled")
        return job

    def submit(self, job_name: str, parameter_text: Optional[str] = None, cause: Optional[Cause] = None,
               trigger_only: bool = False, echo_parameters: bool = True,
               max_wait: Optional[float] = None) -> JobHandle:
        """
        Trigger a job by name with free-text parameters.

        Returns a QUEUED handle when ``trigger_only`` is set, otherwise blocks
        until the host starts the run (STARTED) or fails the submission
        (FAILED).

        Raises:
            JobNotFound: no such job, or it can't be triggered
            QueueRejected: the host kept rejecting the submission
            NeverStarted: still queued after ``max_wait`` seconds
            Cancelled: the wait was cancelled
        """
        job = self.find_job(job_name)
        parameters = resolve_parameters(parameter_text, job.parameters, echo=echo_parameters)
        return self.schedule(job.name, parameters, cause or Cause(), trigger_only, max_wait)

    def queue_once(self, job_name: str, parameters: ParameterSet, cause: Cause) -> Optional[JobHandle]:
        """Single submission attempt. None if the host rejected it."""
        ticket = self.host.submit_job(job_name, parameters, cause)
        if ticket is None:
            return None
        logger.info("Queued project %s", job_name)
        return JobHandle(self.host, job_name, ticket)

    def schedule(self, job_name: str, parameters: ParameterSet, cause: Cause,
                 trigger_only: bool = False, max_wait: Optional[float] = None) -> JobHandle:
        """Queue an already-resolved parameter set. See submit()."""
        ticket = self._submit_with_retry(job_name, parameters, cause)
        handle = JobHandle(self.host, job_name, ticket)

        if trigger_only:
            logger.info("Only triggering %s. Not waiting to get a build number.", job_name)
            return handle

        logger.info("Queued job %s", job_name)
        if not self.build_waiter.wait_started(handle, max_wait):
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise Cancelled(f"Stopped waiting for {job_name} to start")
            waited = self.config.start_max_wait if max_wait is None else max_wait
            raise NeverStarted(job_name, waited, handle=handle)
        if handle.run is not None:
            logger.info("Run started: %s", handle.run.id)
        else:
            logger.error("Couldn't start %s: %s", job_name, handle.error)
        return handle

    def _submit_with_retry(self, job_name: str, parameters: ParameterSet, cause: Cause) -> str:
        attempts = self.config.submit_attempts
        tries = {"count": 0, "ticket": None}

        def submitted() -> bool:
            tries["count"] += 1
            tries["ticket"] = self.host.submit_job(job_name, parameters, cause)
            if tries["ticket"] is None:
                logger.error(
                    "Unable to queue job %s. Trying again in %s seconds. (try: %d/%d)",
                    job_name, self.config.submit_delay, tries["count"], attempts,
                )
                return False
            return True

        waiter = Waiter(attempts, self.config.submit_delay, self.cancel_event)
        if not waiter.retry_until(submitted):
            if waiter.cancelled:
                raise Cancelled(f"Stopped queuing {job_name}")
            logger.error("Didn't start job %s! Apparently the same job is queued.", job_name)
            raise QueueRejected(job_name, tries["count"])
        return tries["ticket"]
