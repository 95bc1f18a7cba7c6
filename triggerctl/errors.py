"""
Error classes for triggerctl.

Structural errors (unknown job, bad run id) are raised immediately.
Transient host rejections are retried locally before QueueRejected is raised.
Bounded waits raise NeverStarted / StillRunning so callers can tell
"still pending" apart from a hard failure.
"""

from typing import Dict, Optional

from .models import Result


class TriggerError(Exception):
    """Base exception for triggerctl."""
    pass


class JobNotFound(TriggerError):
    """The job name does not resolve to a triggerable job."""

    def __init__(self, job_name: str, reason: str = "is not a triggerable job"):
        self.job_name = job_name
        super().__init__(f"{job_name} {reason}")


class RunNotFound(TriggerError):
    """The run id does not resolve on the host."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class QueueRejected(TriggerError):
    """The host kept rejecting the submission."""

    def __init__(self, job_name: str, attempts: int):
        self.job_name = job_name
        self.attempts = attempts
        super().__init__(
            f"Didn't start job {job_name}: submission rejected {attempts} times "
            f"(the same job is probably already queued)"
        )


class HostError(TriggerError):
    """The host failed a queued submission."""
    pass


class Cancelled(TriggerError):
    """A wait or a queued submission was cancelled."""
    pass


class NeverStarted(TriggerError):
    """The submission did not materialize into a run within the wait limit."""

    def __init__(self, job_name: str, waited: float, handle=None):
        self.job_name = job_name
        self.waited = waited
        # still queued, the caller may poll it again later
        self.handle = handle
        super().__init__(f"Job {job_name} did not start within {waited:.0f} seconds")


class StillRunning(TriggerError):
    """The run had not finished when the bounded wait ran out."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"{run_id} didn't finish")


class BuildFailed(TriggerError):
    """A submission resolved to a failure instead of a run."""

    def __init__(self, job_name: str, cause: Optional[BaseException] = None):
        self.job_name = job_name
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Error while waiting for {job_name} to start{detail}")


class PartialFanOutFailure(TriggerError):
    """One or more fan-out members failed to start or finish."""

    def __init__(self, failures: Dict[str, str], result: Result = Result.FAILURE):
        self.failures = dict(failures)
        self.result = result
        names = ", ".join(sorted(self.failures))
        super().__init__(f"{len(self.failures)} downstream job(s) failed ({names}); result {result.value}")
