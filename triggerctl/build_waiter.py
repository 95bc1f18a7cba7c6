"""Waiting for triggered runs to start and finish, and collecting their artifacts."""

import fnmatch
import logging
import shutil
import threading
from pathlib import Path
from typing import List, Optional

from .errors import BuildFailed, JobNotFound, NeverStarted, RunNotFound, StillRunning
from .handle import HandleState, JobHandle
from .host import ExecutionHost
from .models import Config, Result, Run, RunState
from .waiter import ExponentialWaiter, Waiter

logger = logging.getLogger(__name__)


def split_patterns(files_to_copy: Optional[str]) -> List[str]:
    """Comma or newline separated glob patterns."""
    if not files_to_copy:
        return []
    patterns = []
    for line in files_to_copy.replace(",", "\n").split("\n"):
        line = line.strip()
        if line:
            patterns.append(line)
    return patterns


def matches(path: str, pattern: str) -> bool:
    """Glob match on a relative posix path. ``*`` also crosses directories."""
    if fnmatch.fnmatchcase(path, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatchcase(path, pattern[3:])


class BuildWaiter:
    """Blocks the calling thread until a submission starts or a run finishes."""

    def __init__(self, host: ExecutionHost, config: Optional[Config] = None, cancel_event: Optional[threading.Event] = None):
        self.host = host
        self.config = config or Config()
        self.cancel_event = cancel_event

    def _start_waiter(self, max_wait: Optional[float] = None) -> ExponentialWaiter:
        return ExponentialWaiter(
            max_wait=self.config.start_max_wait if max_wait is None else max_wait,
            initial_delay=self.config.start_initial_delay,
            max_delay=self.config.start_max_delay,
            tick=self.config.start_tick,
            cancel_event=self.cancel_event,
        )

    def wait_started(self, handle: JobHandle, max_wait: Optional[float] = None) -> bool:
        """Poll the handle until it resolves. False if it is still queued."""
        waiter = self._start_waiter(max_wait)
        resolved = waiter.retry_until(handle.poll)
        if waiter.cancelled:
            logger.warning("Stopped waiting for %s to start: cancelled", handle.job_name)
        return resolved

    def await_start(self, handle: JobHandle, max_wait: Optional[float] = None) -> Run:
        """
        Wait for a submission to become a run.

        Raises:
            NeverStarted: still queued when the wait ran out (the handle stays usable)
            BuildFailed: the host failed or dropped the submission
        """
        if not self.wait_started(handle, max_wait):
            waited = self.config.start_max_wait if max_wait is None else max_wait
            raise NeverStarted(handle.job_name, waited, handle=handle)
        if handle.state == HandleState.FAILED:
            raise BuildFailed(handle.job_name, handle.error)
        logger.info("Run started: %s", handle.run.id)
        return handle.run

    def await_finish(self, run, retries: int = 0, delay: Optional[float] = None) -> Result:
        """
        Wait until the run is finished and return its result.

        ``retries == 0`` waits forever. The run is re-read from the host on
        every check.

        Raises:
            RunNotFound: the host does not know the run
            StillRunning: out of retries, or the wait was cancelled
        """
        run_id = run.id if isinstance(run, Run) else run
        if delay is None:
            delay = self.config.finish_delay
        delay = max(delay, self.config.min_finish_delay)
        latest = {}

        def finished() -> bool:
            run = self.host.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            latest["run"] = run
            if run.state == RunState.FINISHED:
                logger.info("Checking status of build %s (complete)", run_id)
                return True
            logger.info("Checking status of build %s (building)", run_id)
            return False

        waiter = Waiter(retries, delay, self.cancel_event)
        if not waiter.retry_until(finished):
            logger.error("%s didn't finish", run_id)
            raise StillRunning(run_id)

        run = latest["run"]
        result = run.result or Result.FAILURE
        logger.info("Build finished %s with result: %s", run_id, result.value)
        return result

    def copy_artifacts(self, run: Run, files_to_copy: Optional[str], destination: Path) -> List[Path]:
        """
        Copy the run's artifacts matching ``files_to_copy`` into
        ``destination/<job name>/``. Failures are logged and skipped.
        """
        patterns = split_patterns(files_to_copy)
        if not patterns:
            return []

        source_dir = Path(self.host.artifacts_dir(run))
        dest_dir = Path(destination) / run.job
        copied: List[Path] = []
        for included in self.host.run_artifacts(run):
            if not any(matches(included, pattern) for pattern in patterns):
                continue
            logger.info("Copying artifact: '%s'", included)
            if not dest_dir.exists():
                logger.info("'%s' doesn't exist. Creating.", dest_dir)
                try:
                    dest_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    logger.error("Couldn't create directory '%s'. Attempting to continue. %s", dest_dir, e)
            source_file = source_dir / included
            dest_file = dest_dir / source_file.name
            try:
                shutil.copyfile(source_file, dest_file)
            except OSError as e:
                logger.error("unable to copy file '%s' to %s. %s", included, dest_file, e)
                continue
            logger.info("Copied artifact: '%s'", included)
            copied.append(dest_file)
        return copied

    def wait_for_build(self, job_name: str, build_number: int, retries: int = 0,
                       delay: Optional[float] = None, files_to_copy: Optional[str] = None,
                       destination: Optional[Path] = None) -> Result:
        """Wait for an existing run of a job to finish, then copy its artifacts."""
        if self.host.get_job(job_name) is None:
            raise JobNotFound(job_name, "is not a Job")
        run_id = Run.format_id(job_name, build_number)
        if self.host.get_run(run_id) is None:
            raise RunNotFound(run_id)

        result = self.await_finish(run_id, retries, delay)
        run = self.host.get_run(run_id)
        if run is not None and destination is not None and files_to_copy:
            self.copy_artifacts(run, files_to_copy, destination)
        return result
