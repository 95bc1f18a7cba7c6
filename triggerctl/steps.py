"""Build steps composing trigger, wait and downstream bookkeeping."""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .build_waiter import BuildWaiter
from .downstream import DownstreamTracker
from .errors import (
    BuildFailed,
    Cancelled,
    JobNotFound,
    NeverStarted,
    PartialFanOutFailure,
    QueueRejected,
    RunNotFound,
    StillRunning,
    TriggerError,
)
from .handle import JobHandle
from .host import ExecutionHost
from .models import Cause, Config, Result, RetryDecision, RetryPolicy, Run
from .parameters import resolve_parameters
from .retry import RetryController
from .trigger import JobTrigger
from .waiter import pause

logger = logging.getLogger(__name__)

AFFIRMATIVE_WORDS = ("true", "yes")


def is_affirmative_word(word: Optional[str]) -> bool:
    """
    True for "true" or "yes" (case-insensitive, surrounding whitespace ignored).
    A leading "!" inverts the answer.
    """
    if word is None:
        return False
    word = word.strip()
    inverse = word.startswith("!")
    if inverse:
        word = word[1:].strip()
    return (word.lower() in AFFIRMATIVE_WORDS) != inverse


def should_run(condition: Optional[str]) -> bool:
    """An empty condition always runs; anything else must be affirmative."""
    if condition is None or not condition.strip():
        return True
    return is_affirmative_word(condition)


class StepContext(BaseModel):
    """What a step runs against: the host, the parent run and the shared tracker."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    host: ExecutionHost
    config: Config = Field(default_factory=Config)
    parent: Optional[Run] = None
    tracker: Optional[DownstreamTracker] = None
    workspace: Optional[Path] = None
    cancel_event: Optional[threading.Event] = None

    def model_post_init(self, __context: Any) -> None:
        if self.tracker is None:
            self.tracker = DownstreamTracker(self.host)

    def trigger(self) -> JobTrigger:
        return JobTrigger(self.host, self.config, self.cancel_event)

    def build_waiter(self) -> BuildWaiter:
        return BuildWaiter(self.host, self.config, self.cancel_event)

    def record(self, run: Run) -> None:
        if self.parent is not None:
            self.tracker.record(self.parent, run)


class StepOutcome(BaseModel):
    """What a step did."""
    result: Result = Result.SUCCESS
    run_ids: List[str] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    failures: Dict[str, str] = Field(default_factory=dict)
    skipped: bool = False
    retry: Optional[RetryDecision] = None

    @property
    def ok(self) -> bool:
        return self.result.is_better_than(Result.FAILURE)

    def fail(self, name: str, message: str) -> None:
        self.failures[name] = message
        self.result = self.result.combine(Result.FAILURE)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFanOutFailure(self.failures, self.result)


class TriggerJobStep:
    """
    Trigger one job and track it.

    Without an output variable the job is only queued. With one, the step
    waits for the run to start, records it downstream of the parent and binds
    the variable to its build number.
    """

    def __init__(self, job_name: str, parameters: str = "", wait_limit_minutes: int = 15,
                 variable: Optional[str] = None, condition: Optional[str] = None):
        self.job_name = job_name
        self.parameters = parameters or ""
        self.wait_limit_minutes = wait_limit_minutes if wait_limit_minutes > 0 else 15
        self.variable = variable
        self.condition = condition

    @property
    def trigger_only(self) -> bool:
        return self.variable is None or not self.variable.strip()

    def perform(self, context: StepContext) -> StepOutcome:
        outcome = StepOutcome()
        if not should_run(self.condition):
            logger.info("Not triggering job '%s' since the run condition is '%s'", self.job_name, self.condition)
            outcome.skipped = True
            return outcome

        try:
            handle = context.trigger().submit(
                self.job_name,
                self.parameters,
                Cause.upstream(context.parent),
                trigger_only=self.trigger_only,
                max_wait=self.wait_limit_minutes * 60.0,
            )
        except (JobNotFound, QueueRejected, NeverStarted, Cancelled) as e:
            logger.error("%s", e)
            outcome.fail(self.job_name, str(e))
            return outcome

        if self.trigger_only:
            return outcome
        if handle.run is None:
            outcome.fail(self.job_name, f"Couldn't start the build: {handle.error}")
            return outcome

        run = handle.run
        context.record(run)
        outcome.run_ids.append(run.id)

        variable = self.variable.strip()
        value = str(run.number)
        logger.info("setting variable '%s' to '%s'", variable, value)
        outcome.variables[variable] = value
        if context.parent is not None:
            context.host.set_variable(context.parent.id, variable, value)
        return outcome


class WaitForBuildStep:
    """Wait for a given run of a job to finish and take over its result."""

    def __init__(self, job_name: str, build_number, retries: int = 0, delay: Optional[float] = None,
                 files_to_copy: Optional[str] = None):
        self.job_name = job_name
        self.build_number = build_number
        self.retries = max(retries, 0)
        self.delay = delay
        self.files_to_copy = files_to_copy

    def perform(self, context: StepContext) -> StepOutcome:
        outcome = StepOutcome()
        run_id = f"{self.job_name}#{self.build_number}"
        try:
            number = int(str(self.build_number).strip())
            outcome.result = context.build_waiter().wait_for_build(
                self.job_name, number, self.retries, self.delay,
                self.files_to_copy, context.workspace,
            )
        except ValueError:
            outcome.fail(run_id, f"Build number must be a positive number, got '{self.build_number}'")
        except (JobNotFound, RunNotFound, StillRunning) as e:
            logger.error("%s", e)
            outcome.fail(run_id, str(e))
        else:
            outcome.run_ids.append(Run.format_id(self.job_name, number))
        return outcome


class TriggerAndWaitStep:
    """Trigger every listed job with the same parameters and wait for all of them."""

    def __init__(self, job_names: str, parameters: str = ""):
        self.job_names = job_names or ""
        self.parameters = parameters or ""

    def find_jobs_to_trigger(self, context: StepContext) -> List[str]:
        jobs = []
        for line in self.job_names.splitlines():
            name = line.strip()
            if not name:
                continue
            job = context.host.get_job(name)
            if job is None or not job.triggerable:
                logger.warning("Skipping '%s': not a triggerable job", name)
                continue
            jobs.append(name)
        return jobs

    def perform(self, context: StepContext) -> StepOutcome:
        outcome = StepOutcome()
        handles = self.schedule_builds(context, self.find_jobs_to_trigger(context), outcome)
        runs = self.wait_for_builds_to_start(context, handles, outcome)
        self.wait_for_builds_to_finish(context, runs, outcome)
        return outcome

    def schedule_builds(self, context: StepContext, jobs: List[str], outcome: StepOutcome) -> List[JobHandle]:
        """
        Queue every job. Rejected jobs go to the back of the line; after a
        full pass that left some behind, pause before trying again.
        """
        trigger = context.trigger()
        cause = Cause.upstream(context.parent)
        handles: List[JobHandle] = []
        pending = list(jobs)
        passes = 0
        while pending:
            rejected = []
            for name in pending:
                parameters = resolve_parameters(self.parameters, context.host.job_schema(name))
                handle = trigger.queue_once(name, parameters, cause)
                if handle is None:
                    # Add it back in, it wasn't scheduled.
                    rejected.append(name)
                else:
                    handles.append(handle)
            pending = rejected
            if not pending:
                break

            passes += 1
            max_passes = context.config.fanout_max_passes
            if max_passes and passes >= max_passes:
                for name in pending:
                    outcome.fail(name, f"{name} was rejected by the queue {passes} times")
                break
            logger.info("%d job(s) couldn't be queued, retrying in %s seconds", len(pending), context.config.fanout_pause)
            if not pause(context.config.fanout_pause, context.cancel_event):
                for name in pending:
                    outcome.fail(name, f"Stopped queuing {name}: cancelled")
                break
        return handles

    def wait_for_builds_to_start(self, context: StepContext, handles: List[JobHandle],
                                 outcome: StepOutcome) -> List[Run]:
        waiter = context.build_waiter()
        runs = []
        for handle in handles:
            try:
                run = waiter.await_start(handle)
            except (NeverStarted, BuildFailed) as e:
                logger.error("Error while waiting for build: %s", e)
                outcome.fail(handle.job_name, str(e))
                continue
            logger.info("Started build %s", run.id)
            context.record(run)
            outcome.run_ids.append(run.id)
            runs.append(run)
        return runs

    def wait_for_builds_to_finish(self, context: StepContext, runs: List[Run], outcome: StepOutcome) -> None:
        waiter = context.build_waiter()
        for run in runs:
            try:
                result = waiter.await_finish(run.id)
            except (StillRunning, RunNotFound) as e:
                logger.error("Error while waiting for build %s: %s", run.id, e)
                outcome.fail(run.id, str(e))
                continue
            if result.is_worse_or_equal(Result.FAILURE):
                outcome.failures[run.id] = f"{run.id} finished with result {result.value}"
            outcome.result = outcome.result.combine(result)


class MatrixStep:
    """
    Runs a grouped execution between an optional pre-hook and post-hook job.

    The pre-hook must finish better than FAILURE or the group does not run.
    The post-hook always runs; its failure worsens the result but never hides
    an error raised by the group itself. With a retry policy the group run
    (the context parent) is finished with the group result and retried at
    most once as a whole; its members defer to this.
    """

    def __init__(self, body: Callable[[StepContext], Result], pre_job: Optional[str] = None,
                 post_job: Optional[str] = None, parameters: str = "",
                 files_to_copy: Optional[str] = None, retry_policy: Optional[RetryPolicy] = None):
        self.body = body
        self.pre_job = pre_job
        self.post_job = post_job
        self.parameters = parameters or ""
        self.files_to_copy = files_to_copy
        self.retry_policy = retry_policy

    def _run_hook(self, context: StepContext, job_name: str) -> Result:
        try:
            handle = context.trigger().submit(job_name, self.parameters, Cause.upstream(context.parent))
            if handle.run is None:
                raise BuildFailed(job_name, handle.error)
            run = handle.run
            context.record(run)
            logger.info("Successfully triggered: %s", run.id)
            waiter = context.build_waiter()
            result = waiter.await_finish(run.id)
            if context.workspace is not None and self.files_to_copy:
                waiter.copy_artifacts(context.host.get_run(run.id) or run, self.files_to_copy, context.workspace)
            return result
        except TriggerError as e:
            logger.error("%s", e)
            return Result.FAILURE

    def _teardown_group(self, context: StepContext, result: Result) -> Optional[RetryDecision]:
        group = context.parent
        try:
            context.host.finish_run(group.id, result)
        except TriggerError as e:
            logger.error("Couldn't finish group %s: %s", group.id, e)
            return None
        controller = RetryController(context.host, context.config, context.trigger())
        return controller.teardown(group, self.retry_policy)

    def perform(self, context: StepContext) -> StepOutcome:
        outcome = StepOutcome()
        raised = False
        try:
            if self.pre_job:
                pre_result = self._run_hook(context, self.pre_job)
                outcome.result = outcome.result.combine(pre_result)
                if pre_result.is_worse_or_equal(Result.FAILURE):
                    logger.error("An error occurred in %s before matrix jobs could start.", self.pre_job)
                    outcome.failures[self.pre_job] = f"pre-hook finished with result {pre_result.value}"
                    return outcome
            outcome.result = outcome.result.combine(self.body(context))
        except BaseException:
            raised = True
            raise
        finally:
            if self.post_job:
                post_result = self._run_hook(context, self.post_job)
                if post_result.is_worse_or_equal(Result.FAILURE):
                    logger.error("Post-matrix job %s finished with result %s", self.post_job, post_result.value)
                    outcome.failures[self.post_job] = f"post-hook finished with result {post_result.value}"
                outcome.result = outcome.result.combine(post_result)
            if self.retry_policy is not None and context.parent is not None:
                group_result = outcome.result.combine(Result.FAILURE) if raised else outcome.result
                outcome.retry = self._teardown_group(context, group_result)
        return outcome
