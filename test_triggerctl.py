"""Test suite for TriggerCTL - trigger, wait, track and retry downstream jobs."""

import logging
import threading
from itertools import permutations, product

import pytest
from pydantic import ValidationError

import triggerctl.waiter as waiter_module
from triggerctl.build_waiter import BuildWaiter, matches
from triggerctl.downstream import DownstreamTracker
from triggerctl.errors import (
    JobNotFound,
    NeverStarted,
    PartialFanOutFailure,
    QueueRejected,
    StillRunning,
)
from triggerctl.handle import HandleState, JobHandle
from triggerctl.host import ExecutionHost
from triggerctl.models import (
    Cause,
    CauseKind,
    Config,
    ParameterDefinition,
    ParameterSet,
    Result,
    RetryPolicy,
    Run,
    RunState,
)
from triggerctl.parameters import parse_parameters, resolve_parameters
from triggerctl.retry import ALREADY_RETRIED, QUEUED_PREFIX, RetryController
from triggerctl.steps import (
    MatrixStep,
    StepContext,
    TriggerAndWaitStep,
    TriggerJobStep,
    WaitForBuildStep,
    should_run,
)
from triggerctl.trigger import JobTrigger
from triggerctl.waiter import ExponentialWaiter, Waiter


def schema(**defaults):
    return [ParameterDefinition(name=name, default=value) for name, value in defaults.items()]


class TestResult:

    def test_combine_keeps_worst(self):
        """Test: Combining results yields the worst one."""
        assert Result.SUCCESS.combine(Result.FAILURE) == Result.FAILURE
        assert Result.UNSTABLE.combine(Result.SUCCESS) == Result.UNSTABLE
        assert Result.FAILURE.combine(Result.ABORTED) == Result.ABORTED

    def test_combine_is_commutative_and_associative(self):
        """Test: Combination order never changes the outcome."""
        results = [Result.SUCCESS, Result.UNSTABLE, Result.FAILURE]
        for a, b in product(results, repeat=2):
            assert a.combine(b) == b.combine(a)
        for a, b, c in product(results, repeat=3):
            assert a.combine(b).combine(c) == a.combine(b.combine(c))
        for ordering in permutations(results):
            assert Result.combine_all(ordering) == Result.FAILURE

    def test_parse_unknown_is_failure(self):
        """Test: Unknown result names count as FAILURE."""
        assert Result.parse("unstable") == Result.UNSTABLE
        assert Result.parse("") == Result.FAILURE
        assert Result.parse("bogus") == Result.FAILURE

    def test_run_id_round_trip(self):
        """Test: Stable run ids split back into job and number."""
        assert Run.parse_id("folder/job#12") == ("folder/job", 12)
        with pytest.raises(ValueError):
            Run.parse_id("job12")


class TestParameters:

    def test_parse_strips_comments_and_bad_lines(self):
        """Test: Comments and lines without '=' are ignored."""
        text = "a=1 # one\n# only a comment\nbad_line\n  b = two  \n"
        assert parse_parameters(text) == {"a": "1", "b": "two"}

    def test_value_may_contain_equals_and_last_wins(self):
        """Test: Split happens on the first '=', duplicates keep the last value."""
        assert parse_parameters("url=http://x?a=b\nurl2=1\nurl2=2") == {"url": "http://x?a=b", "url2": "2"}

    def test_resolve_uses_override_then_default(self):
        """Test: Declared parameters take the override, else their default."""
        resolved = resolve_parameters("x=5\n# comment\nbad_line", schema(x="1", y="2"))
        assert resolved.values == {"x": "5", "y": "2"}
        assert list(resolved.values) == ["x", "y"]

    def test_undeclared_parameters_are_dropped(self, caplog):
        """Test: Keys the job doesn't declare never leak through, and are reported."""
        caplog.set_level(logging.WARNING, logger="triggerctl")
        resolved = resolve_parameters("x=5\nsecret=1\nother=2", schema(x="1"))
        assert set(resolved.values) == {"x"}
        assert "Ignoring parameter 'secret'" in caplog.text

    def test_resolution_is_idempotent(self):
        """Test: Re-resolving the serialized output gives the same set."""
        declared = schema(x="1", y="", z="default")
        first = resolve_parameters("x=5\nz= spaced value \nunknown=1", declared)
        assert resolve_parameters(first.to_text(), declared) == first


class TestWaiter:

    def test_sleeps_once_when_second_call_succeeds(self, monkeypatch):
        """Test: Predicate true on the 2nd call means exactly one sleep."""
        sleeps = []
        monkeypatch.setattr(waiter_module.time, "sleep", lambda s: sleeps.append(s))
        calls = iter([False, True])

        assert Waiter(3, 0.01).retry_until(lambda: next(calls)) is True
        assert sleeps == [0.01]

    def test_bounded_waiter_gives_up(self, monkeypatch):
        """Test: Out of tries reports failure."""
        monkeypatch.setattr(waiter_module.time, "sleep", lambda s: None)
        calls = []
        assert Waiter(3, 0).retry_until(lambda: calls.append(1) or False) is False
        assert len(calls) == 3

    def test_zero_retries_means_unbounded(self, monkeypatch):
        """Test: retries=0 keeps going until the predicate holds."""
        monkeypatch.setattr(waiter_module.time, "sleep", lambda s: None)
        calls = []
        assert Waiter(0, 0).retry_until(lambda: calls.append(1) or len(calls) == 50) is True
        assert len(calls) == 50

    def test_cancel_event_stops_the_wait(self):
        """Test: A set cancel event ends the wait as not completed."""
        cancel = threading.Event()
        cancel.set()
        waiter = Waiter(0, 10, cancel)
        assert waiter.retry_until(lambda: False) is False
        assert waiter.cancelled

    def test_interrupt_during_sleep_reports_failure(self, monkeypatch):
        """Test: KeyboardInterrupt while sleeping gives up instead of raising."""
        def interrupted(seconds):
            raise KeyboardInterrupt

        monkeypatch.setattr(waiter_module.time, "sleep", interrupted)
        waiter = Waiter(5, 1)
        assert waiter.retry_until(lambda: False) is False
        assert waiter.cancelled

    def test_exponential_delays_double_and_cap(self, monkeypatch):
        """Test: Exponential waiter doubles from 1s, caps at 30s and stops at max wait."""
        sleeps = []
        monkeypatch.setattr(waiter_module.time, "sleep", lambda s: sleeps.append(s))
        waiter = ExponentialWaiter(max_wait=100, initial_delay=1, max_delay=30, tick=1)
        assert waiter.retry_until(lambda: False) is False
        assert sleeps == [1, 2, 4, 8, 16, 30, 30, 9]
        assert sum(sleeps) == 100


class TestStorage:

    def test_duplicate_queued_submission_is_rejected(self, storage):
        """Test: The host refuses an identical submission that is still queued."""
        storage.define_job("deploy", schema(env="dev"))
        params = ParameterSet(values={"env": "dev"})
        assert storage.submit_job("deploy", params, Cause()) is not None
        assert storage.submit_job("deploy", params, Cause()) is None
        assert storage.submit_job("deploy", ParameterSet(values={"env": "prod"}), Cause()) is not None

    def test_build_numbers_increase(self, storage):
        """Test: Every started run takes the next build number."""
        storage.define_job("build")
        assert storage.start_run("build").number == 1
        assert storage.start_run("build").number == 2
        storage.define_job("build", schema(x="1"))
        assert storage.start_run("build").number == 3

    def test_stats(self, storage):
        """Test: Statistics count runs by state and result."""
        storage.define_job("build")
        run = storage.start_run("build")
        storage.start_run("build")
        storage.finish_run(run.id, Result.UNSTABLE)
        stats = storage.get_stats()
        assert stats["total"] == 2
        assert stats["running"] == 1
        assert stats["finished"] == 1
        assert stats["UNSTABLE"] == 1


class TestJobHandle:

    def test_handle_resolves_once(self, storage):
        """Test: A handle goes from queued to started and stays there."""
        storage.define_job("build")
        ticket = storage.submit_job("build", ParameterSet(), Cause())
        handle = JobHandle(storage, "build", ticket)

        assert handle.poll() is False
        assert handle.state == HandleState.QUEUED
        storage.start_next()
        assert handle.poll() is True
        assert handle.state == HandleState.STARTED
        assert handle.run.id == "build#1"
        assert handle.cancel() is False
        assert handle.state == HandleState.STARTED

    def test_cancel_queued_handle(self, storage):
        """Test: Cancelling a queued submission fails the handle for good."""
        storage.define_job("build")
        ticket = storage.submit_job("build", ParameterSet(), Cause())
        handle = JobHandle(storage, "build", ticket)

        assert handle.cancel() is True
        assert handle.state == HandleState.FAILED
        assert storage.start_next() is None
        assert handle.poll() is True
        assert handle.state == HandleState.FAILED


class TestJobTrigger:

    def test_unknown_or_disabled_job(self, host, fast_config):
        """Test: Triggering something that isn't a triggerable job fails immediately."""
        host.define_job("off", disabled=True)
        trigger = JobTrigger(host, fast_config)
        with pytest.raises(JobNotFound):
            trigger.submit("missing")
        with pytest.raises(JobNotFound):
            trigger.submit("off")
        assert host.submissions == []

    def test_trigger_only_returns_queued_handle(self, storage, fast_config):
        """Test: Trigger-only queues the job and doesn't wait."""
        storage.define_job("deploy", schema(env="dev"))
        handle = JobTrigger(storage, fast_config).submit("deploy", "env=prod", trigger_only=True)
        assert handle.state == HandleState.QUEUED
        assert [item.parameters for item in storage.list_queue()] == [{"env": "prod"}]

    def test_submit_waits_for_start(self, host, fast_config):
        """Test: Without trigger-only the handle comes back started."""
        host.define_job("deploy", schema(env="dev"))
        handle = JobTrigger(host, fast_config).submit("deploy", "env=prod", Cause(kind=CauseKind.USER))
        assert handle.state == HandleState.STARTED
        assert handle.run.parameters == {"env": "prod"}

    def test_rejected_submission_is_retried(self, host, fast_config):
        """Test: Transient rejections are retried before succeeding."""
        host.define_job("deploy")
        host.rejections["deploy"] = 2
        handle = JobTrigger(host, fast_config).submit("deploy")
        assert handle.run.id == "deploy#1"
        assert host.submissions.count("deploy") == 3

    def test_queue_rejected_after_five_attempts(self, host, fast_config):
        """Test: Permanent rejection gives up after the bounded attempts."""
        host.define_job("deploy")
        host.rejections["deploy"] = -1
        with pytest.raises(QueueRejected) as info:
            JobTrigger(host, fast_config).submit("deploy")
        assert info.value.attempts == 5
        assert host.submissions.count("deploy") == 5

    def test_never_started_keeps_handle_queued(self, storage, fast_config):
        """Test: A run that never starts times out with a still-usable handle."""
        storage.define_job("deploy")
        with pytest.raises(NeverStarted) as info:
            JobTrigger(storage, fast_config).submit("deploy")
        handle = info.value.handle
        assert handle.state == HandleState.QUEUED
        storage.start_next()
        assert handle.poll() is True
        assert handle.run.id == "deploy#1"


class TestBuildWaiter:

    def test_await_finish_returns_result(self, storage, fast_config):
        """Test: A finished run reports its result."""
        storage.define_job("build")
        run = storage.start_run("build")
        storage.finish_run(run.id, Result.UNSTABLE)
        assert BuildWaiter(storage, fast_config).await_finish(run) == Result.UNSTABLE

    def test_await_finish_still_running(self, storage, fast_config):
        """Test: Bounded wait on a running build reports StillRunning."""
        storage.define_job("build")
        run = storage.start_run("build")
        with pytest.raises(StillRunning):
            BuildWaiter(storage, fast_config).await_finish(run.id, retries=2)
        assert storage.get_run(run.id).state == RunState.RUNNING

    def test_cancelled_wait_is_not_success(self, storage, fast_config):
        """Test: Cancelling an unbounded wait ends it as not finished."""
        storage.define_job("build")
        run = storage.start_run("build")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(StillRunning):
            BuildWaiter(storage, fast_config, cancel).await_finish(run.id)

    def test_await_start_never_started(self, storage, fast_config):
        """Test: await_start gives up on a queued handle."""
        storage.define_job("build")
        handle = JobHandle(storage, "build", storage.submit_job("build", ParameterSet(), Cause()))
        with pytest.raises(NeverStarted):
            BuildWaiter(storage, fast_config).await_start(handle)

    def test_glob_matching(self):
        """Test: Artifact globs match nested paths."""
        assert matches("reports/a.xml", "**/*.xml")
        assert matches("a.xml", "**/*.xml")
        assert not matches("reports/a.txt", "**/*.xml")

    def test_copy_artifacts_is_best_effort(self, storage, fast_config, tmp_path, caplog):
        """Test: A failing file copy is logged and the rest are still copied."""
        storage.define_job("build")
        run = storage.start_run("build")
        artifacts = storage.artifacts_dir(run)
        (artifacts / "reports").mkdir(parents=True)
        (artifacts / "reports" / "a.xml").write_text("<a/>")
        (artifacts / "reports" / "b.xml").write_text("<b/>")
        (artifacts / "log.txt").write_text("log")
        workspace = tmp_path / "ws"
        (workspace / "build" / "b.xml").mkdir(parents=True)

        caplog.set_level(logging.INFO, logger="triggerctl")
        copied = BuildWaiter(storage, fast_config).copy_artifacts(run, "**/*.xml", workspace)

        assert copied == [workspace / "build" / "a.xml"]
        assert (workspace / "build" / "a.xml").read_text() == "<a/>"
        assert not (workspace / "build" / "log.txt").exists()
        assert "unable to copy file 'reports/b.xml'" in caplog.text

    def test_wait_for_build_copies_when_finished(self, storage, fast_config, tmp_path):
        """Test: Waiting for an existing build copies its artifacts afterwards."""
        storage.define_job("build")
        run = storage.start_run("build")
        storage.artifacts_dir(run).mkdir(parents=True)
        (storage.artifacts_dir(run) / "out.txt").write_text("done")
        storage.finish_run(run.id, Result.SUCCESS)

        context = StepContext(host=storage, config=fast_config, workspace=tmp_path / "ws")
        outcome = WaitForBuildStep("build", "1", files_to_copy="*.txt").perform(context)
        assert outcome.result == Result.SUCCESS
        assert (tmp_path / "ws" / "build" / "out.txt").read_text() == "done"

    def test_wait_for_unknown_build(self, storage, fast_config):
        """Test: Waiting for a build that doesn't exist fails with the run named."""
        storage.define_job("build")
        outcome = WaitForBuildStep("build", "7").perform(StepContext(host=storage, config=fast_config))
        assert outcome.result == Result.FAILURE
        assert "build#7" in outcome.failures


class TestDownstreamTracker:

    def test_record_keeps_order_and_resolve_skips_missing(self, storage):
        """Test: Children are listed in record order; deleted runs are skipped."""
        storage.define_job("parent")
        storage.define_job("child")
        parent = storage.start_run("parent")
        first, second = storage.start_run("child"), storage.start_run("child")
        tracker = DownstreamTracker(storage)
        tracker.record(parent, first)
        tracker.record(parent, second)

        assert tracker.list(parent) == ["child#1", "child#2"]
        storage.delete_run(first.id)
        assert [run.id for run in tracker.resolve(parent)] == ["child#2"]
        assert tracker.list(parent) == ["child#1", "child#2"]

    def test_concurrent_records(self, storage):
        """Test: Concurrent appends on one parent lose nothing."""
        tracker = DownstreamTracker(storage)

        def record_many(worker):
            for i in range(5):
                tracker.record("parent#1", f"child-{worker}#{i}")

        threads = [threading.Thread(target=record_many, args=(w,)) for w in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        recorded = tracker.list("parent#1")
        assert len(recorded) == 40
        assert len(set(recorded)) == 40
        assert len(tracker._locks) == 0


class TestRetryController:

    def _failed_run(self, host, result=Result.FAILURE):
        host.define_job("nightly", schema(branch="main"))
        run = host.start_run("nightly", {"branch": "dev"})
        return host.finish_run(run.id, result)

    def test_failed_run_is_retried_with_provenance(self, host, fast_config):
        """Test: A failed run is rescheduled and the new run points back at it."""
        run = self._failed_run(host)
        decision = RetryController(host, fast_config).maybe_retry(run, RetryPolicy(threshold=Result.FAILURE))

        assert decision.retried
        assert decision.run_id == "nightly#2"
        new_run = host.get_run("nightly#2")
        assert new_run.parameters == {"branch": "dev"}
        assert new_run.cause == Cause.retry(run)
        assert host.get_retry_provenance(new_run.id) == run.id
        assert host.get_retried_as(run.id) == new_run.id

    def test_run_is_retried_at_most_once(self, host, fast_config):
        """Test: Evaluating the same run twice issues one retry."""
        run = self._failed_run(host)
        controller = RetryController(host, fast_config)

        assert controller.maybe_retry(run.id).retried
        second = controller.maybe_retry(run.id)
        assert not second.retried
        assert second.reason == ALREADY_RETRIED
        assert second.run_id == "nightly#2"
        assert host.submissions.count("nightly") == 1

    def test_retry_is_not_retried_again(self, host, fast_config):
        """Test: The retry itself is never retried, whatever its result."""
        run = self._failed_run(host)
        controller = RetryController(host, fast_config)
        retry_id = controller.maybe_retry(run.id).run_id
        host.finish_run(retry_id, Result.FAILURE)

        decision = controller.maybe_retry(retry_id)
        assert not decision.retried
        assert decision.reason == ALREADY_RETRIED

    def test_result_better_than_threshold(self, host, fast_config):
        """Test: UNSTABLE is not retried under a FAILURE threshold, but is under UNSTABLE."""
        run = self._failed_run(host, Result.UNSTABLE)
        controller = RetryController(host, fast_config)
        assert not controller.maybe_retry(run.id, RetryPolicy(threshold=Result.FAILURE)).retried
        assert controller.maybe_retry(run.id, RetryPolicy(threshold=Result.UNSTABLE)).retried

    def test_group_members_defer_to_group(self, host, fast_config):
        """Test: A sub-run of a group is left to the group's own teardown."""
        host.define_job("matrix")
        host.define_job("axis")
        group = host.start_run("matrix")
        member = host.start_run("axis", group=group.id)
        host.finish_run(member.id, Result.FAILURE)
        host.finish_run(group.id, Result.FAILURE)
        controller = RetryController(host, fast_config)

        decision = controller.maybe_retry(member.id)
        assert not decision.retried
        assert "deferred" in decision.reason
        assert controller.maybe_retry(group.id).run_id == "matrix#2"

    def test_unfinished_run_is_not_retried(self, host, fast_config):
        """Test: Only finished runs are considered."""
        host.define_job("nightly")
        run = host.start_run("nightly")
        assert RetryController(host, fast_config).maybe_retry(run.id).reason == "not finished"

    def test_teardown_reports_errors_as_decisions(self, host, fast_config):
        """Test: Teardown never raises, even when the retry can't be queued."""
        run = self._failed_run(host)
        host.rejections["nightly"] = -1
        decision = RetryController(host, fast_config).teardown(run)
        assert not decision.retried
        assert "rejected" in decision.reason
        assert host.get_retried_as(run.id) is None

        host.rejections["nightly"] = 0
        assert RetryController(host, fast_config).maybe_retry(run.id).retried

    def test_retry_that_starts_late_is_linked(self, storage, fast_config):
        """Test: A retry still queued after the start wait is linked once it starts."""
        storage.define_job("nightly")
        run = storage.finish_run(storage.start_run("nightly").id, Result.FAILURE)
        controller = RetryController(storage, fast_config)

        with pytest.raises(NeverStarted):
            controller.maybe_retry(run.id)
        assert storage.get_retried_as(run.id).startswith(QUEUED_PREFIX)
        still_queued = controller.maybe_retry(run.id)
        assert still_queued.reason == ALREADY_RETRIED
        assert still_queued.run_id is None

        storage.start_next()
        decision = controller.maybe_retry(run.id)
        assert not decision.retried
        assert decision.run_id == "nightly#2"
        assert storage.get_retried_as(run.id) == "nightly#2"
        assert storage.get_retry_provenance("nightly#2") == run.id
        assert len(storage.list_queue()) == 0

    def test_dropped_queued_retry_can_be_reissued(self, storage, fast_config):
        """Test: Cancelling a queued retry clears the marker so the run can be retried."""
        storage.define_job("nightly")
        run = storage.finish_run(storage.start_run("nightly").id, Result.FAILURE)
        controller = RetryController(storage, fast_config)

        with pytest.raises(NeverStarted) as info:
            controller.maybe_retry(run.id)
        info.value.handle.cancel()

        assert controller.retried_as(run.id) is None
        with pytest.raises(NeverStarted):
            controller.maybe_retry(run.id)
        assert len(storage.list_queue()) == 1


class TestTriggerJobStep:

    def test_condition_words(self):
        """Test: Run conditions accept true/yes, optionally negated."""
        assert should_run(None)
        assert should_run("")
        assert should_run("true")
        assert should_run(" YES ")
        assert should_run("!false")
        assert not should_run("!true")
        assert not should_run("maybe")
        assert not should_run("false")

    def test_trigger_records_downstream_and_variable(self, host, fast_config):
        """Test: Triggering with a variable records the run and binds its number."""
        host.define_job("A", schema(x="1"))
        host.define_job("pipeline")
        parent = host.start_run("pipeline")
        context = StepContext(host=host, config=fast_config, parent=parent)

        step = TriggerJobStep("A", "x=5\n# comment\nbad_line", variable="A_BUILD")
        outcome = step.perform(context)

        assert outcome.ok
        assert outcome.run_ids == ["A#1"]
        assert outcome.variables == {"A_BUILD": "1"}
        run = host.get_run("A#1")
        assert run.parameters == {"x": "5"}
        assert run.cause == Cause.upstream(parent)
        assert host.list_downstream(parent.id) == ["A#1"]
        assert host.get_variables(parent.id) == {"A_BUILD": "1"}

    def test_trigger_only_without_variable(self, storage, fast_config):
        """Test: With no variable the job is queued and nothing is recorded."""
        storage.define_job("A")
        storage.define_job("pipeline")
        parent = storage.start_run("pipeline")
        outcome = TriggerJobStep("A").perform(StepContext(host=storage, config=fast_config, parent=parent))

        assert outcome.ok
        assert outcome.run_ids == []
        assert len(storage.list_queue()) == 1
        assert storage.list_downstream(parent.id) == []

    def test_condition_skips_trigger(self, host, fast_config):
        """Test: A non-affirmative condition skips triggering entirely."""
        host.define_job("A")
        outcome = TriggerJobStep("A", variable="B", condition="maybe").perform(
            StepContext(host=host, config=fast_config))
        assert outcome.skipped
        assert outcome.ok
        assert host.submissions == []

    def test_missing_job_fails_step(self, host, fast_config):
        """Test: An unknown job fails the step with the job named."""
        outcome = TriggerJobStep("ghost", variable="B").perform(StepContext(host=host, config=fast_config))
        assert outcome.result == Result.FAILURE
        assert "ghost" in outcome.failures["ghost"]

    def test_wait_limit_defaults_to_fifteen_minutes(self):
        """Test: Non-positive wait limits fall back to 15 minutes."""
        assert TriggerJobStep("A", wait_limit_minutes=0).wait_limit_minutes == 15


class TestTriggerAndWaitStep:

    def _jobs(self, host, **results):
        host.define_job("pipeline")
        for name, result in results.items():
            host.define_job(name, schema(branch="main"))
            host.results[name] = result
        return host.start_run("pipeline")

    def test_all_jobs_finish_and_results_combine(self, host, fast_config):
        """Test: Fan-out waits for all jobs and keeps the worst result."""
        parent = self._jobs(host, a=Result.SUCCESS, b=Result.UNSTABLE, c=Result.SUCCESS)
        context = StepContext(host=host, config=fast_config, parent=parent)
        outcome = TriggerAndWaitStep("a\nb\n\nc\n", "branch=dev").perform(context)

        assert outcome.result == Result.UNSTABLE
        assert outcome.ok
        assert sorted(outcome.run_ids) == ["a#1", "b#1", "c#1"]
        assert sorted(host.list_downstream(parent.id)) == ["a#1", "b#1", "c#1"]
        assert host.get_run("b#1").parameters == {"branch": "dev"}

    def test_transient_rejection_is_requeued(self, host, fast_config):
        """Test: A rejected job goes to the back of the line and is retried."""
        parent = self._jobs(host, a=Result.SUCCESS, b=Result.SUCCESS)
        host.rejections["a"] = 2
        outcome = TriggerAndWaitStep("a\nb", "").perform(StepContext(host=host, config=fast_config, parent=parent))

        assert outcome.result == Result.SUCCESS
        assert host.submissions == ["a", "b", "a", "a"]

    def test_permanent_rejection_fails_only_that_member(self, host, fast_config):
        """Test: With the default pass limit a permanently rejected job fails the aggregate; the others still finish."""
        parent = self._jobs(host, a=Result.SUCCESS, b=Result.SUCCESS, c=Result.SUCCESS)
        host.rejections["b"] = -1
        outcome = TriggerAndWaitStep("a\nb\nc", "").perform(StepContext(host=host, config=fast_config, parent=parent))

        assert outcome.result == Result.FAILURE
        assert sorted(outcome.run_ids) == ["a#1", "c#1"]
        assert host.get_run("a#1").result == Result.SUCCESS
        assert host.get_run("c#1").result == Result.SUCCESS
        assert list(outcome.failures) == ["b"]
        assert host.submissions.count("b") == Config().fanout_max_passes
        with pytest.raises(PartialFanOutFailure):
            outcome.raise_for_failures()

    def test_unknown_names_are_skipped(self, host, fast_config):
        """Test: Names that aren't jobs are skipped."""
        parent = self._jobs(host, a=Result.SUCCESS)
        outcome = TriggerAndWaitStep("a\nnope", "").perform(StepContext(host=host, config=fast_config, parent=parent))
        assert outcome.result == Result.SUCCESS
        assert outcome.run_ids == ["a#1"]


class TestMatrixStep:

    def _setup(self, host, fast_config, pre=Result.SUCCESS, post=Result.SUCCESS):
        host.define_job("matrix")
        host.define_job("pre")
        host.define_job("post")
        host.results.update({"pre": pre, "post": post})
        parent = host.start_run("matrix")
        return StepContext(host=host, config=fast_config, parent=parent)

    def test_hooks_wrap_the_group(self, host, fast_config):
        """Test: Pre-hook runs before the group, post-hook after it."""
        context = self._setup(host, fast_config)
        seen = []

        def body(ctx):
            seen.append(host.get_run("pre#1").state)
            return Result.UNSTABLE

        outcome = MatrixStep(body, pre_job="pre", post_job="post").perform(context)
        assert seen == [RunState.FINISHED]
        assert outcome.result == Result.UNSTABLE
        assert host.list_downstream(context.parent.id) == ["pre#1", "post#1"]

    def test_failed_pre_hook_aborts_group(self, host, fast_config):
        """Test: A failing pre-hook stops the group but the post-hook still runs."""
        context = self._setup(host, fast_config, pre=Result.FAILURE)
        calls = []
        outcome = MatrixStep(lambda ctx: calls.append(1) or Result.SUCCESS,
                             pre_job="pre", post_job="post").perform(context)

        assert calls == []
        assert outcome.result == Result.FAILURE
        assert host.get_run("post#1") is not None

    def test_post_hook_runs_when_group_raises(self, host, fast_config):
        """Test: The post-hook runs and the group's error still propagates."""
        context = self._setup(host, fast_config)

        def body(ctx):
            raise RuntimeError("axis exploded")

        with pytest.raises(RuntimeError, match="axis exploded"):
            MatrixStep(body, post_job="post").perform(context)
        assert host.get_run("post#1").result == Result.SUCCESS

    def test_failed_post_hook_downgrades_result(self, host, fast_config):
        """Test: A failing post-hook worsens an otherwise good result."""
        context = self._setup(host, fast_config, post=Result.FAILURE)
        outcome = MatrixStep(lambda ctx: Result.SUCCESS, post_job="post").perform(context)
        assert outcome.result == Result.FAILURE
        assert "post" in outcome.failures

    def test_failed_group_is_retried_once_as_a_whole(self, host, fast_config):
        """Test: With a retry policy the group run is retried once and its members are not."""
        context = self._setup(host, fast_config)
        host.define_job("axis")

        def body(ctx):
            for _ in range(2):
                member = host.start_run("axis", group=ctx.parent.id)
                host.finish_run(member.id, Result.FAILURE)
            return Result.FAILURE

        outcome = MatrixStep(body, post_job="post", retry_policy=RetryPolicy()).perform(context)

        assert outcome.result == Result.FAILURE
        assert outcome.retry.retried
        assert outcome.retry.run_id == "matrix#2"
        group = host.get_run("matrix#1")
        assert group.state == RunState.FINISHED
        assert group.result == Result.FAILURE
        assert host.get_retried_as("matrix#1") == "matrix#2"
        assert host.get_run("matrix#2").cause == Cause.retry(group)

        controller = RetryController(host, fast_config)
        assert all("deferred" in controller.maybe_retry(f"axis#{n}").reason for n in (1, 2))
        assert host.submissions.count("axis") == 0
        assert host.submissions.count("matrix") == 1

    def test_good_group_is_finished_but_not_retried(self, host, fast_config):
        """Test: A group better than the threshold is only finished."""
        context = self._setup(host, fast_config)
        outcome = MatrixStep(lambda ctx: Result.UNSTABLE, retry_policy=RetryPolicy()).perform(context)

        assert not outcome.retry.retried
        assert host.get_run("matrix#1").result == Result.UNSTABLE
        assert host.get_run("matrix#2") is None

    def test_group_that_raises_is_retried(self, host, fast_config):
        """Test: An exception in the group counts as FAILURE for the group retry."""
        context = self._setup(host, fast_config)

        def body(ctx):
            raise RuntimeError("axis exploded")

        with pytest.raises(RuntimeError):
            MatrixStep(body, retry_policy=RetryPolicy()).perform(context)
        assert host.get_run("matrix#1").result == Result.FAILURE
        assert host.get_retried_as("matrix#1") == "matrix#2"


class TestStepContext:

    def test_storage_is_an_execution_host(self, storage, host):
        """Test: The reference host and its subclasses satisfy the host interface."""
        assert isinstance(storage, ExecutionHost)
        assert isinstance(host, ExecutionHost)

    def test_context_rejects_non_hosts(self):
        """Test: A step context needs a real host."""
        with pytest.raises(ValidationError):
            StepContext(host=object())

    def test_context_builds_a_tracker(self, storage, fast_config):
        """Test: Without a tracker the context creates one for its host."""
        context = StepContext(host=storage, config=fast_config)
        assert isinstance(context.tracker, DownstreamTracker)
        assert context.tracker.host is storage
        assert context.config is fast_config
