"""Tests for the Scheduler: parallel jobs, aggregation, allow-failure, cancellation."""

from __future__ import annotations

import _thread
import threading

import pytest

from conftest import FakeStepRunner, make_job, make_report
from matrixci.dsl import allow_failure, axis, include, pipeline, sh, steps
from matrixci.executor import JobExecutor
from matrixci.matrix import expand
from matrixci.model import JobState, OutcomeStatus, PipelineOutcome, aggregate
from matrixci.scheduler import Scheduler, default_workers, run_pipeline


def _four_toolchains():
    return pipeline(
        "toolchains",
        axes=[axis("rust", "1.21.0", "stable", "beta", "nightly")],
        allow_failures=[allow_failure(rust="nightly")],
        script=steps(default=[sh("test", "cargo test")]),
    )


def _fail_on(value):
    return lambda env: 1 if env.get("RUST") == value else 0


def _run(config, runner, console, workers=4):
    executor = JobExecutor(config, step_runner=runner, console=console)
    return Scheduler(executor, max_workers=workers, console=console).run_pipeline(expand(config))


class TestAggregation:
    def test_two_toolchains_nightly_allowed(self, console):
        config = pipeline(
            "two",
            axes=[axis("toolchain", "stable", "nightly")],
            allow_failures=[allow_failure(toolchain="nightly")],
            script=steps(default=[sh("test", "cargo test")]),
        )
        runner = FakeStepRunner(exit_codes={"test": lambda env: 1 if env["TOOLCHAIN"] == "nightly" else 0})
        report = _run(config, runner, console)
        assert len(report.outcomes) == 2
        assert [o.status for o in report.outcomes] == [OutcomeStatus.SUCCESS, OutcomeStatus.FAILED]
        assert report.outcome is PipelineOutcome.SUCCESS

    def test_nightly_failure_is_tolerated(self, console):
        runner = FakeStepRunner(exit_codes={"test": _fail_on("nightly")})
        report = _run(_four_toolchains(), runner, console)
        assert [o.status for o in report.outcomes] == [OutcomeStatus.SUCCESS] * 3 + [OutcomeStatus.FAILED]
        assert report.outcome is PipelineOutcome.SUCCESS
        assert report.exit_code == 0
        assert report.outcomes[3].suppressed

    def test_counted_failure_fails_pipeline_and_siblings_finish(self, console):
        runner = FakeStepRunner(exit_codes={"test": _fail_on("1.21.0")})
        report = _run(_four_toolchains(), runner, console)
        assert report.outcome is PipelineOutcome.FAILED
        assert report.exit_code == 1
        assert runner.count("test") == 4
        assert [o.ok for o in report.outcomes] == [False, True, True, True]

    def test_allow_failure_never_flips_outcome(self):
        ok, bad = make_job(1), make_job(2, allow_failure=True)
        assert aggregate(make_report((ok, OutcomeStatus.SUCCESS), (bad, OutcomeStatus.ERRORED)).outcomes) is PipelineOutcome.SUCCESS
        assert aggregate(make_report((ok, OutcomeStatus.SUCCESS), (bad, OutcomeStatus.SUCCESS)).outcomes) is PipelineOutcome.SUCCESS
        assert aggregate(make_report((ok, OutcomeStatus.FAILED), (bad, OutcomeStatus.SUCCESS)).outcomes) is PipelineOutcome.FAILED

    def test_only_allow_failure_jobs_is_success(self):
        report = make_report((make_job(1, allow_failure=True), OutcomeStatus.FAILED))
        assert report.outcome is PipelineOutcome.SUCCESS

    def test_empty_pipeline_is_success(self):
        assert aggregate([]) is PipelineOutcome.SUCCESS


class TestScheduling:
    def test_outcomes_in_job_order(self, console):
        report = _run(_four_toolchains(), FakeStepRunner(), console)
        assert [o.job.number for o in report.outcomes] == [1, 2, 3, 4]

    def test_jobs_run_concurrently(self, console):
        barrier = threading.Barrier(4, timeout=5)
        runner = FakeStepRunner(hooks={"test": lambda step, env, cwd: barrier.wait()})
        report = _run(_four_toolchains(), runner, console, workers=4)
        assert report.outcome is PipelineOutcome.SUCCESS
        assert all(o.ok for o in report.outcomes)

    def test_worker_bound_respected(self, console):
        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        def track(step, env, cwd):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            threading.Event().wait(0.01)
            with lock:
                active["now"] -= 1

        runner = FakeStepRunner(hooks={"test": track})
        _run(_four_toolchains(), runner, console, workers=2)
        assert active["peak"] <= 2

    def test_default_workers_at_least_one(self):
        assert default_workers() >= 1

    def test_module_level_helper(self, console):
        config = _four_toolchains()
        executor = JobExecutor(config, step_runner=FakeStepRunner(), console=console)
        report = run_pipeline(expand(config), executor, max_workers=2)
        assert len(report.outcomes) == 4


class TestCancellation:
    def test_cancel_from_a_running_step(self, console):
        config = _four_toolchains()
        executor = JobExecutor(config, step_runner=FakeStepRunner(), console=console)
        scheduler = Scheduler(executor, max_workers=1, console=console)
        executor.step_runner = FakeStepRunner(hooks={"test": lambda step, env, cwd: scheduler.cancel()})

        report = scheduler.run_pipeline(expand(config))
        assert report.cancelled is True
        assert report.exit_code == 130
        assert report.outcomes[0].ok
        assert all(o.cancelled for o in report.outcomes[1:])
        assert executor.step_runner.count("test") == 1

    def test_keyboard_interrupt_finalizes_running_and_cancels_queued(self, console):
        config = pipeline(
            "interrupted",
            axes=[axis("rust", "stable", "beta", "nightly")],
            script=steps(default=[sh("build", "cargo build"), sh("test", "cargo test")]),
        )
        executor = JobExecutor(config, step_runner=FakeStepRunner(), console=console)

        def interrupt(step, env, cwd):
            # let the main thread reach as_completed() first
            threading.Event().wait(0.2)
            _thread.interrupt_main()
            executor.cancel_event.wait(5)

        executor.step_runner = FakeStepRunner(hooks={"build": interrupt})
        report = Scheduler(executor, max_workers=1, console=console).run_pipeline(expand(config))

        assert report.cancelled is True
        assert report.exit_code == 130
        running, *queued = report.outcomes
        assert running.cancelled and running.status is OutcomeStatus.FAILED
        assert running.states[-2:] == [JobState.FINALIZING, JobState.DONE]
        assert executor.step_runner.step_names() == ["build"]
        for o in queued:
            assert o.cancelled and o.status is OutcomeStatus.ERRORED
            assert o.states == [JobState.PENDING, JobState.DONE]


def test_report_to_dict(console):
    runner = FakeStepRunner(exit_codes={"test": _fail_on("nightly")})
    config = pipeline(
        "docs",
        axes=[axis("rust", "stable", "nightly")],
        include=[include(rust="stable", env="BUILD_DOC=1")],
        allow_failures=[allow_failure(rust="nightly")],
        script=steps(default=[sh("test", "cargo test")]),
    )
    data = _run(config, runner, console).to_dict()
    assert data["outcome"] == "success"
    assert data["exit_code"] == 0
    assert [j["name"] for j in data["jobs"]] == ["rust=stable", "rust=nightly", "rust=stable BUILD_DOC=1"]
    assert data["jobs"][1]["suppressed"] is True
    assert data["jobs"][2]["mode"] == "doc-build"
    assert data["deploy"] is None


@pytest.mark.parametrize("workers", [None, 0, -3])
def test_non_positive_workers_fall_back_to_default(workers, console):
    executor = JobExecutor(_four_toolchains(), step_runner=FakeStepRunner(), console=console)
    assert Scheduler(executor, max_workers=workers).max_workers == default_workers()
