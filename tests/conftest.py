"""
Shared pytest fixtures for matrixci tests.

No test starts a real process: jobs run through FakeStepRunner, which
records every call and lets a test decide exit codes or hook into a step.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from matrixci.conditions import Mode
from matrixci.dsl import allow_failure, axis, include, pipeline, sh, steps
from matrixci.model import JobOutcome, JobSpec, OutcomeStatus, PipelineReport, Step
from matrixci.steps import StepResult
from matrixci.ui.console import Console


class FakeStepRunner:
    """
    Records (job, step name, env) for every step.

    exit_codes: step name -> exit code, or a callable(env) -> exit code
    hooks:      step name -> callable(step, env, cwd) run before returning
    """

    def __init__(
        self,
        exit_codes: Optional[Dict[str, object]] = None,
        hooks: Optional[Dict[str, Callable]] = None,
    ):
        self.exit_codes = dict(exit_codes or {})
        self.hooks = dict(hooks or {})
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []
        self.timeouts: List[Optional[float]] = []
        self._lock = threading.Lock()

    def __call__(self, step: Step, *, env: Mapping[str, str], cwd: Path, timeout: Optional[float] = None) -> StepResult:
        with self._lock:
            self.calls.append((env.get("MATRIXCI_JOB", ""), step.name, dict(env)))
            self.timeouts.append(timeout)
        hook = self.hooks.get(step.name)
        if hook is not None:
            hook(step, env, cwd)
        code = self.exit_codes.get(step.name, 0)
        if callable(code):
            code = code(env)
        return StepResult(exit_code=int(code))

    def step_names(self, job_name: Optional[str] = None) -> List[str]:
        return [s for j, s, _ in self.calls if job_name is None or j == job_name]

    def count(self, step_name: str) -> int:
        return sum(1 for _, s, _ in self.calls if s == step_name)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def console() -> Console:
    return Console(quiet=True)


@pytest.fixture()
def runner() -> FakeStepRunner:
    return FakeStepRunner()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def toolchain_config():
    """stable/nightly axis, nightly allowed to fail, one doc-build include."""
    return pipeline(
        "toolchains",
        axes=[axis("toolchain", "stable", "nightly")],
        allow_failures=[allow_failure(toolchain="nightly")],
        include=[include(toolchain="stable", env="BUILD_DOC=1")],
        setup=steps(sh("prepare", "fetch deps")),
        script=steps(
            doc_build=[sh("doc", "build docs")],
            default=[sh("test", "run tests")],
        ),
        after_success=steps(doc_build=[sh("doc index", "copy index")]),
    )


def make_job(
    number: int = 1,
    *,
    axes: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    mode: Mode = Mode.DEFAULT,
    allow_failure: bool = False,
    cache_key: Optional[str] = None,
) -> JobSpec:
    axes = axes or {}
    env = env or {}
    return JobSpec(
        number=number,
        axis_values=tuple(axes.items()),
        overrides=tuple(env.items()),
        env=env,
        mode=mode,
        allow_failure=allow_failure,
        cache_key=cache_key or f"key{number}",
    )


def make_outcome(job: JobSpec, status: OutcomeStatus = OutcomeStatus.SUCCESS) -> JobOutcome:
    return JobOutcome(job=job, status=status, exit_code=0 if status is OutcomeStatus.SUCCESS else 1)


def make_report(*pairs: Tuple[JobSpec, OutcomeStatus]) -> PipelineReport:
    return PipelineReport(outcomes=[make_outcome(j, s) for j, s in pairs])
