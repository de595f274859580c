# executor.py
from __future__ import annotations

import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from .cache import CacheHandle, CacheManager
from .errors import CacheError, StepFailure, StepTimeout
from .model import JobOutcome, JobSpec, JobState, OutcomeStatus, PipelineConfig, Steps
from .steps import ShellStepRunner, StepRunner
from .ui.console import Console, get_console

# Job lifecycle:
#
#   PENDING -> PREPARING -> RUNNING -> SUCCEEDED | FAILED -> FINALIZING -> DONE
#
# PREPARING: acquire cache, run setup steps (failure skips RUNNING)
# RUNNING:   script steps for the job's mode, fail-fast
# FINALIZING: after_success steps (only after success), then cache release.
#             Always entered, whatever happened before.


class _Cancelled(Exception):
    pass


def _axis_env_name(axis: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", axis).upper()


class JobExecutor:
    """Runs one Job Spec through its lifecycle and returns its outcome."""

    def __init__(
        self,
        config: PipelineConfig,
        cache_manager: Optional[CacheManager] = None,
        step_runner: Optional[StepRunner] = None,
        *,
        workdir: str | Path = ".",
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.cache_manager = cache_manager
        self.step_runner: StepRunner = step_runner or ShellStepRunner()
        self.workdir = Path(workdir).resolve()
        self.timeout = timeout if timeout is not None else config.job_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def step_env(self, job: JobSpec, handle: Optional[CacheHandle] = None) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for axis, value in job.axis_values:
            env[_axis_env_name(axis)] = value
        env.update(job.env)
        env["MATRIXCI_JOB"] = job.name
        env["MATRIXCI_JOB_NUMBER"] = str(job.number)
        env["MATRIXCI_MODE"] = job.mode.value
        if handle is not None and handle.enabled:
            env["MATRIXCI_CACHE_DIR"] = str(handle.root)
        return env

    def _run_steps(self, job: JobSpec, steps: Steps, env: Dict[str, str], deadline: Optional[float]) -> None:
        for step in steps:
            if self.cancel_event.is_set():
                raise _Cancelled()

            remaining = None
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise StepTimeout(job=job.label, step=step.name, timeout=self.timeout)

            self.console.print_step(job, step.name)
            try:
                result = self.step_runner(step, env=env, cwd=self.workdir, timeout=remaining)
            except subprocess.TimeoutExpired as e:
                raise StepTimeout(job=job.label, step=step.name, timeout=self.timeout) from e

            if result.exit_code != 0:
                raise StepFailure(
                    job=job.label,
                    step=step.name,
                    cmd=step.run,
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            if deadline is not None and self.clock() > deadline:
                raise StepTimeout(job=job.label, step=step.name, timeout=self.timeout)

    def _acquire(self, job: JobSpec, outcome: JobOutcome) -> Optional[CacheHandle]:
        if self.cache_manager is None:
            return None
        try:
            handle = self.cache_manager.acquire(job)
        except CacheError as e:
            outcome.warnings.append(str(e))
            self.console.print_warning(str(e))
            return None
        if handle.enabled:
            self.console.print_cache_restored(job, handle.restored)
        return handle

    def _release(self, job: JobSpec, handle: Optional[CacheHandle], outcome: JobOutcome) -> None:
        if handle is None or self.cache_manager is None:
            return
        try:
            status = self.cache_manager.release(handle, outcome)
        except CacheError as e:
            outcome.warnings.append(str(e))
            self.console.print_warning(str(e))
            return
        if handle.enabled:
            self.console.print_cache_saved(job, status)

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------

    def run(self, job: JobSpec) -> JobOutcome:
        outcome = JobOutcome(job=job, status=OutcomeStatus.FAILED, states=[JobState.PENDING])
        start = self.clock()
        deadline = start + self.timeout if self.timeout else None
        handle: Optional[CacheHandle] = None
        succeeded = False

        self.console.print_job_start(job)
        try:
            try:
                if self.cancel_event.is_set():
                    raise _Cancelled()

                outcome.states.append(JobState.PREPARING)
                handle = self._acquire(job, outcome)
                env = self.step_env(job, handle)
                self._run_steps(job, self.config.setup.select(job.mode), env, deadline)

                outcome.states.append(JobState.RUNNING)
                self._run_steps(job, self.config.script.select(job.mode), env, deadline)
                succeeded = True
            except StepFailure as e:
                outcome.exit_code = e.exit_code
                outcome.failed_step = e.step
                outcome.error = str(e)
            except StepTimeout as e:
                outcome.timed_out = True
                outcome.failed_step = e.step
                outcome.error = str(e)
            except _Cancelled:
                outcome.cancelled = True
                outcome.error = f"[{job.label}] cancelled"
            except Exception as e:
                outcome.status = OutcomeStatus.ERRORED
                outcome.error = f"[{job.label}] {type(e).__name__}: {e}"

            if succeeded:
                outcome.status = OutcomeStatus.SUCCESS
                outcome.exit_code = 0
                outcome.states.append(JobState.SUCCEEDED)
            else:
                outcome.states.append(JobState.FAILED)

            outcome.states.append(JobState.FINALIZING)
            if succeeded:
                self._after_success(job, handle, outcome, deadline)
        finally:
            # cache release is guaranteed, even on BaseException
            self._release(job, handle, outcome)
            outcome.duration = self.clock() - start
            outcome.states.append(JobState.DONE)

        self.console.print_job_finished(outcome)
        return outcome

    def _after_success(
        self,
        job: JobSpec,
        handle: Optional[CacheHandle],
        outcome: JobOutcome,
        deadline: Optional[float],
    ) -> None:
        steps = self.config.after_success.select(job.mode)
        if not steps:
            return
        env = self.step_env(job, handle)
        try:
            self._run_steps(job, steps, env, deadline)
        except (StepFailure, StepTimeout) as e:
            # after_success never changes the job result
            outcome.warnings.append(f"after_success: {e}")
            self.console.print_warning(f"after_success: {e}")
        except _Cancelled:
            outcome.warnings.append(f"after_success: [{job.label}] cancelled")
        except Exception as e:
            outcome.warnings.append(f"after_success: {type(e).__name__}: {e}")
            self.console.print_warning(f"after_success: {type(e).__name__}: {e}")
