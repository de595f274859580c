# scheduler.py
from __future__ import annotations

import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from typing import Dict, Iterable, List, Optional

from .executor import JobExecutor
from .model import JobOutcome, JobSpec, JobState, OutcomeStatus, PipelineReport
from .ui.console import Console, get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Runs every Job Spec of a pipeline concurrently and collects outcomes.

    Matrix jobs have no dependencies on each other, so everything is
    submitted at once and bounded only by `max_workers`. A failing job never
    stops its siblings.
    """

    def __init__(
        self,
        executor: JobExecutor,
        max_workers: Optional[int] = None,
        *,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.max_workers = max_workers if max_workers and max_workers > 0 else default_workers()
        self.console = console or get_console()

    @property
    def cancel_event(self):
        return self.executor.cancel_event

    def cancel(self) -> None:
        """Ask every job to stop after its current step. Cache release still runs."""
        self.cancel_event.set()

    def _collect(self, fut: Future, job: JobSpec) -> JobOutcome:
        if fut.cancelled():
            return JobOutcome(
                job=job,
                status=OutcomeStatus.ERRORED,
                error=f"[{job.label}] cancelled before start",
                cancelled=True,
                states=[JobState.PENDING, JobState.DONE],
            )
        try:
            return fut.result()
        except Exception as e:
            # executor.run() reports its own failures; this is a bug guard
            return JobOutcome(
                job=job,
                status=OutcomeStatus.ERRORED,
                error=f"[{job.label}] {type(e).__name__}: {e}",
                states=[JobState.PENDING, JobState.DONE],
            )

    def run_pipeline(self, jobs: Iterable[JobSpec]) -> PipelineReport:
        jobs = list(jobs)
        results: Dict[int, JobOutcome] = {}
        interrupted = False

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="matrixci-job") as pool:
            futures: Dict[Future, JobSpec] = {pool.submit(self.executor.run, job): job for job in jobs}
            try:
                for fut in as_completed(futures):
                    job = futures[fut]
                    results[job.number] = self._collect(fut, job)
            except KeyboardInterrupt:
                interrupted = True
                self.console.print_info("\nInterrupted, waiting for running jobs to finalize...")
                self.cancel()
                for fut in futures:
                    fut.cancel()
                # in-flight jobs still go through FINALIZING
                wait(list(futures))
                for fut, job in futures.items():
                    if job.number not in results:
                        results[job.number] = self._collect(fut, job)

        outcomes: List[JobOutcome] = [results[j.number] for j in jobs]
        return PipelineReport(
            outcomes=outcomes,
            cancelled=interrupted or self.cancel_event.is_set(),
        )


def run_pipeline(
    jobs: Iterable[JobSpec],
    executor: JobExecutor,
    max_workers: Optional[int] = None,
) -> PipelineReport:
    return Scheduler(executor, max_workers=max_workers).run_pipeline(jobs)
