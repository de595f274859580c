# deploy.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .errors import DeployError
from .model import DeployConfig, DeployDecision, JobOutcome, JobSpec, PipelineOutcome, PipelineReport, Steps
from .settings import RepoContext
from .steps import ShellStepRunner, StepRunner
from .ui.console import Console, get_console


@dataclass(frozen=True)
class DeployContext:
    """What the deployment action gets to see."""
    branch: Optional[str]
    tag: Optional[str]
    token: Optional[str]
    trigger_job: JobSpec
    flags: Mapping[str, str] = field(default_factory=dict)


DeployAction = Callable[[Path, DeployContext], None]


class ShellDeployAction:
    """Runs opaque deploy steps with DEPLOY_* variables in their env."""

    def __init__(self, steps: Steps, step_runner: Optional[StepRunner] = None, *, workdir: str | Path = "."):
        self.steps = tuple(steps)
        self.step_runner: StepRunner = step_runner or ShellStepRunner()
        self.workdir = Path(workdir).resolve()

    def __call__(self, artifact_dir: Path, context: DeployContext) -> None:
        env: Dict[str, str] = dict(context.trigger_job.env)
        env.update(
            {
                "DEPLOY_DIR": str(artifact_dir),
                "DEPLOY_BRANCH": context.branch or "",
                "DEPLOY_TAG": context.tag or "",
                "DEPLOY_TOKEN": context.token or "",
            }
        )
        for step in self.steps:
            result = self.step_runner(step, env=env, cwd=self.workdir, timeout=None)
            if result.exit_code != 0:
                raise DeployError(
                    job=context.trigger_job.label,
                    message=f"deploy step '{step.name}' failed (exit={result.exit_code})",
                )


class DeployGate:
    """
    Decides, once per pipeline run, whether the deploy action fires.

    Conditions (all required):
      - aggregate pipeline outcome is SUCCESS
      - current branch is the configured branch
      - the trigger job exists and its own outcome is SUCCESS, even if it is
        allow-failure (aggregate success alone is not enough)
    """

    def __init__(
        self,
        config: DeployConfig,
        action: DeployAction,
        *,
        workdir: str | Path = ".",
        console: Optional[Console] = None,
    ):
        self.config = config
        self.action = action
        self.workdir = Path(workdir).resolve()
        self.console = console or get_console()
        self._lock = threading.Lock()
        self._fired: Optional[DeployDecision] = None

    @property
    def fired(self) -> bool:
        return self._fired is not None

    @property
    def artifact_dir(self) -> Path:
        return (self.workdir / self.config.local_dir).resolve()

    def is_trigger(self, job: JobSpec) -> bool:
        if job.mode is not self.config.trigger_mode:
            return False
        axes = job.axes
        if any(axes.get(k) != v for k, v in self.config.on_axes.items()):
            return False
        return all(job.env.get(k) == v for k, v in self.config.condition.items())

    def find_trigger(self, outcomes: List[JobOutcome]) -> Optional[JobOutcome]:
        for o in outcomes:
            if self.is_trigger(o.job):
                return o
        return None

    def evaluate(self, report: PipelineReport, context: RepoContext) -> DeployDecision:
        """Pure check of the gate conditions. Never runs the action."""
        if report.cancelled:
            return DeployDecision(fired=False, reason="pipeline was cancelled")
        if report.outcome is not PipelineOutcome.SUCCESS:
            return DeployDecision(fired=False, reason="pipeline outcome is failed")
        if context.branch != self.config.branch:
            return DeployDecision(
                fired=False,
                reason=f"branch {context.branch!r} is not {self.config.branch!r}",
            )
        trigger = self.find_trigger(report.outcomes)
        if trigger is None:
            return DeployDecision(
                fired=False,
                reason=f"no job matches the deploy trigger (mode {self.config.trigger_mode.value})",
            )
        if not trigger.ok:
            return DeployDecision(
                fired=False,
                reason=f"trigger job {trigger.job.label} did not succeed ({trigger.status.value})",
                trigger_job=trigger.job.number,
            )
        return DeployDecision(fired=True, reason=f"trigger job {trigger.job.label} succeeded", trigger_job=trigger.job.number)

    def maybe_deploy(self, report: PipelineReport, context: RepoContext) -> DeployDecision:
        """
        Evaluate the gate and run the action at most once.

        Once the action has fired, later calls return the same decision
        without running it again. Action failures are returned as a decision
        with `error` set; they never change the pipeline outcome.
        """
        with self._lock:
            if self._fired is not None:
                return self._fired

            decision = self.evaluate(report, context)
            if not decision.fired:
                self.console.print_deploy(decision)
                return decision

            trigger = self.find_trigger(report.outcomes)
            token = context.env.get(self.config.token_env) if self.config.token_env else None
            deploy_ctx = DeployContext(
                branch=context.branch,
                tag=context.tag,
                token=token,
                trigger_job=trigger.job,
                flags=dict(self.config.condition),
            )

            try:
                artifact_dir = self.artifact_dir
                if not artifact_dir.is_dir():
                    raise DeployError(job=trigger.job.label, message=f"artifact directory not found: {artifact_dir}")
                self.action(artifact_dir, deploy_ctx)
            except DeployError as e:
                decision = DeployDecision(fired=True, reason=decision.reason, trigger_job=decision.trigger_job, error=str(e))
            except Exception as e:
                err = DeployError(job=trigger.job.label, message=f"{type(e).__name__}: {e}")
                decision = DeployDecision(fired=True, reason=decision.reason, trigger_job=decision.trigger_job, error=str(err))

            self._fired = decision
            self.console.print_deploy(decision)
            return decision
