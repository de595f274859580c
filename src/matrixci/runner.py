# runner.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Optional

from .cache import CacheManager
from .deploy import DeployAction, DeployGate, ShellDeployAction
from .errors import ConfigurationError
from .executor import JobExecutor
from .matrix import expand
from .model import PipelineConfig, PipelineReport
from .scheduler import Scheduler
from .settings import RepoContext, Settings
from .steps import ShellStepRunner, StepRunner
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Pipeline loading (local python file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> PipelineConfig
      - PIPELINE = PipelineConfig(...)
    """
    pl_path = Path(path).expanduser().resolve()
    if not pl_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {pl_path}")
    if pl_path.suffix != ".py":
        raise ValueError(f"Pipeline must be a .py file, got: {pl_path.name}")

    module_name = f"matrixci_pipeline_{pl_path.stem}"
    globals_dict = runpy.run_path(str(pl_path), run_name=module_name)

    config = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        try:
            config = globals_dict["pipeline"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your pipeline() is being called without arguments but expects some "
                    "(name collision with the DSL helper?). Import the helper as "
                    "`from matrixci.dsl import pipeline as build_pipeline` or define PIPELINE instead."
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        config = globals_dict["PIPELINE"]

    if not isinstance(config, PipelineConfig):
        raise TypeError(
            "Pipeline file must return/define a PipelineConfig. "
            "Define pipeline() -> PipelineConfig or PIPELINE = PipelineConfig(...)."
        )
    return config


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run(
    config: PipelineConfig,
    context: RepoContext,
    settings: Optional[Settings] = None,
    *,
    step_runner: Optional[StepRunner] = None,
    deploy_action: Optional[DeployAction] = None,
    console: Optional[Console] = None,
) -> PipelineReport:
    """
    Branch filter -> expand -> schedule -> deploy gate.

    ConfigurationError is raised before any job runs.
    """
    settings = settings or Settings()
    console = console or get_console()

    if not config.runs_on(context.branch):
        reason = f"branch {context.branch!r} is not in {list(config.branches)}"
        console.print_info(f"Pipeline skipped: {reason}")
        return PipelineReport(skipped_reason=reason)

    if config.deploy is not None and deploy_action is None and not config.deploy.steps:
        raise ConfigurationError("Deploy is configured without steps or an action")

    jobs = expand(config)
    console.print_run_started(config.name, context.branch, len(jobs))

    step_runner = step_runner or ShellStepRunner()
    repo_root = Path(settings.repo_root).resolve()
    console.print_debug(f"repo_root={repo_root} cache_dir={settings.cache_dir} workers={settings.workers or 'auto'}")
    cache = CacheManager(
        config.cache,
        store_root=repo_root / settings.cache_dir,
        work_root=repo_root / settings.work_dir,
        step_runner=step_runner,
    )
    executor = JobExecutor(
        config,
        cache,
        step_runner,
        workdir=repo_root,
        timeout=settings.job_timeout,
        console=console,
    )
    report = Scheduler(executor, max_workers=settings.workers, console=console).run_pipeline(jobs)

    if config.deploy is not None:
        action = deploy_action or ShellDeployAction(config.deploy.steps, step_runner, workdir=repo_root)
        gate = DeployGate(config.deploy, action, workdir=repo_root, console=console)
        report.deploy = gate.maybe_deploy(report, context)

    return report
