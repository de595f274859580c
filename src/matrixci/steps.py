# steps.py
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol

from .model import Step

# The orchestrator never interprets a step's payload. It hands the step to a
# StepRunner and only looks at the exit code that comes back.


@dataclass(frozen=True)
class StepResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class StepRunner(Protocol):
    def __call__(
        self,
        step: Step,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
    ) -> StepResult: ...


class ShellStepRunner:
    """
    Default external step runner: gives `step.run` to the shell.

    Raises subprocess.TimeoutExpired when `timeout` runs out; the executor
    turns that into a timed-out job.
    """

    def __init__(self, *, inherit_env: bool = True, tail: int = 4000):
        self.inherit_env = inherit_env
        self.tail = tail

    def __call__(
        self,
        step: Step,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
    ) -> StepResult:
        workdir = (Path(cwd) / (step.cwd or ".")).resolve()
        if not workdir.exists():
            raise FileNotFoundError(f"step '{step.name}' cwd not found: {workdir}")

        full_env = os.environ.copy() if self.inherit_env else {}
        full_env.update(env)

        proc = subprocess.run(
            step.run,
            shell=True,
            cwd=str(workdir),
            env=full_env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
        return StepResult(
            exit_code=proc.returncode,
            stdout=proc.stdout[-self.tail:],
            stderr=proc.stderr[-self.tail:],
        )
