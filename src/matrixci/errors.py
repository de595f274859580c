# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixCIError(Exception):
    """Base class for every error the orchestrator raises on purpose."""


@dataclass
class ConfigurationError(MatrixCIError):
    """
    Invalid pipeline description.

    Raised before any job starts (matrix expansion / config construction),
    so a run that hits it executes zero jobs.
    """
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"ConfigurationError: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(MatrixCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(MatrixCIError):
    job: str
    step: str | None
    timeout: float

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "job"
        return f"[{self.job}] {where} exceeded the job timeout of {self.timeout:g}s"


@dataclass
class CacheError(MatrixCIError):
    """Cache acquire/release I/O failure. Never decides a job's outcome."""
    job: str
    operation: str  # "acquire" | "release"
    message: str

    def __str__(self) -> str:
        return f"[{self.job}] cache {self.operation} failed: {self.message}"


@dataclass
class DeployError(MatrixCIError):
    """The deployment action itself failed."""
    job: str | None
    message: str

    def __str__(self) -> str:
        src = f" (trigger job: {self.job})" if self.job else ""
        return f"deploy failed{src}: {self.message}"
