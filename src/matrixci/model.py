# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .conditions import Mode
from .errors import ConfigurationError


@dataclass(frozen=True)
class Step:
    """A single opaque command (step) inside a job. `run` is never interpreted here."""
    name: str
    run: str
    cwd: str | None = None


Steps = Tuple[Step, ...]


# ---------------------------------------------------------------------
# Matrix description
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Axis:
    """One dimension of the build matrix, e.g. toolchain = 1.21.0 / stable / beta / nightly."""
    name: str
    values: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(str(v) for v in self.values))
        if not self.name:
            raise ConfigurationError("Axis name must not be empty")
        if not self.values:
            raise ConfigurationError(f"Axis '{self.name}' has no values", details={"axis": self.name})


@dataclass(frozen=True)
class MatrixEntry:
    """
    Partial assignment of axis values plus env overrides.

    Used for include, exclude and allow-failure entries. Axes the entry
    doesn't name are wildcards when matching.
    """
    values: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    privileged: bool = False
    services: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # force values to str for stable identities + env compatibility
        object.__setattr__(self, "values", {str(k): str(v) for k, v in dict(self.values).items()})
        object.__setattr__(self, "env", {str(k): str(v) for k, v in dict(self.env).items()})
        object.__setattr__(self, "services", tuple(self.services))

    def matches(self, axis_values: Mapping[str, str], env: Mapping[str, str] | None = None) -> bool:
        for k, v in self.values.items():
            if axis_values.get(k) != v:
                return False
        if self.env:
            env = env or {}
            for k, v in self.env.items():
                if env.get(k) != v:
                    return False
        return True


@dataclass(frozen=True)
class StepTable:
    """
    Step sequence keyed by mode.

    `common` always runs first; then the branch for the job's mode, or the
    DEFAULT branch when the mode has none.
    """
    common: Steps = ()
    by_mode: Mapping[Mode, Steps] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "common", tuple(self.common))
        object.__setattr__(
            self,
            "by_mode",
            {Mode.from_name(k): tuple(v) for k, v in dict(self.by_mode).items()},
        )

    def select(self, mode: Mode) -> Steps:
        branch = self.by_mode.get(mode)
        if branch is None:
            branch = self.by_mode.get(Mode.DEFAULT, ())
        return self.common + branch

    def __bool__(self) -> bool:
        return bool(self.common) or any(self.by_mode.values())


@dataclass(frozen=True)
class CacheConfig:
    """
    Persistent directories kept across pipeline runs.

    prune:        volatile subpaths (relative to the cache root) deleted before persisting
    before_cache: opaque steps run in the cache root before persisting
    """
    directories: Tuple[str, ...] = ()
    prune: Tuple[str, ...] = ()
    before_cache: Steps = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "directories", tuple(self.directories))
        object.__setattr__(self, "prune", tuple(self.prune))
        object.__setattr__(self, "before_cache", tuple(self.before_cache))
        for p in self.directories + self.prune:
            if p.startswith("/") or ".." in p.replace("\\", "/").split("/"):
                raise ConfigurationError(
                    "Cache paths must be relative to the cache root",
                    details={"path": p},
                )

    @property
    def enabled(self) -> bool:
        return bool(self.directories)


@dataclass(frozen=True)
class DeployConfig:
    """
    Deploy gate condition + action payload.

    Fires only on `branch`, for the first job running `trigger_mode` that also
    matches `on_axes` and the env `condition`.
    """
    branch: str
    trigger_mode: Mode = Mode.DOC_BUILD
    on_axes: Mapping[str, str] = field(default_factory=dict)
    condition: Mapping[str, str] = field(default_factory=dict)
    local_dir: str = "."
    token_env: str | None = None
    steps: Steps = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "trigger_mode", Mode.from_name(self.trigger_mode))
        object.__setattr__(self, "on_axes", {str(k): str(v) for k, v in dict(self.on_axes).items()})
        object.__setattr__(self, "condition", {str(k): str(v) for k, v in dict(self.condition).items()})
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.branch:
            raise ConfigurationError("Deploy branch must not be empty")


@dataclass(frozen=True)
class PipelineConfig:
    """
    The whole pipeline description. Built once, then passed explicitly to
    the expander, scheduler and deploy gate.
    """
    axes: Tuple[Axis, ...] = ()
    include: Tuple[MatrixEntry, ...] = ()
    exclude: Tuple[MatrixEntry, ...] = ()
    allow_failures: Tuple[MatrixEntry, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    setup: StepTable = field(default_factory=StepTable)
    script: StepTable = field(default_factory=StepTable)
    after_success: StepTable = field(default_factory=StepTable)
    cache: CacheConfig = field(default_factory=CacheConfig)
    deploy: Optional[DeployConfig] = None
    branches: Tuple[str, ...] = ()  # empty -> every branch
    job_timeout: Optional[float] = None
    name: str = "pipeline"

    def __post_init__(self) -> None:
        for attr in ("axes", "include", "exclude", "allow_failures", "branches"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))
        object.__setattr__(self, "env", MappingProxyType({str(k): str(v) for k, v in dict(self.env).items()}))
        if self.job_timeout is not None and self.job_timeout <= 0:
            raise ConfigurationError("job_timeout must be positive", details={"job_timeout": self.job_timeout})

    @property
    def axis_names(self) -> List[str]:
        return [a.name for a in self.axes]

    def runs_on(self, branch: str | None) -> bool:
        return not self.branches or branch in self.branches


# ---------------------------------------------------------------------
# Job Spec
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobSpec:
    """
    One fully resolved, runnable combination of axis values + env overrides.

    Created by the matrix expander and read-only afterwards.
    """
    number: int
    axis_values: Tuple[Tuple[str, str], ...]
    overrides: Tuple[Tuple[str, str], ...]
    env: Mapping[str, str]
    mode: Mode = Mode.DEFAULT
    allow_failure: bool = False
    privileged: bool = False
    services: Tuple[str, ...] = ()
    included: bool = False
    cache_key: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.env, MappingProxyType):
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def __hash__(self) -> int:
        return hash((self.number, self.identity))

    @property
    def identity(self) -> Tuple[Tuple[str, str], ...]:
        return self.axis_values + self.overrides

    @property
    def axes(self) -> Dict[str, str]:
        return dict(self.axis_values)

    @property
    def name(self) -> str:
        parts = [f"{k}={v}" for k, v in self.identity]
        return " ".join(parts) if parts else f"job-{self.number}"

    @property
    def label(self) -> str:
        return f"#{self.number} {self.name}"


# ---------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------

class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ERRORED = "errored"


class JobState(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FINALIZING = "finalizing"
    DONE = "done"


class PipelineOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class JobOutcome:
    job: JobSpec
    status: OutcomeStatus
    exit_code: int | None = None
    duration: float = 0.0
    failed_step: str | None = None
    error: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)
    states: List[JobState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def suppressed(self) -> bool:
        """True when a non-success is ignored for the aggregate because of allow-failure."""
        return self.job.allow_failure and not self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.job.number,
            "name": self.job.name,
            "identity": dict(self.job.identity),
            "mode": self.job.mode.value,
            "outcome": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "allow_failure": self.job.allow_failure,
            "suppressed": self.suppressed,
            "failed_step": self.failed_step,
            "error": self.error,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "warnings": list(self.warnings),
        }


def aggregate(outcomes: List[JobOutcome]) -> PipelineOutcome:
    """Filter out allow-failure jobs, then require success from the rest."""
    counted = [o for o in outcomes if not o.job.allow_failure]
    return PipelineOutcome.SUCCESS if all(o.ok for o in counted) else PipelineOutcome.FAILED


@dataclass(frozen=True)
class DeployDecision:
    fired: bool
    reason: str
    trigger_job: int | None = None
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fired": self.fired,
            "reason": self.reason,
            "trigger_job": self.trigger_job,
            "error": self.error,
        }


@dataclass
class PipelineReport:
    outcomes: List[JobOutcome] = field(default_factory=list)
    deploy: Optional[DeployDecision] = None
    skipped_reason: str | None = None
    cancelled: bool = False

    @property
    def outcome(self) -> PipelineOutcome:
        return aggregate(self.outcomes)

    @property
    def warnings(self) -> List[str]:
        return [w for o in self.outcomes for w in o.warnings]

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        if self.outcome is not PipelineOutcome.SUCCESS:
            return 1
        if self.deploy is not None and self.deploy.error:
            return 1
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "skipped_reason": self.skipped_reason,
            "cancelled": self.cancelled,
            "jobs": [o.to_dict() for o in self.outcomes],
            "deploy": self.deploy.to_dict() if self.deploy else None,
            "warnings": self.warnings,
        }
