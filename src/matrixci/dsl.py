# src/matrixci/dsl.py
from __future__ import annotations

import re
import shlex
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .conditions import Mode
from .errors import ConfigurationError
from .model import (
    Axis,
    CacheConfig,
    DeployConfig,
    MatrixEntry,
    PipelineConfig,
    Step,
    StepTable,
)

EnvLike = Union[Mapping[str, object], str, Sequence[str], None]

_CONDITION = re.compile(r"^\s*\$?\w+\s*=\s*\S*\s*$")


# ---------------------------------------------------------------------
# Small parsers
# ---------------------------------------------------------------------

def _parse_env(env: EnvLike) -> Dict[str, str]:
    """
    Accept {"BUILD_DOC": 1}, "BUILD_DOC=1", ["A=1", "B=2"] or
    "$BUILD_DOC = 1" (the deploy-condition spelling). Strings are split
    shell-style, so RUSTFLAGS="-D warnings" keeps its space.
    """
    if env is None:
        return {}
    if isinstance(env, Mapping):
        # force values to str for stable identities + env compatibility
        return {str(k): str(v) for k, v in env.items()}
    items = [env] if isinstance(env, str) else list(env)
    out: Dict[str, str] = {}
    for item in items:
        text = item
        if _CONDITION.match(item):
            # "$A = 1" is one assignment
            text = re.sub(r"\s*=\s*", "=", item.strip(), count=1)
        try:
            pairs = shlex.split(text)
        except ValueError as e:
            raise ConfigurationError(f"Cannot parse env {item!r}: {e}") from e
        for pair in pairs:
            if "=" not in pair:
                raise ConfigurationError(f"Expected KEY=VALUE, got {item!r}")
            k, v = pair.split("=", 1)
            k = k.strip().lstrip("$")
            if not k:
                raise ConfigurationError(f"Expected KEY=VALUE, got {item!r}")
            out[k] = v
    return out


def _steps(items: Iterable[Union[Step, str]]) -> List[Step]:
    out: List[Step] = []
    for i, s in enumerate(items, start=1):
        if isinstance(s, Step):
            out.append(s)
        elif isinstance(s, str):
            out.append(Step(name=s.splitlines()[0][:60] if s.strip() else f"step {i}", run=s))
        else:
            raise ConfigurationError(f"Not a step: {s!r}")
    return out


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def axis(name: str, *values: object) -> Axis:
    """axis("toolchain", "1.21.0", "stable", "beta", "nightly")"""
    return Axis(name=name, values=tuple(str(v) for v in values))


def include(
    env: EnvLike = None,
    *,
    privileged: bool = False,
    services: Sequence[str] = (),
    **values: object,
) -> MatrixEntry:
    """An extra job: include(toolchain="stable", env="BUILD_DOC=1")."""
    return MatrixEntry(values=values, env=_parse_env(env), privileged=privileged, services=tuple(services))


def exclude(env: EnvLike = None, **values: object) -> MatrixEntry:
    """Drop every generated combination matching the given axes."""
    return MatrixEntry(values=values, env=_parse_env(env))


def allow_failure(env: EnvLike = None, **values: object) -> MatrixEntry:
    """Mark every job matching the given axes/env as allowed to fail."""
    return MatrixEntry(values=values, env=_parse_env(env))


def steps(*common: Union[Step, str], **by_mode: Iterable[Union[Step, str]]) -> StepTable:
    """
    Mode-keyed step table.

        steps(
            sh("init registry", "cargo search calloop"),
            format_check=[sh("fmt", "cargo fmt -- --check")],
            default=[sh("test", "cargo test")],
        )
    """
    return StepTable(
        common=tuple(_steps(common)),
        by_mode={Mode.from_name(k): tuple(_steps(v)) for k, v in by_mode.items()},
    )


def cache(
    *directories: str,
    prune: Sequence[str] = (),
    before_cache: Sequence[Union[Step, str]] = (),
) -> CacheConfig:
    return CacheConfig(
        directories=tuple(directories),
        prune=tuple(prune),
        before_cache=tuple(_steps(before_cache)),
    )


def deploy(
    branch: str,
    *deploy_steps: Union[Step, str],
    trigger: Union[Mode, str] = Mode.DOC_BUILD,
    on: Optional[Mapping[str, object]] = None,
    condition: EnvLike = None,
    local_dir: str = ".",
    token_env: str | None = None,
) -> DeployConfig:
    return DeployConfig(
        branch=branch,
        trigger_mode=Mode.from_name(trigger),
        on_axes={str(k): str(v) for k, v in (on or {}).items()},
        condition=_parse_env(condition),
        local_dir=local_dir,
        token_env=token_env,
        steps=tuple(_steps(deploy_steps)),
    )


def pipeline(
    name: str = "pipeline",
    *,
    axes: Sequence[Axis] = (),
    include: Sequence[MatrixEntry] = (),
    exclude: Sequence[MatrixEntry] = (),
    allow_failures: Sequence[MatrixEntry] = (),
    env: EnvLike = None,
    setup: Optional[StepTable] = None,
    script: Optional[StepTable] = None,
    after_success: Optional[StepTable] = None,
    cache: Optional[CacheConfig] = None,
    deploy: Optional[DeployConfig] = None,
    branches: Sequence[str] = (),
    job_timeout: Optional[float] = None,
) -> PipelineConfig:
    if script is None or not script:
        raise ConfigurationError(f"pipeline({name!r}) must have at least one script step")
    return PipelineConfig(
        name=name,
        axes=tuple(axes),
        include=tuple(include),
        exclude=tuple(exclude),
        allow_failures=tuple(allow_failures),
        env=_parse_env(env),
        setup=setup or StepTable(),
        script=script,
        after_success=after_success or StepTable(),
        cache=cache or CacheConfig(),
        deploy=deploy,
        branches=tuple(branches),
        job_timeout=job_timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PipelineBuilder:
    def __init__(self, name: str):
        self.name = name
        self._axes: list[Axis] = []
        self._include: list[MatrixEntry] = []
        self._exclude: list[MatrixEntry] = []
        self._allow: list[MatrixEntry] = []
        self._env: dict[str, str] = {}
        self._setup: Optional[StepTable] = None
        self._script: Optional[StepTable] = None
        self._after_success: Optional[StepTable] = None
        self._cache: Optional[CacheConfig] = None
        self._deploy: Optional[DeployConfig] = None
        self._branches: list[str] = []
        self._timeout: Optional[float] = None

    def axis(self, name: str, *values: object):
        self._axes.append(axis(name, *values))
        return self

    def include(self, env: EnvLike = None, **kwargs):
        self._include.append(include(env, **kwargs))
        return self

    def exclude(self, env: EnvLike = None, **values: object):
        self._exclude.append(exclude(env, **values))
        return self

    def allow_failure(self, env: EnvLike = None, **values: object):
        self._allow.append(allow_failure(env, **values))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def setup(self, table: StepTable):
        self._setup = table
        return self

    def script(self, table: StepTable):
        self._script = table
        return self

    def after_success(self, table: StepTable):
        self._after_success = table
        return self

    def cache(self, *directories: str, prune: Sequence[str] = (), before_cache: Sequence[Union[Step, str]] = ()):
        self._cache = cache(*directories, prune=prune, before_cache=before_cache)
        return self

    def deploy(self, branch: str, *deploy_steps: Union[Step, str], **kwargs):
        self._deploy = deploy(branch, *deploy_steps, **kwargs)
        return self

    def only_branches(self, *branches: str):
        self._branches = list(branches)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> PipelineConfig:
        return pipeline(
            self.name,
            axes=self._axes,
            include=self._include,
            exclude=self._exclude,
            allow_failures=self._allow,
            env=self._env,
            setup=self._setup,
            script=self._script,
            after_success=self._after_success,
            cache=self._cache,
            deploy=self._deploy,
            branches=self._branches,
            job_timeout=self._timeout,
        )


def build(name: str) -> PipelineBuilder:
    """Convenience: build('ci').axis(...).script(...).build()"""
    return PipelineBuilder(name)
