# settings.py
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from .errors import ConfigurationError
from .git_facts.git import current_branch, current_tag, head_sha

# Run settings come from the environment, CLI flags override them.
#
#   MATRIXCI_CACHE_DIR    persisted cache archives     (.matrixci/cache)
#   MATRIXCI_WORK_DIR     per-job cache working copies (.matrixci/work)
#   MATRIXCI_WORKERS      parallel jobs                (cpu_count - 1)
#   MATRIXCI_JOB_TIMEOUT  seconds per job              (pipeline's own / none)
#   MATRIXCI_BRANCH       branch override              (git)
#   MATRIXCI_TAG          tag override                 (git)


def _int_env(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", details={name: raw}) from None


def _float_env(environ: Mapping[str, str], name: str) -> Optional[float]:
    raw = environ.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", details={name: raw}) from None


@dataclass(frozen=True)
class Settings:
    cache_dir: Path = Path(".matrixci/cache")
    work_dir: Path = Path(".matrixci/work")
    workers: Optional[int] = None
    job_timeout: Optional[float] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    repo_root: Path = Path(".")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            cache_dir=Path(env.get("MATRIXCI_CACHE_DIR") or ".matrixci/cache"),
            work_dir=Path(env.get("MATRIXCI_WORK_DIR") or ".matrixci/work"),
            workers=_int_env(env, "MATRIXCI_WORKERS"),
            job_timeout=_float_env(env, "MATRIXCI_JOB_TIMEOUT"),
            branch=env.get("MATRIXCI_BRANCH") or None,
            tag=env.get("MATRIXCI_TAG") or None,
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with every non-None keyword applied (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@dataclass(frozen=True)
class RepoContext:
    """Repository facts the deploy gate looks at, snapshotted at startup."""
    branch: Optional[str] = None
    tag: Optional[str] = None
    commit: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


def resolve_repo_context(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> RepoContext:
    """
    Branch/tag from settings first, then from git.
    Outside a git checkout (or without git) they stay None.
    """
    env = os.environ if environ is None else environ
    branch, tag, commit = settings.branch, settings.tag, None
    try:
        if branch is None:
            branch = current_branch(settings.repo_root)
        if tag is None:
            tag = current_tag(settings.repo_root)
        commit = head_sha(settings.repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass
    return RepoContext(branch=branch, tag=tag, commit=commit, env=dict(env))
