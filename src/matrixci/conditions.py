# conditions.py
from __future__ import annotations

from enum import Enum
from typing import List, Mapping

from .errors import ConfigurationError


class Mode(str, Enum):
    """
    Named script branches a job can run.

    Declaration order IS the priority order used by select_branch().
    DEFAULT has no flag and is the fallback when nothing else is set.
    """
    FORMAT_CHECK = "format-check"
    COVERAGE = "coverage"
    DOC_BUILD = "doc-build"
    CROSS_TARGET = "cross-target"
    DEFAULT = "default"

    @property
    def flag(self) -> str | None:
        return _FLAGS.get(self)

    @classmethod
    def from_name(cls, name: str | "Mode") -> "Mode":
        """Accept a Mode, its value ("doc-build"), its member name or its env flag ("BUILD_DOC")."""
        if isinstance(name, Mode):
            return name
        key = str(name).strip()
        for mode in cls:
            if key in (mode.value, mode.name, mode.name.lower()) or (mode.flag and key == mode.flag):
                return mode
        raise ConfigurationError(
            f"Unknown mode {name!r}",
            details={"known": ", ".join(m.value for m in cls)},
        )


_FLAGS = {
    Mode.FORMAT_CHECK: "BUILD_FMT",
    Mode.COVERAGE: "TARPAULIN",
    Mode.DOC_BUILD: "BUILD_DOC",
    # value is the target-platform identifier, e.g. x86_64-unknown-freebsd
    Mode.CROSS_TARGET: "TARGET",
}

PRIORITY: List[Mode] = [m for m in Mode if m is not Mode.DEFAULT]


def is_set(env: Mapping[str, str], flag: str) -> bool:
    # same as `[ -n "$FLAG" ]`
    return bool(env.get(flag, ""))


def active_flags(env: Mapping[str, str]) -> List[Mode]:
    """Modes whose flag is set in env, in priority order."""
    return [m for m in PRIORITY if is_set(env, m.flag)]


def validate_env(env: Mapping[str, str], *, job: str | None = None) -> None:
    active = active_flags(env)
    if len(active) > 1:
        details = {"flags": ", ".join(f"{m.flag}={env[m.flag]}" for m in active)}
        if job:
            details["job"] = job
        raise ConfigurationError(
            "Mutually exclusive mode flags set on the same job",
            details=details,
        )


def select_branch(env: Mapping[str, str], *, job: str | None = None) -> Mode:
    """
    Pick the script branch for a job environment.

    First match wins across PRIORITY; more than one set flag is a
    ConfigurationError rather than a silent pick.
    """
    validate_env(env, job=job)
    active = active_flags(env)
    return active[0] if active else Mode.DEFAULT


def target_platform(env: Mapping[str, str]) -> str | None:
    """Cross-compilation target for CROSS_TARGET jobs."""
    return env.get(Mode.CROSS_TARGET.flag) or None
