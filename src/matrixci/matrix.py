# matrix.py
from __future__ import annotations

import hashlib
import itertools
import json
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .conditions import select_branch
from .errors import ConfigurationError
from .model import Axis, JobSpec, MatrixEntry, PipelineConfig

# ---------------------------------------------------------------------
# Expansion order:
#   1. cross product of axes (first axis varies slowest)
#   2. drop combinations matching any exclude entry (partial match)
#   3. append include entries verbatim, once each
#   4. resolve per-job env / mode / allow_failure / cache key
#
# Everything that can be wrong with the matrix is raised here, before a
# single job is dispatched.
# ---------------------------------------------------------------------


def _validate_axes(axes: Sequence[Axis]) -> None:
    names = [a.name for a in axes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError("Duplicate axis names", details={"axes": dupes})


def _validate_entry(entry: MatrixEntry, axes: Sequence[Axis], kind: str, *, strict_values: bool) -> None:
    by_name = {a.name: a for a in axes}
    for k, v in entry.values.items():
        axis = by_name.get(k)
        if axis is None:
            raise ConfigurationError(
                f"{kind} entry names unknown axis '{k}'",
                details={"entry": dict(entry.values), "known": sorted(by_name)},
            )
        if strict_values and v not in axis.values:
            raise ConfigurationError(
                f"{kind} entry uses value '{v}' not declared on axis '{k}'",
                details={"axis": k, "values": list(axis.values)},
            )


def _cross_product(axes: Sequence[Axis]) -> List[Tuple[Tuple[str, str], ...]]:
    names = [a.name for a in axes]
    return [tuple(zip(names, combo)) for combo in itertools.product(*(a.values for a in axes))]


def _identity_digest(identity: Iterable[Tuple[str, str]]) -> str:
    payload = json.dumps([list(p) for p in identity], separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def expand_matrix(
    axes: Sequence[Axis],
    include: Sequence[MatrixEntry] = (),
    exclude: Sequence[MatrixEntry] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
    allow_failures: Sequence[MatrixEntry] = (),
) -> List[JobSpec]:
    """
    Expand axes + include/exclude entries into ordered Job Specs.

    Raises ConfigurationError on an invalid matrix, including two
    mutually exclusive mode flags ending up on one job.
    """
    axes = list(axes)
    _validate_axes(axes)
    for e in exclude:
        _validate_entry(e, axes, "exclude", strict_values=True)
    for e in include:
        _validate_entry(e, axes, "include", strict_values=False)
    for e in allow_failures:
        _validate_entry(e, axes, "allow_failures", strict_values=False)

    base_env: Dict[str, str] = dict(env or {})
    axis_order = {a.name: i for i, a in enumerate(axes)}

    # (axis_values, overrides, entry-or-None)
    rows: List[Tuple[Tuple[Tuple[str, str], ...], Tuple[Tuple[str, str], ...], Optional[MatrixEntry]]] = []

    for combo in _cross_product(axes):
        values = dict(combo)
        if any(e.matches(values, base_env) for e in exclude):
            continue
        rows.append((combo, (), None))

    for entry in include:
        combo = tuple(sorted(entry.values.items(), key=lambda kv: axis_order[kv[0]]))
        rows.append((combo, tuple(entry.env.items()), entry))

    jobs: List[JobSpec] = []
    seen: Dict[str, int] = {}
    for number, (combo, overrides, entry) in enumerate(rows, start=1):
        job_env = dict(base_env)
        job_env.update(dict(overrides))
        label = " ".join(f"{k}={v}" for k, v in combo + overrides) or f"job-{number}"

        mode = select_branch(job_env, job=f"#{number} {label}")

        values = dict(combo)
        allow = any(e.matches(values, job_env) for e in allow_failures)

        digest = _identity_digest(combo + overrides)
        occurrence = seen.get(digest, 0)
        seen[digest] = occurrence + 1
        cache_key = digest if occurrence == 0 else f"{digest}-{occurrence}"

        jobs.append(
            JobSpec(
                number=number,
                axis_values=combo,
                overrides=overrides,
                env=job_env,
                mode=mode,
                allow_failure=allow,
                privileged=bool(entry.privileged) if entry else False,
                services=tuple(entry.services) if entry else (),
                included=entry is not None,
                cache_key=cache_key,
            )
        )

    return jobs


def expand(config: PipelineConfig) -> List[JobSpec]:
    return expand_matrix(
        config.axes,
        config.include,
        config.exclude,
        env=config.env,
        allow_failures=config.allow_failures,
    )
