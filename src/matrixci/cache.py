# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import shutil
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import CacheError
from .model import CacheConfig, JobOutcome, JobSpec
from .steps import StepRunner

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# One persisted archive per job identity:
#
#   store_root/
#     <cache_key>.tar.gz
#     <cache_key>.manifest.json
#
# A job leases a private working copy under work_root/<cache_key>/ for the
# length of its run. On release the before-cache cleanup runs, then the
# working copy is packed back into the store (only if its content changed)
# and the working copy is removed.
#
# Keys come from JobSpec.cache_key, which the expander makes unique per run,
# so two concurrent jobs never touch the same archive or working copy.
# What one job writes is only visible to the next pipeline run.
# ---------------------------------------------------------------------

DEFAULT_STORE_DIR = ".matrixci/cache"
DEFAULT_WORK_DIR = ".matrixci/work"
MANIFEST_VERSION = 1

# members are already checked by _safe_members; newer tarfile also wants an explicit filter
_EXTRACT_KWARGS = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


@dataclass
class CacheHandle:
    """Lease on one job's cache working copy."""
    key: str
    job: str
    root: Path
    directories: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)
    restored: bool = False
    restored_digest: str = ""
    released: bool = False
    cleanup_runs: int = 0
    status: str = "acquired"  # acquired | saved | unchanged | disabled | failed

    @property
    def enabled(self) -> bool:
        return bool(self.directories)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.relative_to(root)).replace("\\", "/")


def _iter_entries_under(root: Path) -> Iterable[Path]:
    # deterministic traversal, symlinks are not followed
    for p in sorted(root.rglob("*")):
        yield p


def _digest_dirs(root: Path, directories: Iterable[str]) -> str:
    """Content fingerprint of the cached directories: paths, file digests, empty dirs."""
    entries: List[Tuple[str, str]] = []
    for d in directories:
        base = root / d
        if not base.exists():
            continue
        for p in _iter_entries_under(base):
            rel = _relpath(p, root)
            if p.is_symlink():
                entries.append((rel, "link:" + os.readlink(p)))
            elif p.is_file():
                entries.append((rel, _hash_file_contents(p)))
            elif p.is_dir():
                entries.append((rel, "dir"))
    entries.sort()
    return _sha256_str(json.dumps(entries, separators=(",", ":"), ensure_ascii=False))


def _safe_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    dest = dest.resolve()
    members = []
    for m in tar.getmembers():
        target = (dest / m.name).resolve()
        if target != dest and dest not in target.parents:
            raise CacheError(job="-", operation="acquire", message=f"archive member escapes cache root: {m.name}")
        if m.issym() or m.islnk():
            link = (target.parent / m.linkname).resolve()
            if link != dest and dest not in link.parents:
                raise CacheError(job="-", operation="acquire", message=f"archive link escapes cache root: {m.name}")
        members.append(m)
    return members


class CacheManager:
    """
    Owns cache acquisition before a job runs and persisting after it,
    whatever the job's result.
    """

    def __init__(
        self,
        config: CacheConfig,
        store_root: str | Path = DEFAULT_STORE_DIR,
        work_root: str | Path = DEFAULT_WORK_DIR,
        *,
        step_runner: Optional[StepRunner] = None,
    ):
        self.config = config
        self.store_root = Path(store_root).resolve()
        self.work_root = Path(work_root).resolve()
        self.step_runner = step_runner

    def archive_path(self, key: str) -> Path:
        return self.store_root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.store_root / f"{key}.manifest.json"

    # ---- acquire ----

    def acquire(self, job: JobSpec) -> CacheHandle:
        """
        Lease a fresh working copy for `job`, restored from the store when an
        archive exists. Raises CacheError on I/O failure.
        """
        key = job.cache_key or f"job-{job.number}"
        root = self.work_root / key
        handle = CacheHandle(
            key=key,
            job=job.label,
            root=root,
            directories=tuple(self.config.directories),
            env=dict(job.env),
        )
        if not handle.enabled:
            handle.status = "disabled"
            return handle

        try:
            if root.exists():
                # leftover from an interrupted run, start clean
                shutil.rmtree(root)
            root.mkdir(parents=True)

            art = self.archive_path(key)
            if art.exists():
                with tarfile.open(str(art), mode="r:gz") as tar:
                    members = _safe_members(tar, root)
                    tar.extractall(path=str(root), members=members, **_EXTRACT_KWARGS)
                handle.restored = True

            for d in handle.directories:
                (root / d).mkdir(parents=True, exist_ok=True)

            handle.restored_digest = _digest_dirs(root, handle.directories)
        except CacheError as e:
            raise CacheError(job=job.label, operation="acquire", message=e.message) from e
        except (OSError, tarfile.TarError) as e:
            raise CacheError(job=job.label, operation="acquire", message=str(e)) from e

        return handle

    # ---- release ----

    def _before_cache(self, handle: CacheHandle) -> None:
        handle.cleanup_runs += 1

        for rel in self.config.prune:
            target = handle.root / rel
            if target.is_symlink() or target.is_file():
                target.unlink()
            elif target.is_dir():
                shutil.rmtree(target)

        if not self.config.before_cache:
            return
        if self.step_runner is None:
            raise CacheError(job=handle.job, operation="release", message="before_cache steps configured without a step runner")

        env = dict(handle.env)
        env["MATRIXCI_CACHE_DIR"] = str(handle.root)
        for step in self.config.before_cache:
            try:
                result = self.step_runner(step, env=env, cwd=handle.root, timeout=None)
            except Exception as e:
                raise CacheError(
                    job=handle.job,
                    operation="release",
                    message=f"before_cache step '{step.name}': {type(e).__name__}: {e}",
                ) from e
            if result.exit_code != 0:
                raise CacheError(
                    job=handle.job,
                    operation="release",
                    message=f"before_cache step '{step.name}' failed (exit={result.exit_code})",
                )

    def _persist(self, handle: CacheHandle, digest: str, outcome: Optional[JobOutcome]) -> None:
        self.store_root.mkdir(parents=True, exist_ok=True)
        art = self.archive_path(handle.key)
        man = self.manifest_path(handle.key)

        manifest = {
            "v": MANIFEST_VERSION,
            "key": handle.key,
            "job": handle.job,
            "directories": list(handle.directories),
            "digest": digest,
            "job_outcome": outcome.status.value if outcome is not None else None,
            "saved_at_unix": int(time.time()),
        }

        tmp = art.with_suffix(".gz.tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for d in handle.directories:
                    src = handle.root / d
                    if src.exists():
                        tar.add(str(src), arcname=d)
                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=f".matrixci_cache_manifest/{handle.key}.json")
                info.size = len(payload)
                info.mtime = manifest["saved_at_unix"]
                tar.addfile(info, fileobj=io.BytesIO(payload))
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink()

    def release(self, handle: CacheHandle, outcome: Optional[JobOutcome] = None) -> str:
        """
        Run the before-cache cleanup, then persist the working copy.

        Runs for every outcome. Releasing twice is a no-op. Returns the
        handle status ("saved", "unchanged" or "disabled"); raises
        CacheError on I/O failure.
        """
        if handle.released:
            return handle.status
        handle.released = True

        if not handle.enabled:
            return handle.status

        try:
            self._before_cache(handle)
            digest = _digest_dirs(handle.root, handle.directories)
            if digest == handle.restored_digest:
                handle.status = "unchanged"
            else:
                self._persist(handle, digest, outcome)
                handle.status = "saved"
        except CacheError:
            handle.status = "failed"
            raise
        except (OSError, tarfile.TarError) as e:
            handle.status = "failed"
            raise CacheError(job=handle.job, operation="release", message=str(e)) from e
        finally:
            shutil.rmtree(handle.root, ignore_errors=True)

        return handle.status

    @contextmanager
    def lease(self, job: JobSpec) -> Iterator[CacheHandle]:
        """Context manager form of acquire/release."""
        handle = self.acquire(job)
        try:
            yield handle
        finally:
            self.release(handle)

    # ---- housekeeping ----

    def prune_store(self, keep: int = 10) -> List[str]:
        """
        Keep only the newest N archives in the store.
        Uses file mtime as "newest". Returns the removed keys.
        """
        if not self.store_root.exists():
            return []
        tars = sorted(self.store_root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = []
        for p in tars[max(keep, 0):]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed
