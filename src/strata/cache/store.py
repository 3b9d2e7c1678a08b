"""Content-addressed dependency cache with single-flight builds.

Layout on disk::

    <root>/<derivation key>/manifest.json
    <root>/<derivation key>/artifacts/...
    <root>/<derivation key>.lock

The manifest records the key, the canonical inputs, the entry status and a
sha256 for every artifact file. The lock file is created exclusively by the
builder of an entry and records its owner (pid and host). Stores on the same
root, in this process or another one, wait for a live owner and coalesce onto
its result. An entry left in ``pending`` or ``building`` state is only deleted
and rebuilt once its lock is free or its owner has exited; it is never resumed.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from strata.cache.keys import DependencyInputs, _to_payload, derivation_key
from strata.errors import (
    DependencyBuildFailed,
    ReproducibilityError,
    StrataError,
    ValidationError,
)
from strata.models import CacheEntry, CacheStatus

ResolutionSource = Literal["hit", "built", "coalesced"]
CompileFn = Callable[[Path], None]

DEFAULT_POLL_INTERVAL = 0.05
_UNFINISHED = (CacheStatus.PENDING, CacheStatus.BUILDING)


@dataclass(frozen=True, slots=True)
class CacheResolution:
    entry: CacheEntry
    source: ResolutionSource

    @property
    def cache_hit(self) -> bool:
        return self.source != "built"


@dataclass(slots=True)
class _Flight:
    done: threading.Event = field(default_factory=threading.Event)
    entry: CacheEntry | None = None
    error: StrataError | None = None


@dataclass(frozen=True, slots=True)
class _Claim:
    path: Path
    owner: dict[str, Any]


class CacheStore:
    def __init__(
        self,
        root: str | Path,
        *,
        platform: str | None = None,
        verify_artifacts: bool = True,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.platform = platform
        self.verify_artifacts = verify_artifacts
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._inflight: dict[str, _Flight] = {}

    def get_or_build(self, inputs: DependencyInputs, compile: CompileFn) -> CacheResolution:
        """Return the ready entry for *inputs*, compiling it at most once.

        Concurrent callers asking for the same key while a build is in flight
        block on the leader and receive its entry or its error. Within one
        store the leader is tracked in memory; across stores sharing a root it
        is the holder of the entry's lock file.
        """
        if self.platform is not None and inputs.platform != self.platform:
            raise ValidationError(
                "Cache store is scoped to a different platform.",
                hint="Use one cache store per platform build.",
                context={"store_platform": self.platform, "platform": inputs.platform},
            )
        key = derivation_key(inputs)
        with self._lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if flight is None:
                flight = _Flight()
                self._inflight[key] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            if flight.entry is None:
                raise DependencyBuildFailed(
                    "Concurrent dependency build ended without a result.",
                    context={"key": key, "platform": inputs.platform},
                )
            return CacheResolution(entry=flight.entry, source="coalesced")

        try:
            resolution = self._resolve(key, inputs, compile)
            flight.entry = resolution.entry
        except StrataError as exc:
            flight.error = exc
            raise
        except Exception as exc:
            flight.error = DependencyBuildFailed(
                "Dependency build aborted unexpectedly.",
                hint=repr(exc),
                context={"key": key, "platform": inputs.platform, "cause": type(exc).__name__},
            )
            raise flight.error from exc
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            flight.done.set()
        return resolution

    def lookup(self, key: str) -> CacheEntry | None:
        """Read an entry without building or validating it against inputs."""
        manifest = self._read_manifest(key)
        if manifest is None:
            return None
        return self._entry_from_manifest(key, manifest)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            owner = self._read_owner(key)
            if key in self._inflight or (owner is not None and _owner_alive(owner)):
                raise ValidationError(
                    "Cannot invalidate a cache entry while it is being built.",
                    context={"key": key},
                )
            entry_dir = self.root / key
            if not entry_dir.exists():
                return False
            shutil.rmtree(entry_dir)
            return True

    def _resolve(
        self,
        key: str,
        inputs: DependencyInputs,
        compile: CompileFn,
    ) -> CacheResolution:
        waited = False
        while True:
            existing = self._load(key, inputs)
            if existing is not None and existing.status not in _UNFINISHED:
                return self._finished(existing, source="coalesced" if waited else "hit")

            claim = self._claim(key)
            if claim is not None:
                try:
                    # the previous owner may have finished between the read and the claim
                    existing = self._load(key, inputs)
                    if existing is not None and existing.status not in _UNFINISHED:
                        return self._finished(existing, source="coalesced" if waited else "hit")
                    return CacheResolution(entry=self._build(key, inputs, compile), source="built")
                finally:
                    self._release(claim)

            owner = self._read_owner(key)
            if owner is None:
                continue
            if not _owner_alive(owner):
                self._break_claim(key, owner)
                continue
            waited = True
            time.sleep(self.poll_interval)

    def _finished(self, entry: CacheEntry, *, source: ResolutionSource) -> CacheResolution:
        if entry.status is CacheStatus.FAILED:
            raise DependencyBuildFailed(
                "Dependency build previously failed for this key.",
                hint="Invalidate the entry (build --rebuild) to retry.",
                context={
                    "key": entry.key,
                    "platform": entry.platform,
                    "error": entry.error or "",
                },
            )
        if self.verify_artifacts and _digest_tree(entry.artifacts_dir) != entry.artifacts:
            raise ReproducibilityError(
                "Cache artifact digest mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": entry.key},
            )
        return CacheResolution(entry=entry, source=source)

    def _load(self, key: str, inputs: DependencyInputs) -> CacheEntry | None:
        manifest = self._read_manifest(key)
        if manifest is None:
            return None
        if manifest.get("key") != key:
            raise ReproducibilityError(
                "Cache manifest key mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        if manifest.get("inputs") != _to_payload(inputs):
            raise ReproducibilityError(
                "Cache manifest inputs do not match expected build inputs.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        return self._entry_from_manifest(key, manifest)

    def _build(self, key: str, inputs: DependencyInputs, compile: CompileFn) -> CacheEntry:
        """Compile the entry from scratch; the caller holds the entry's lock file."""
        entry_dir = self.root / key
        if entry_dir.exists():
            shutil.rmtree(entry_dir)
        artifacts_dir = entry_dir / "artifacts"
        artifacts_dir.mkdir(parents=True)

        entry = CacheEntry(key=key, platform=inputs.platform, artifacts_dir=artifacts_dir)
        self._write_manifest(entry, inputs)
        entry.mark_building()
        self._write_manifest(entry, inputs)

        try:
            compile(artifacts_dir)
        except DependencyBuildFailed as exc:
            entry.mark_failed(exc.message)
            self._write_manifest(entry, inputs)
            raise
        except Exception as exc:
            message = exc.message if isinstance(exc, StrataError) else str(exc)
            entry.mark_failed(message or type(exc).__name__)
            self._write_manifest(entry, inputs)
            raise DependencyBuildFailed(
                "Dependency compilation failed.",
                hint=getattr(exc, "hint", None) or message or repr(exc),
                context={
                    "key": key,
                    "platform": inputs.platform,
                    "cause": type(exc).__name__,
                },
            ) from exc

        entry.mark_ready(_digest_tree(artifacts_dir))
        self._write_manifest(entry, inputs)
        return entry

    def _claim(self, key: str) -> _Claim | None:
        path = self._lock_path(key)
        owner = {"host": socket.gethostname(), "pid": os.getpid(), "token": uuid.uuid4().hex}
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(owner, handle, sort_keys=True)
        return _Claim(path=path, owner=owner)

    def _release(self, claim: _Claim) -> None:
        if _read_json(claim.path) == claim.owner:
            claim.path.unlink(missing_ok=True)

    def _break_claim(self, key: str, owner: dict[str, Any]) -> None:
        """Remove a lock file whose owner has exited, unless it changed hands meanwhile."""
        path = self._lock_path(key)
        moved = path.with_name(f"{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.replace(path, moved)
        except FileNotFoundError:
            return
        try:
            if _read_json(moved) != owner:
                try:
                    os.link(moved, path)
                except FileExistsError:
                    pass
        finally:
            moved.unlink(missing_ok=True)

    def _read_owner(self, key: str) -> dict[str, Any] | None:
        """Return the lock owner, ``{}`` while the lock is being written, or None if free."""
        path = self._lock_path(key)
        if not path.exists():
            return None
        owner = _read_json(path)
        return owner if owner is not None else {}

    def _lock_path(self, key: str) -> Path:
        return self.root / f"{key}.lock"

    def _entry_from_manifest(self, key: str, manifest: dict[str, Any]) -> CacheEntry:
        try:
            status = CacheStatus(manifest.get("status"))
        except ValueError as exc:
            raise ReproducibilityError(
                "Cache manifest has an unknown status.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            ) from exc
        artifacts = manifest.get("artifacts", {})
        error = manifest.get("error")
        return CacheEntry(
            key=key,
            platform=str(manifest.get("platform", "")),
            artifacts_dir=self.root / key / "artifacts",
            status=status,
            artifacts=dict(artifacts) if isinstance(artifacts, dict) else {},
            error=error if isinstance(error, str) else None,
        )

    def _write_manifest(self, entry: CacheEntry, inputs: DependencyInputs) -> None:
        manifest = {
            "key": entry.key,
            "platform": entry.platform,
            "inputs": _to_payload(inputs),
            "status": entry.status.value,
            "artifacts": entry.artifacts,
            "error": entry.error,
        }
        manifest_path = self.root / entry.key / "manifest.json"
        temp_path = manifest_path.with_suffix(".tmp")
        temp_path.write_text(
            json.dumps(manifest, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        os.replace(temp_path, manifest_path)

    def _read_manifest(self, key: str) -> dict[str, Any] | None:
        path = self.root / key / "manifest.json"
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ReproducibilityError(
                "Cache manifest is not valid JSON.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise ReproducibilityError(
                "Cache manifest has invalid structure.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            )
        return parsed


def _owner_alive(owner: dict[str, Any]) -> bool:
    # owners on other hosts cannot be signalled and are assumed alive
    pid = owner.get("pid")
    if owner.get("host") != socket.gethostname() or not isinstance(pid, int):
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _digest_tree(root: Path) -> dict[str, str]:
    digests: dict[str, str] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            path = base / name
            relpath = path.relative_to(root).as_posix()
            if path.is_symlink():
                digests[relpath] = hashlib.sha256(os.readlink(path).encode()).hexdigest()
            else:
                with path.open("rb") as handle:
                    digests[relpath] = hashlib.file_digest(handle, "sha256").hexdigest()
    return dict(sorted(digests.items()))
