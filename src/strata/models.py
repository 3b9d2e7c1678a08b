"""Core typed dataclasses for build graph state and results."""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from strata.errors import SnapshotInconsistent, StrataError, ValidationError


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    """A pinned toolchain materialized for one platform."""

    identifier: str
    name: str
    version: str
    targets: tuple[str, ...]
    components: tuple[str, ...] = ()
    profile: str = "minimal"
    platform: str = ""
    target: str = ""
    root: Path | None = None

    @property
    def bin_dir(self) -> Path | None:
        if self.root is None:
            return None
        return self.root / "bin"


@dataclass(frozen=True, slots=True)
class SnapshotFile:
    path: str
    sha256: str
    executable: bool = False
    symlink: str | None = None


@dataclass(frozen=True, slots=True)
class SourceSnapshot:
    root: Path
    content_hash: str
    files: tuple[SnapshotFile, ...] = ()

    def paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.files)

    def digest_of(self, path: str) -> str | None:
        for item in self.files:
            if item.path == path:
                return item.sha256
        return None

    def export(self, destination: str | Path, *, only: Iterable[str] | None = None) -> Path:
        """Write the filtered copy of the snapshot under *destination*."""
        dest = Path(destination)
        dest.mkdir(parents=True, exist_ok=True)
        selected = set(only) if only is not None else None
        for item in self.files:
            if selected is not None and item.path not in selected:
                continue
            target = dest / item.path
            target.parent.mkdir(parents=True, exist_ok=True)
            if item.symlink is not None:
                if target.is_symlink() or target.exists():
                    target.unlink()
                os.symlink(item.symlink, target)
                continue
            try:
                shutil.copyfile(self.root / item.path, target)
            except OSError as exc:
                raise SnapshotInconsistent(
                    "Snapshot file could not be exported.",
                    hint="The working tree changed after the snapshot was taken.",
                    context={"operation": "export", "path": item.path},
                ) from exc
            if item.executable:
                target.chmod(0o755)
        return dest


class CacheStatus(StrEnum):
    PENDING = "pending"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


_CACHE_TRANSITIONS: dict[CacheStatus, tuple[CacheStatus, ...]] = {
    CacheStatus.PENDING: (CacheStatus.BUILDING,),
    CacheStatus.BUILDING: (CacheStatus.READY, CacheStatus.FAILED),
    CacheStatus.READY: (),
    CacheStatus.FAILED: (),
}


@dataclass(slots=True)
class CacheEntry:
    """One dependency cache entry addressed by its derivation key."""

    key: str
    platform: str
    artifacts_dir: Path
    status: CacheStatus = CacheStatus.PENDING
    artifacts: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.status is CacheStatus.READY

    def mark_building(self) -> None:
        self._transition(CacheStatus.BUILDING)

    def mark_ready(self, artifacts: Mapping[str, str]) -> None:
        self._transition(CacheStatus.READY)
        self.artifacts = dict(sorted(artifacts.items()))
        self.error = None

    def mark_failed(self, error: str) -> None:
        self._transition(CacheStatus.FAILED)
        self.error = error

    def _transition(self, status: CacheStatus) -> None:
        if status not in _CACHE_TRANSITIONS[self.status]:
            raise ValidationError(
                "Illegal cache entry status transition.",
                hint="Invalidate the entry to rebuild it.",
                context={"key": self.key, "from": self.status.value, "to": status.value},
            )
        self.status = status


@dataclass(frozen=True, slots=True)
class Variant:
    """A named build configuration distinguished only by optional features."""

    name: str
    features: frozenset[str] = frozenset()

    @classmethod
    def of(cls, name: str, *features: str) -> Variant:
        return cls(name=name, features=frozenset(features))

    def sorted_features(self) -> tuple[str, ...]:
        return tuple(sorted(self.features))


@dataclass(frozen=True, slots=True)
class VariantOutcome:
    platform: str
    variant: Variant
    derivation_key: str | None
    artifact_path: Path | None = None
    error: StrataError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.artifact_path is not None


@dataclass(slots=True)
class PlatformResult:
    platform: str
    toolchain: ToolchainSpec | None = None
    source_hash: str | None = None
    derivation_key: str | None = None
    cache_hit: bool = False
    error: StrataError | None = None
    variants: dict[str, VariantOutcome] = field(default_factory=dict)
    report_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(outcome.ok for outcome in self.variants.values())

    def failures(self) -> list[tuple[str, StrataError]]:
        if self.error is not None:
            return [(self.platform, self.error)]
        return [
            (f"{name}-{self.platform}", outcome.error)
            for name, outcome in sorted(self.variants.items())
            if outcome.error is not None
        ]


@dataclass(slots=True)
class MatrixResult:
    platforms: dict[str, PlatformResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.platforms.values())

    def outcome_for(self, *, platform: str, variant: str) -> VariantOutcome | None:
        result = self.platforms.get(platform)
        if result is None:
            return None
        return result.variants.get(variant)

    def failures(self) -> list[tuple[str, StrataError]]:
        failures: list[tuple[str, StrataError]] = []
        for _, result in sorted(self.platforms.items()):
            failures.extend(result.failures())
        return failures


class OutputKind(StrEnum):
    PACKAGE = "package"
    APP = "app"


@dataclass(frozen=True, slots=True)
class OutputEntry:
    name: str
    kind: OutputKind
    platform: str
    variant: str


__all__ = [
    "CacheEntry",
    "CacheStatus",
    "MatrixResult",
    "OutputEntry",
    "OutputKind",
    "PlatformResult",
    "SnapshotFile",
    "SourceSnapshot",
    "ToolchainSpec",
    "Variant",
    "VariantOutcome",
]
