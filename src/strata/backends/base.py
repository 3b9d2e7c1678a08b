"""Protocol for compiler backends driven by the build graph."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from strata.models import CacheEntry, SourceSnapshot, ToolchainSpec, Variant

BASE_ENV: dict[str, str] = {"CARGO_INCREMENTAL": "0"}


@dataclass(frozen=True, slots=True)
class DependencyRequest:
    key: str
    platform: str
    toolchain: ToolchainSpec
    snapshot: SourceSnapshot
    lockfile: str
    artifacts_dir: Path
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class VariantRequest:
    platform: str
    toolchain: ToolchainSpec
    snapshot: SourceSnapshot
    variant: Variant
    entry: CacheEntry
    binary: str
    output_dir: Path
    work_dir: Path
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LintRequest:
    platform: str
    toolchain: ToolchainSpec
    snapshot: SourceSnapshot
    work_dir: Path
    env: Mapping[str, str] = field(default_factory=dict)


class BuildBackend(Protocol):
    name: str
    profile: str

    def compile_dependencies(self, request: DependencyRequest) -> None:
        """Compile the dependency graph only, into ``request.artifacts_dir``."""

    def compile_variant(self, request: VariantRequest) -> Path:
        """Compile the top-level package for one variant and return the binary."""

    def test_variant(self, request: VariantRequest) -> None:
        """Run the test step for one variant against the cached dependencies."""

    def lint(self, request: LintRequest) -> None:
        """Check source formatting of the snapshot without compiling anything."""

    def environment(self, toolchain: ToolchainSpec, env: Mapping[str, str]) -> dict[str, str]:
        """Return the compiler environment overlay for *toolchain*."""


def toolchain_environment(toolchain: ToolchainSpec, env: Mapping[str, str]) -> dict[str, str]:
    """Environment overlay shared by every backend.

    Only explicit inputs appear here; the ambient ``PATH`` is prefixed with the
    pinned toolchain rather than replaced.
    """
    overlay = dict(BASE_ENV)
    overlay.update(env)
    if toolchain.bin_dir is not None:
        overlay["PATH"] = os.pathsep.join(
            item for item in (str(toolchain.bin_dir), os.environ.get("PATH", "")) if item
        )
    return dict(sorted(overlay.items()))
