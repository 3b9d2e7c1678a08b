"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from strata.backends import InProcessBackend
from strata.models import SourceSnapshot, ToolchainSpec
from strata.platforms import PLATFORM_TARGETS
from strata.project import Project
from strata.snapshot import take_snapshot
from strata.toolchain import ToolchainResolver, read_toolchain_descriptor

HOST = "x86_64-linux"
PLATFORMS = ("x86_64-linux", "aarch64-linux")

TOOLCHAIN_TOML = """\
[toolchain]
channel = "1.75.0"
targets = ["x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu"]
components = ["rustfmt", "clippy"]
profile = "minimal"
"""

MANIFEST_TOML = """\
[project]
name = "electrs"
binary = "electrs"
toolchain = "rust-toolchain.toml"
lockfile = "Cargo.lock"
backend = "inprocess"
default_variant = "base"
platforms = ["x86_64-linux", "aarch64-linux"]
dependency_flags = ["--no-default-features"]

[variants.base]
features = []

[variants.liquid]
features = ["liquid"]

[packages.bin]
variant = "liquid"

[apps.electrs-liquid]
package = "bin"
"""


def write_source_tree(root: Path, *, manifest: str = MANIFEST_TOML) -> Path:
    (root / "src").mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(
        '[package]\nname = "electrs"\nversion = "0.10.0"\n\n'
        '[features]\ndefault = ["autodownload"]\nliquid = []\nautodownload = []\n',
        encoding="utf-8",
    )
    (root / "Cargo.lock").write_text(
        'version = 3\n\n[[package]]\nname = "bitcoin"\nversion = "0.31.0"\n',
        encoding="utf-8",
    )
    (root / "rust-toolchain.toml").write_text(TOOLCHAIN_TOML, encoding="utf-8")
    (root / "src" / "main.rs").write_text('fn main() { println!("electrs"); }\n', encoding="utf-8")
    (root / "strata.toml").write_text(manifest, encoding="utf-8")
    return root


def write_toolchain_store(root: Path, platforms: tuple[str, ...] = PLATFORMS) -> Path:
    for platform in platforms:
        bin_dir = root / "rust-1.75.0" / PLATFORM_TARGETS[platform] / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        (bin_dir / "rustc").write_text("#!/bin/sh\n", encoding="utf-8")
    return root


def load_project(
    tmp_path: Path,
    *,
    manifest: Path,
    backend: InProcessBackend,
    environ: dict[str, str] | None = None,
    **overrides: object,
) -> Project:
    options: dict[str, object] = {
        "cache_dir": tmp_path / "cache",
        "build_dir": tmp_path / "build",
        "toolchain_store": tmp_path / "toolchains",
    }
    options.update(overrides)
    return Project.load(
        manifest,
        backend=backend,
        host=HOST,
        environ=environ or {},
        **options,
    )


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    return write_source_tree(tmp_path / "electrs")


@pytest.fixture
def toolchain_store(tmp_path: Path) -> Path:
    return write_toolchain_store(tmp_path / "toolchains")


@pytest.fixture
def inprocess_backend() -> InProcessBackend:
    return InProcessBackend()


@pytest.fixture
def project(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
    inprocess_backend: InProcessBackend,
) -> Project:
    return load_project(tmp_path, manifest=source_tree / "strata.toml", backend=inprocess_backend)


@pytest.fixture
def toolchain(source_tree: Path, toolchain_store: Path) -> ToolchainSpec:
    descriptor = read_toolchain_descriptor(source_tree / "rust-toolchain.toml")
    return ToolchainResolver(store_root=toolchain_store).resolve(descriptor, platform=HOST)


@pytest.fixture
def snapshot(source_tree: Path) -> SourceSnapshot:
    return take_snapshot(source_tree)
