"""Cargo backend driving the pinned Rust toolchain.

Dependencies are compiled against a skeleton of the workspace: manifests,
lockfile and toolchain file are kept, and every ``.rs`` source is replaced by
a stub. The resulting target directory only holds third-party crates and is
what the dependency cache stores. Variant builds copy that target directory
into a private work dir and compile the real sources on top of it.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from strata.backends.base import (
    DependencyRequest,
    LintRequest,
    VariantRequest,
    toolchain_environment,
)
from strata.backends.materialize import install_artifact
from strata.errors import BackendExecutionError
from strata.models import SourceSnapshot, ToolchainSpec

Runner = Callable[..., "subprocess.CompletedProcess[str]"]

SKELETON_KEEP = frozenset({"Cargo.toml", "Cargo.lock", "rust-toolchain", "rust-toolchain.toml"})
_MAIN_STUB = "fn main() {}\n"


@dataclass(slots=True)
class CargoBackend:
    name: str = "cargo"
    profile: str = "release"
    runner: Runner = subprocess.run

    def compile_dependencies(self, request: DependencyRequest) -> None:
        command = self.command("build", request.toolchain, flags=request.flags)
        with tempfile.TemporaryDirectory(prefix="strata-skeleton-") as scratch:
            skeleton = write_skeleton(request.snapshot, Path(scratch))
            self._run(
                command,
                cwd=skeleton,
                env=self._env(
                    request.toolchain,
                    request.env,
                    target_dir=request.artifacts_dir / "target",
                ),
                operation="compile_dependencies",
                platform=request.platform,
            )

    def compile_variant(self, request: VariantRequest) -> Path:
        source_dir, target_dir = self._prepare_work_dir(request)
        command = self.command(
            "build",
            request.toolchain,
            flags=request.flags,
            features=request.variant.sorted_features(),
        )
        self._run(
            command,
            cwd=source_dir,
            env=self._env(request.toolchain, request.env, target_dir=target_dir),
            operation="compile_variant",
            platform=request.platform,
        )
        built = target_dir / request.toolchain.target / self._profile_dir() / request.binary
        if not built.is_file():
            raise BackendExecutionError(
                "cargo finished but the expected binary is missing.",
                hint="Check the manifest `binary` name against the package's [[bin]] targets.",
                context={"backend": self.name, "path": str(built)},
            )
        return install_artifact(
            backend_name=self.name,
            built=built,
            request=request,
            command=command,
        )

    def test_variant(self, request: VariantRequest) -> None:
        source_dir, target_dir = self._prepare_work_dir(request)
        command = self.command(
            "test",
            request.toolchain,
            flags=request.flags,
            features=request.variant.sorted_features(),
        )
        self._run(
            command,
            cwd=source_dir,
            env=self._env(request.toolchain, request.env, target_dir=target_dir),
            operation="test_variant",
            platform=request.platform,
        )

    def lint(self, request: LintRequest) -> None:
        if request.work_dir.exists():
            shutil.rmtree(request.work_dir)
        source_dir = request.snapshot.export(request.work_dir / "src")
        self._run(
            self.fmt_command(request.toolchain),
            cwd=source_dir,
            env=self._env(request.toolchain, request.env, target_dir=request.work_dir / "target"),
            operation="lint",
            platform=request.platform,
        )

    def environment(self, toolchain: ToolchainSpec, env: Mapping[str, str]) -> dict[str, str]:
        return toolchain_environment(toolchain, env)

    def command(
        self,
        subcommand: str,
        toolchain: ToolchainSpec,
        *,
        flags: Sequence[str] = (),
        features: Sequence[str] = (),
    ) -> tuple[str, ...]:
        argv = [self._cargo(toolchain), subcommand]
        if self.profile == "release":
            argv.append("--release")
        else:
            argv.extend(["--profile", self.profile])
        argv.extend(["--locked", "--offline", "--target", toolchain.target, *flags])
        if features:
            argv.extend(["--features", ",".join(features)])
        return tuple(argv)

    def fmt_command(self, toolchain: ToolchainSpec) -> tuple[str, ...]:
        return (self._cargo(toolchain), "fmt", "--all", "--", "--check")

    def _prepare_work_dir(self, request: VariantRequest) -> tuple[Path, Path]:
        if request.work_dir.exists():
            shutil.rmtree(request.work_dir)
        source_dir = request.snapshot.export(request.work_dir / "src")
        target_dir = request.work_dir / "target"
        cached = request.entry.artifacts_dir / "target"
        if cached.is_dir():
            shutil.copytree(cached, target_dir, symlinks=True)
        else:
            target_dir.mkdir(parents=True)
        return source_dir, target_dir

    def _profile_dir(self) -> str:
        return "release" if self.profile == "release" else self.profile

    def _cargo(self, toolchain: ToolchainSpec) -> str:
        if toolchain.bin_dir is not None and (toolchain.bin_dir / "cargo").exists():
            return str(toolchain.bin_dir / "cargo")
        return "cargo"

    def _env(
        self,
        toolchain: ToolchainSpec,
        env: Mapping[str, str],
        *,
        target_dir: Path,
    ) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(toolchain_environment(toolchain, env))
        merged["CARGO_TARGET_DIR"] = str(target_dir)
        return merged

    def _run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        operation: str,
        platform: str,
    ) -> None:
        try:
            result = self.runner(
                list(command),
                cwd=str(cwd),
                env=dict(env),
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
            )
        except FileNotFoundError as exc:
            raise BackendExecutionError(
                "cargo executable was not found.",
                hint="Materialize the pinned toolchain or put cargo on PATH.",
                context={"backend": self.name, "operation": operation, "platform": platform},
            ) from exc
        if result.returncode != 0:
            raise BackendExecutionError(
                "cargo invocation failed.",
                hint="Check cargo output for details.",
                context={
                    "backend": self.name,
                    "operation": operation,
                    "platform": platform,
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[-2000:] if result.stderr else "",
                    "command": " ".join(command),
                },
            )


def write_skeleton(snapshot: SourceSnapshot, destination: Path) -> Path:
    """Write a dependency-only copy of the workspace under *destination*."""
    keep: list[str] = []
    stubs: list[str] = []
    for relpath in snapshot.paths():
        pure = PurePosixPath(relpath)
        if pure.name in SKELETON_KEEP or pure.parts[0] == ".cargo":
            keep.append(relpath)
        elif pure.suffix == ".rs":
            stubs.append(relpath)
    snapshot.export(destination, only=keep)
    for relpath in stubs:
        stub = destination / relpath
        stub.parent.mkdir(parents=True, exist_ok=True)
        content = "" if PurePosixPath(relpath).name == "lib.rs" else _MAIN_STUB
        stub.write_text(content, encoding="utf-8")
    return destination
