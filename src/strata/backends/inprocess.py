"""In-process build backend for testing and development.

Produces deterministic artifacts without invoking any compiler. Dependency
bundles and variant binaries are derived only from the build inputs, so two
runs over the same inputs produce byte-identical outputs. Variant binaries are
small POSIX shell scripts, which keeps ``strata run`` usable without a
toolchain. Failures can be injected per variant, for the dependency stage or
for the formatting check.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from strata.backends.base import (
    DependencyRequest,
    LintRequest,
    VariantRequest,
    toolchain_environment,
)
from strata.backends.materialize import install_artifact
from strata.errors import BackendExecutionError
from strata.models import ToolchainSpec

DEPENDENCY_STAMP = "deps/bundle.txt"


@dataclass(slots=True)
class InProcessBackend:
    """Backend that produces deterministic placeholder artifacts in-process."""

    name: str = "inprocess"
    profile: str = "release"
    fail_dependencies: bool = False
    fail_variants: frozenset[str] = frozenset()
    fail_lint: bool = False
    delay: float = 0.0
    dependency_builds: list[str] = field(default_factory=list)
    variant_builds: list[str] = field(default_factory=list)
    lint_runs: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def compile_dependencies(self, request: DependencyRequest) -> None:
        with self._lock:
            self.dependency_builds.append(f"{request.platform}:{request.key}")
        if self.delay:
            time.sleep(self.delay)
        if self.fail_dependencies:
            raise BackendExecutionError(
                "Injected dependency compilation failure.",
                context={"backend": self.name, "platform": request.platform},
            )
        stamp = request.artifacts_dir / DEPENDENCY_STAMP
        stamp.parent.mkdir(parents=True, exist_ok=True)
        stamp.write_text(
            (
                f"toolchain={request.toolchain.identifier}\n"
                f"target={request.toolchain.target}\n"
                f"lockfile={request.snapshot.digest_of(request.lockfile)}\n"
                f"flags={' '.join(request.flags)}\n"
            ),
            encoding="utf-8",
        )

    def compile_variant(self, request: VariantRequest) -> Path:
        with self._lock:
            self.variant_builds.append(f"{request.platform}:{request.variant.name}")
        stamp = request.entry.artifacts_dir / DEPENDENCY_STAMP
        if not stamp.exists():
            raise BackendExecutionError(
                "Dependency bundle is missing from the cache entry.",
                context={"backend": self.name, "key": request.entry.key},
            )
        bundle_digest = hashlib.sha256(stamp.read_bytes()).hexdigest()
        self._maybe_fail(request, operation="compile_variant")

        features = ",".join(request.variant.sorted_features())
        request.work_dir.mkdir(parents=True, exist_ok=True)
        built = request.work_dir / request.binary
        built.write_text(
            (
                "#!/bin/sh\n"
                f"# strata in-process artifact: {request.binary}\n"
                f"# platform={request.platform} target={request.toolchain.target}\n"
                f"# variant={request.variant.name} features={features}\n"
                f"# toolchain={request.toolchain.identifier}\n"
                f"# source={request.snapshot.content_hash}\n"
                f"# dependencies={request.entry.key} bundle={bundle_digest}\n"
                f'echo "{request.binary} {request.variant.name} $*"\n'
                'exit "${STRATA_EXIT_CODE:-0}"\n'
            ),
            encoding="utf-8",
        )
        built.chmod(0o755)
        command = ("inprocess", "build", request.variant.name, features)
        return install_artifact(
            backend_name=self.name,
            built=built,
            request=request,
            command=command,
        )

    def test_variant(self, request: VariantRequest) -> None:
        self._maybe_fail(request, operation="test_variant")

    def lint(self, request: LintRequest) -> None:
        with self._lock:
            self.lint_runs.append(f"{request.platform}:{request.snapshot.content_hash}")
        if self.fail_lint:
            raise BackendExecutionError(
                "Injected formatting check failure.",
                context={"backend": self.name, "operation": "lint", "platform": request.platform},
            )

    def environment(self, toolchain: ToolchainSpec, env: Mapping[str, str]) -> dict[str, str]:
        return toolchain_environment(toolchain, env)

    def _maybe_fail(self, request: VariantRequest, *, operation: str) -> None:
        if request.variant.name in self.fail_variants:
            raise BackendExecutionError(
                "Injected variant compilation failure.",
                context={
                    "backend": self.name,
                    "operation": operation,
                    "platform": request.platform,
                    "variant": request.variant.name,
                },
            )
