"""Dependency cache builder."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from strata.backends.base import BuildBackend, DependencyRequest
from strata.cache import CacheStore, DependencyInputs, derivation_key
from strata.cache.store import ResolutionSource
from strata.errors import DependencyBuildFailed, NonDeterministicInputRejected
from strata.models import CacheEntry, SourceSnapshot, ToolchainSpec
from strata.observability import StructuredLogger
from strata.policy import Policy, ensure_deterministic_inputs


@dataclass(frozen=True, slots=True)
class DependencyResult:
    entry: CacheEntry
    key: str
    source: ResolutionSource

    @property
    def cache_hit(self) -> bool:
        return self.source != "built"


@dataclass(slots=True)
class DependencyCacheBuilder:
    backend: BuildBackend
    store: CacheStore
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def inputs_for(
        self,
        *,
        toolchain: ToolchainSpec,
        snapshot: SourceSnapshot,
        lockfile: str,
        flags: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> DependencyInputs:
        lockfile_digest = snapshot.digest_of(lockfile)
        if lockfile_digest is None:
            raise NonDeterministicInputRejected(
                "Dependency lockfile is missing from the source snapshot.",
                hint="Commit the lockfile; unpinned dependencies cannot be cached by key.",
                context={"lockfile": lockfile, "platform": toolchain.platform},
            )
        return DependencyInputs(
            toolchain=toolchain.identifier,
            source_hash=snapshot.content_hash,
            platform=toolchain.platform,
            lockfile_digest=lockfile_digest,
            flags=tuple(flags),
            profile=self.backend.profile,
            offline=not self.policy.auto_fetch,
            env=dict(sorted((env or {}).items())),
        )

    def ensure(
        self,
        *,
        toolchain: ToolchainSpec,
        snapshot: SourceSnapshot,
        lockfile: str,
        flags: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> DependencyResult:
        """Return a ready cache entry for the dependency graph, building it if absent."""
        platform = toolchain.platform
        ensure_deterministic_inputs(
            policy=self.policy,
            features=features_in_flags(flags),
            operation="dependency_build",
        )
        inputs = self.inputs_for(
            toolchain=toolchain,
            snapshot=snapshot,
            lockfile=lockfile,
            flags=flags,
            env=env,
        )
        key = derivation_key(inputs)

        def compile_dependencies(artifacts_dir: Path) -> None:
            self.logger.log(
                operation="dependency_cache_miss",
                platform=platform,
                stage="dependencies",
                key=key,
                message="Compiling dependency graph.",
            )
            self.backend.compile_dependencies(
                DependencyRequest(
                    key=key,
                    platform=platform,
                    toolchain=toolchain,
                    snapshot=snapshot,
                    lockfile=lockfile,
                    artifacts_dir=artifacts_dir,
                    flags=tuple(flags),
                    env=inputs.env,
                )
            )

        try:
            resolution = self.store.get_or_build(inputs, compile_dependencies)
        except DependencyBuildFailed as exc:
            self.logger.log(
                operation="dependency_build_failed",
                platform=platform,
                stage="dependencies",
                key=key,
                level="error",
                message=exc.message,
            )
            raise

        if resolution.source == "hit":
            self.logger.log(
                operation="dependency_cache_hit",
                platform=platform,
                stage="dependencies",
                key=key,
                message="Reusing ready dependency cache entry.",
            )
        elif resolution.source == "coalesced":
            self.logger.log(
                operation="dependency_cache_wait",
                platform=platform,
                stage="dependencies",
                key=key,
                message="Joined in-flight dependency build.",
            )
        return DependencyResult(entry=resolution.entry, key=key, source=resolution.source)


def features_in_flags(flags: Sequence[str]) -> tuple[str, ...]:
    """Extract feature names from ``--features`` style command-line flags."""
    features: list[str] = []
    expect_value = False
    for flag in flags:
        if expect_value:
            features.extend(_split_features(flag))
            expect_value = False
        elif flag in ("--features", "-F"):
            expect_value = True
        elif flag.startswith("--features="):
            features.extend(_split_features(flag.partition("=")[2]))
    return tuple(features)


def _split_features(value: str) -> list[str]:
    return [item for item in value.replace(",", " ").split() if item]
