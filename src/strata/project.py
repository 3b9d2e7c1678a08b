"""Project facade composing the build graph from a manifest."""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from strata.backends import BuildBackend, get_backend
from strata.builders import DependencyCacheBuilder, VariantBuilder
from strata.cache import CacheStore
from strata.config import BuildConfig
from strata.errors import LockfileError, UnknownOutput, ValidationError
from strata.lockfile import (
    LockedPlatform,
    Lockfile,
    build_lockfile,
    manifest_digest,
    read_lockfile,
    write_lockfile,
)
from strata.manifest import DEFAULT_MANIFEST, ProjectManifest, read_manifest
from strata.matrix import PlatformGraph, PlatformMatrixRunner
from strata.models import (
    MatrixResult,
    OutputEntry,
    OutputKind,
    PlatformResult,
    Variant,
    VariantOutcome,
)
from strata.observability import StructuredLogger
from strata.platforms import host_platform
from strata.policy import ensure_build_policy
from strata.registry import OutputRegistry
from strata.snapshot import ExclusionRules
from strata.toolchain import ToolchainResolver


@dataclass(slots=True)
class Project:
    """A buildable project: one manifest, its variants, platforms and named outputs."""

    manifest: ProjectManifest
    config: BuildConfig
    backend: BuildBackend
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    host: str | None = None
    registry: OutputRegistry = field(init=False, repr=False)
    _stores: dict[str, CacheStore] = field(init=False, repr=False)
    _stores_lock: threading.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.host is None or self.host not in self.manifest.platforms:
            detected = host_platform() if self.host is None else self.host
            if detected in self.manifest.platforms:
                self.host = detected
            else:
                self.host = self.manifest.platforms[0]
        self._stores = {}
        self._stores_lock = threading.Lock()
        self.registry = self._default_registry()

    @classmethod
    def load(
        cls,
        manifest_path: str | Path = DEFAULT_MANIFEST,
        *,
        backend: BuildBackend | str | None = None,
        logger: StructuredLogger | None = None,
        host: str | None = None,
        environ: dict[str, str] | None = None,
        **overrides: Any,
    ) -> Project:
        manifest = read_manifest(manifest_path)
        config = BuildConfig.from_env(manifest, environ=environ, **overrides)
        if backend is None or isinstance(backend, str):
            backend = get_backend(backend or manifest.backend)
        return cls(
            manifest=manifest,
            config=config,
            backend=backend,
            logger=logger or StructuredLogger(),
            host=host,
        )

    @property
    def variants(self) -> tuple[Variant, ...]:
        return self.manifest.variants.variants

    @property
    def lock_path(self) -> Path:
        return self.manifest.path.with_suffix(".lock")

    def store_for(self, platform: str) -> CacheStore:
        """Return the platform's cache store; stores are never shared across platforms."""
        with self._stores_lock:
            store = self._stores.get(platform)
            if store is None:
                store = CacheStore(self.config.cache_dir / platform, platform=platform)
                self._stores[platform] = store
            return store

    def graph_for(self, platform: str, *, lock: Lockfile | None = None) -> PlatformGraph:
        if platform not in self.manifest.platforms:
            raise ValidationError(
                "Platform is not listed in the project manifest.",
                hint=f"Declared platforms: {', '.join(self.manifest.platforms)}.",
                context={"platform": platform},
            )
        policy = self.config.policy
        return PlatformGraph(
            platform=platform,
            toolchain_descriptor=self.manifest.toolchain,
            resolver=ToolchainResolver(
                store_root=self.config.toolchain_store,
                mirrors=self.manifest.mirrors,
                policy=policy,
            ),
            source_root=self.manifest.root,
            deps=DependencyCacheBuilder(
                backend=self.backend,
                store=self.store_for(platform),
                policy=policy,
                logger=self.logger,
            ),
            variants=VariantBuilder(
                backend=self.backend,
                logger=self.logger,
                max_workers=self.config.max_workers,
            ),
            output_root=self.config.build_dir / platform,
            lockfile=self.manifest.lockfile,
            binary=self.manifest.binary,
            rules=ExclusionRules().extended(
                (*self.manifest.exclude, self.manifest.path.name, self.lock_path.name)
            ),
            dependency_flags=self.manifest.dependency_flags,
            env=self.config.dependency_env(),
            policy=policy,
            logger=self.logger,
            lock=lock,
        )

    def build(
        self,
        package: str,
        *,
        features: Iterable[str] | None = None,
        frozen: bool = False,
        rebuild: bool = False,
    ) -> VariantOutcome:
        """Build one package and return its outcome.

        Raises the platform-level error or the ``VariantBuildFailed`` of the
        targeted variant. With ``rebuild`` the platform's dependency entry is
        invalidated first.
        """
        ensure_build_policy(policy=self.config.policy, frozen=frozen)
        entry = self.registry.package(package)
        variant = self._variant_for(entry, features)
        graph = self.graph_for(entry.platform, lock=self._frozen_lock() if frozen else None)
        if rebuild:
            self.invalidate(entry.platform, graph=graph)
        result = graph.run([variant])
        self._record(result, [variant])
        return _raise_or_outcome(result, variant)

    def build_matrix(
        self,
        platforms: Sequence[str] | None = None,
        *,
        features: Iterable[str] | None = None,
        frozen: bool = False,
    ) -> MatrixResult:
        """Build the selected variants on every selected platform, in parallel."""
        ensure_build_policy(policy=self.config.policy, frozen=frozen)
        selected = tuple(platforms) if platforms else self.manifest.platforms
        for platform in selected:
            if platform not in self.manifest.platforms:
                raise ValidationError(
                    "Platform is not listed in the project manifest.",
                    context={"platform": platform},
                )
        requested = features if features is not None else self.config.features
        variants = (
            [self.manifest.variants.select(requested)]
            if requested is not None
            else list(self.variants)
        )
        lock = self._frozen_lock() if frozen else None
        runner = PlatformMatrixRunner(
            graph_for=lambda platform: self.graph_for(platform, lock=lock),
            max_workers=self.config.max_workers,
        )
        result = runner.run(selected, variants)
        for platform_result in result.platforms.values():
            self._record(platform_result, variants)
        return result

    def test(self, package: str, *, features: Iterable[str] | None = None) -> None:
        entry = self.registry.package(package)
        variant = self._variant_for(entry, features)
        self.graph_for(entry.platform).test(variant)

    def lint(self) -> None:
        """Run the formatting check on the host platform's snapshot."""
        self.graph_for(str(self.host)).lint()

    def resolve(self, name: str, *, kind: OutputKind = OutputKind.PACKAGE) -> Path:
        """Return the artifact for a package or app, building it on first use."""
        entry = self.registry.entry(name, kind=kind)
        if self.registry.outcome(name, kind=kind) is None:
            variant = self.manifest.variants.get(entry.variant)
            result = self.graph_for(entry.platform).run([variant])
            self._record(result, [variant])
        return self.registry.resolve(name, kind=kind)

    def run(self, app: str, args: Sequence[str] = ()) -> int:
        entry = self.registry.app(app)
        if entry.platform != self.host:
            raise ValidationError(
                "Apps can only run on the host platform.",
                context={"app": app, "platform": entry.platform, "host": str(self.host)},
            )
        artifact = self.resolve(app, kind=OutputKind.APP)
        completed = subprocess.run([str(artifact), *args], check=False)
        return completed.returncode

    def shell_env(self, package: str) -> dict[str, str]:
        """Build environment for a package: pinned toolchain, no compilation."""
        entry = self.registry.package(package)
        variant = self.manifest.variants.get(entry.variant)
        toolchain = self.graph_for(entry.platform).resolve_toolchain()
        env = self.backend.environment(toolchain, self.config.dependency_env())
        env.update(
            {
                "STRATA_PACKAGE": entry.name,
                "STRATA_PLATFORM": entry.platform,
                "STRATA_VARIANT": variant.name,
                "STRATA_FEATURES": ",".join(variant.sorted_features()),
                "STRATA_TOOLCHAIN": toolchain.identifier,
            }
        )
        return dict(sorted(env.items()))

    def lock(self, path: str | Path | None = None) -> Path:
        """Pin every platform's toolchain, snapshot and dependency key without building."""
        locked: dict[str, LockedPlatform] = {}
        for platform in self.manifest.platforms:
            plan = self.graph_for(platform).plan()
            locked[platform] = LockedPlatform(
                toolchain=plan.toolchain.identifier,
                source_hash=plan.snapshot.content_hash,
                derivation_key=plan.key,
            )
        lock = build_lockfile(manifest=self.manifest.payload(), platforms=locked)
        return write_lockfile(lock, Path(path) if path is not None else self.lock_path)

    def invalidate(self, platform: str, *, graph: PlatformGraph | None = None) -> bool:
        """Drop the platform's current dependency entry so the next build recompiles it."""
        plan = (graph or self.graph_for(platform)).plan()
        removed = self.store_for(platform).invalidate(plan.key)
        self.logger.log(
            operation="dependency_cache_invalidated",
            platform=platform,
            stage="dependencies",
            key=plan.key,
            message="Invalidated dependency cache entry." if removed else "No entry to invalidate.",
        )
        return removed

    def _variant_for(self, entry: OutputEntry, features: Iterable[str] | None) -> Variant:
        requested = features if features is not None else self.config.features
        variant = self.manifest.variants.get(entry.variant)
        if requested is None:
            return variant
        selected = self.manifest.variants.select(requested)
        # features narrow the choice; they never swap the package's variant
        if selected.name != variant.name:
            raise ValidationError(
                "Requested features select a different variant than the package builds.",
                hint=f"Build the output that targets variant {selected.name!r} instead.",
                context={
                    "package": entry.name,
                    "variant": variant.name,
                    "selected": selected.name,
                    "features": ",".join(sorted(set(requested))),
                },
            )
        return variant

    def _frozen_lock(self) -> Lockfile:
        lock = read_lockfile(self.lock_path)
        current = manifest_digest(self.manifest.payload())
        if lock.manifest_digest != current:
            raise LockfileError(
                "Frozen build lockfile is stale for the current manifest.",
                hint="Re-run `strata lock` and commit the updated lockfile.",
                context={
                    "operation": "build",
                    "mode": "frozen",
                    "expected": current,
                    "actual": lock.manifest_digest,
                    "path": str(self.lock_path),
                },
            )
        return lock

    def _record(self, result: PlatformResult, variants: Sequence[Variant]) -> None:
        if result.error is not None:
            for variant in variants:
                self.registry.record(
                    VariantOutcome(
                        platform=result.platform,
                        variant=variant,
                        derivation_key=result.derivation_key,
                        error=result.error,
                    )
                )
            return
        for outcome in result.variants.values():
            self.registry.record(outcome)

    def _default_registry(self) -> OutputRegistry:
        registry = OutputRegistry()
        host = str(self.host)
        for platform in self.manifest.platforms:
            for variant in self.variants:
                registry.define_package(
                    f"{variant.name}-{platform}",
                    platform=platform,
                    variant=variant.name,
                )
        for variant in self.variants:
            registry.define_package(variant.name, platform=host, variant=variant.name)
        default = self.manifest.default_variant
        registry.define_package("default", platform=host, variant=default)
        registry.define_app(self.manifest.binary, platform=host, variant=default)
        registry.define_app("default", platform=host, variant=default)

        for package in self.manifest.packages:
            registry.define_package(
                package.name,
                platform=package.platform or host,
                variant=package.variant,
            )
        for app in self.manifest.apps:
            try:
                target = registry.package(app.package)
            except UnknownOutput as exc:
                raise ValidationError(
                    "App refers to an undefined package.",
                    hint=exc.hint,
                    context={"app": app.name, "package": app.package},
                ) from exc
            registry.define_app(app.name, platform=target.platform, variant=target.variant)
        return registry


def _raise_or_outcome(result: PlatformResult, variant: Variant) -> VariantOutcome:
    if result.error is not None:
        raise result.error
    outcome = result.variants[variant.name]
    if outcome.error is not None:
        raise outcome.error
    return outcome

