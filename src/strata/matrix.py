"""Per-platform build graphs and the parallel matrix runner."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from strata.backends.base import LintRequest, VariantRequest
from strata.builders import DependencyCacheBuilder, DependencyResult, VariantBuilder
from strata.cache import DependencyInputs, derivation_key
from strata.errors import (
    DependencyBuildFailed,
    LockfileError,
    NonDeterministicInputRejected,
    PolicyError,
    ReproducibilityError,
    SnapshotInconsistent,
    StrataError,
    ToolchainUnavailable,
    ValidationError,
)
from strata.lockfile import Lockfile
from strata.models import MatrixResult, PlatformResult, SourceSnapshot, ToolchainSpec, Variant
from strata.observability import StructuredLogger
from strata.policy import Policy, ensure_deterministic_inputs
from strata.report import BuildReport
from strata.snapshot import ExclusionRules, take_snapshot
from strata.toolchain import ToolchainResolver, read_toolchain_descriptor

PLATFORM_ERRORS: tuple[type[StrataError], ...] = (
    ToolchainUnavailable,
    SnapshotInconsistent,
    NonDeterministicInputRejected,
    DependencyBuildFailed,
    LockfileError,
    ReproducibilityError,
    PolicyError,
)


@dataclass(frozen=True, slots=True)
class PlatformPlan:
    """Everything that determines a platform's dependency key, computed without building."""

    platform: str
    toolchain: ToolchainSpec
    snapshot: SourceSnapshot
    inputs: DependencyInputs
    key: str


@dataclass(slots=True)
class PlatformGraph:
    """The Resolver -> Snapshot -> Dependency Cache -> Variants chain for one platform."""

    platform: str
    toolchain_descriptor: Path
    resolver: ToolchainResolver
    source_root: Path
    deps: DependencyCacheBuilder
    variants: VariantBuilder
    output_root: Path
    lockfile: str
    binary: str
    rules: ExclusionRules = field(default_factory=ExclusionRules)
    dependency_flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    lock: Lockfile | None = None

    def resolve_toolchain(self) -> ToolchainSpec:
        descriptor = read_toolchain_descriptor(self.toolchain_descriptor)
        toolchain = self.resolver.resolve(descriptor, platform=self.platform)
        self.logger.log(
            operation="toolchain_resolved",
            platform=self.platform,
            stage="toolchain",
            message=f"Resolved {toolchain.identifier}.",
            extra={"target": toolchain.target},
        )
        return toolchain

    def plan(self) -> PlatformPlan:
        toolchain = self.resolve_toolchain()
        snapshot = take_snapshot(self.source_root, self.rules)
        self.logger.log(
            operation="snapshot_taken",
            platform=self.platform,
            stage="snapshot",
            message=f"Snapshot of {len(snapshot.files)} files.",
            extra={"content_hash": snapshot.content_hash},
        )
        inputs = self.deps.inputs_for(
            toolchain=toolchain,
            snapshot=snapshot,
            lockfile=self.lockfile,
            flags=self.dependency_flags,
            env=self.env,
        )
        return PlatformPlan(
            platform=self.platform,
            toolchain=toolchain,
            snapshot=snapshot,
            inputs=inputs,
            key=derivation_key(inputs),
        )

    def prepare(self, variants: Sequence[Variant]) -> tuple[PlatformPlan, DependencyResult]:
        """Run every stage below the variants; errors propagate to the caller."""
        features = [feature for variant in variants for feature in variant.features]
        ensure_deterministic_inputs(
            policy=self.policy,
            features=features,
            operation="platform_build",
        )
        plan = self.plan()
        if self.lock is not None:
            self._assert_locked(plan, self.lock)
        dependencies = self.deps.ensure(
            toolchain=plan.toolchain,
            snapshot=plan.snapshot,
            lockfile=self.lockfile,
            flags=self.dependency_flags,
            env=self.env,
        )
        return plan, dependencies

    def request(
        self,
        plan: PlatformPlan,
        dependencies: DependencyResult,
        variant: Variant,
    ) -> VariantRequest:
        variant_root = self.output_root / variant.name
        return VariantRequest(
            platform=self.platform,
            toolchain=plan.toolchain,
            snapshot=plan.snapshot,
            variant=variant,
            entry=dependencies.entry,
            binary=self.binary,
            output_dir=variant_root / "bin",
            work_dir=variant_root / "work",
            flags=self.dependency_flags,
            env=self.env,
        )

    def run(self, variants: Sequence[Variant]) -> PlatformResult:
        """Build *variants*; platform-level failures are captured, never raised."""
        result = PlatformResult(platform=self.platform)
        since = self.logger.mark()
        try:
            plan, dependencies = self.prepare(variants)
        except PLATFORM_ERRORS as exc:
            return self._fail(result, exc, since=since)
        except ValidationError:
            raise
        except Exception as exc:
            failure = DependencyBuildFailed(
                "Platform build aborted unexpectedly.",
                hint=str(exc) or repr(exc),
                context={"platform": self.platform, "cause": type(exc).__name__},
            )
            return self._fail(result, failure, since=since)

        result.toolchain = plan.toolchain
        result.source_hash = plan.snapshot.content_hash
        result.derivation_key = dependencies.key
        result.cache_hit = dependencies.cache_hit
        result.variants = self.variants.build_many(
            [self.request(plan, dependencies, variant) for variant in variants]
        )
        result.report_path = self._write_report(result, since=since)
        return result

    def test(self, variant: Variant) -> None:
        plan, dependencies = self.prepare([variant])
        self.variants.test(self.request(plan, dependencies, variant))

    def lint(self) -> None:
        """Check formatting of the snapshot; no dependency or variant stage runs."""
        toolchain = self.resolve_toolchain()
        snapshot = take_snapshot(self.source_root, self.rules)
        self.variants.backend.lint(
            LintRequest(
                platform=self.platform,
                toolchain=toolchain,
                snapshot=snapshot,
                work_dir=self.output_root / ".lint",
                env=self.env,
            )
        )
        self.logger.log(
            operation="lint_complete",
            platform=self.platform,
            stage="lint",
            message="Formatting check passed.",
            extra={"content_hash": snapshot.content_hash},
        )

    def _assert_locked(self, plan: PlatformPlan, lock: Lockfile) -> None:
        locked = lock.platforms.get(self.platform)
        if locked is None or locked.derivation_key != plan.key:
            raise LockfileError(
                "Frozen build lockfile is stale for the current inputs.",
                hint="Re-run `strata lock` and commit the updated lockfile.",
                context={
                    "operation": "build",
                    "mode": "frozen",
                    "platform": self.platform,
                    "expected": plan.key,
                    "actual": locked.derivation_key if locked is not None else "",
                },
            )

    def _fail(self, result: PlatformResult, exc: StrataError, *, since: int) -> PlatformResult:
        result.error = exc
        self.logger.log(
            operation="platform_failed",
            platform=self.platform,
            stage="platform",
            level="error",
            message=f"{exc.kind}: {exc.message}",
        )
        result.report_path = self._write_report(result, since=since)
        return result

    def _write_report(self, result: PlatformResult, *, since: int = 0) -> Path:
        report = BuildReport.from_result(
            result,
            logs=self.logger.records_for_platform(self.platform, since=since),
        )
        return report.write(self.output_root)


GraphFactory = Callable[[str], PlatformGraph]


@dataclass(slots=True)
class PlatformMatrixRunner:
    """Runs one independent graph per platform, in parallel."""

    graph_for: GraphFactory
    max_workers: int | None = None

    def run(self, platforms: Sequence[str], variants: Sequence[Variant]) -> MatrixResult:
        selected = tuple(dict.fromkeys(platforms))
        if not selected:
            return MatrixResult()
        graphs = {platform: self.graph_for(platform) for platform in selected}
        with ThreadPoolExecutor(max_workers=self.max_workers or len(selected)) as pool:
            futures = {
                platform: pool.submit(graph.run, variants) for platform, graph in graphs.items()
            }
            return MatrixResult(
                platforms={platform: future.result() for platform, future in futures.items()}
            )
