from dataclasses import replace
from pathlib import Path

import pytest

from strata.backends import InProcessBackend, VariantRequest
from strata.builders import DependencyCacheBuilder, VariantBuilder, features_in_flags
from strata.cache import CacheStore
from strata.errors import NonDeterministicInputRejected, ValidationError, VariantBuildFailed
from strata.models import CacheEntry, SourceSnapshot, ToolchainSpec, Variant
from strata.observability import StructuredLogger
from strata.policy import Policy
from strata.snapshot import take_snapshot

BASE = Variant.of("base")
LIQUID = Variant.of("liquid", "liquid")


def test_dependency_builder_compiles_once_per_key(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend()
    logger = StructuredLogger()
    builder = DependencyCacheBuilder(
        backend=backend,
        store=CacheStore(tmp_path / "cache"),
        logger=logger,
    )

    first = builder.ensure(toolchain=toolchain, snapshot=snapshot, lockfile="Cargo.lock")
    second = builder.ensure(toolchain=toolchain, snapshot=snapshot, lockfile="Cargo.lock")

    assert not first.cache_hit
    assert second.cache_hit
    assert first.key == second.key
    assert len(backend.dependency_builds) == 1
    assert logger.operations() == ["dependency_cache_miss", "dependency_cache_hit"]


def test_dependency_builder_requires_lockfile(
    tmp_path: Path,
    source_tree: Path,
    toolchain: ToolchainSpec,
) -> None:
    (source_tree / "Cargo.lock").unlink()
    builder = DependencyCacheBuilder(backend=InProcessBackend(), store=CacheStore(tmp_path / "c"))

    with pytest.raises(NonDeterministicInputRejected):
        builder.ensure(
            toolchain=toolchain,
            snapshot=take_snapshot(source_tree),
            lockfile="Cargo.lock",
        )


def test_dependency_builder_rejects_autodownload_flags(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend()
    builder = DependencyCacheBuilder(backend=backend, store=CacheStore(tmp_path / "cache"))

    with pytest.raises(NonDeterministicInputRejected):
        builder.ensure(
            toolchain=toolchain,
            snapshot=snapshot,
            lockfile="Cargo.lock",
            flags=("--features", "autodownload"),
        )
    assert backend.dependency_builds == []


def test_dependency_builder_rejects_auto_fetch_policy(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    builder = DependencyCacheBuilder(
        backend=InProcessBackend(),
        store=CacheStore(tmp_path / "cache"),
        policy=Policy(auto_fetch=True),
    )

    with pytest.raises(NonDeterministicInputRejected):
        builder.ensure(toolchain=toolchain, snapshot=snapshot, lockfile="Cargo.lock")


def test_dependency_key_tracks_support_library_env(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    builder = DependencyCacheBuilder(backend=InProcessBackend(), store=CacheStore(tmp_path / "c"))

    plain = builder.ensure(toolchain=toolchain, snapshot=snapshot, lockfile="Cargo.lock")
    with_clang = builder.ensure(
        toolchain=toolchain,
        snapshot=snapshot,
        lockfile="Cargo.lock",
        env={"LIBCLANG_PATH": "/opt/clang/lib"},
    )

    assert plain.key != with_clang.key


def test_features_in_flags_understands_cargo_spellings() -> None:
    flags = ("--no-default-features", "--features", "liquid,electrum", "-F", "a b", "--features=c")

    assert features_in_flags(flags) == ("liquid", "electrum", "a", "b", "c")


def test_variant_builder_requires_ready_entry(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    entry = CacheEntry(key="k", platform="x86_64-linux", artifacts_dir=tmp_path / "artifacts")
    builder = VariantBuilder(backend=InProcessBackend())

    with pytest.raises(ValidationError):
        builder.build(_request(tmp_path, toolchain, snapshot, entry, BASE))


def test_variants_share_one_entry_and_differ_only_in_artifacts(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend()
    entry = _ready_entry(tmp_path, backend, toolchain, snapshot)
    builder = VariantBuilder(backend=backend)

    outcomes = builder.build_many(
        [
            _request(tmp_path, toolchain, snapshot, entry, BASE),
            _request(tmp_path, toolchain, snapshot, entry, LIQUID),
        ]
    )

    base, liquid = outcomes["base"], outcomes["liquid"]
    assert base.ok and liquid.ok
    assert base.derivation_key == liquid.derivation_key == entry.key
    assert base.artifact_path is not None and liquid.artifact_path is not None
    assert base.artifact_path.read_bytes() != liquid.artifact_path.read_bytes()
    assert len(backend.dependency_builds) == 1


def test_variant_failure_is_isolated_from_siblings(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend(fail_variants=frozenset({"liquid"}))
    entry = _ready_entry(tmp_path, backend, toolchain, snapshot)
    artifacts_before = dict(entry.artifacts)
    logger = StructuredLogger()
    builder = VariantBuilder(backend=backend, logger=logger)

    outcomes = builder.build_many(
        [
            _request(tmp_path, toolchain, snapshot, entry, BASE),
            _request(tmp_path, toolchain, snapshot, entry, LIQUID),
        ]
    )

    assert outcomes["base"].ok
    assert isinstance(outcomes["liquid"].error, VariantBuildFailed)
    assert entry.ready
    assert entry.artifacts == artifacts_before
    assert "variant_build_failed" in logger.operations()


def test_build_many_rejects_duplicate_variant_names(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend()
    entry = _ready_entry(tmp_path, backend, toolchain, snapshot)
    request = _request(tmp_path, toolchain, snapshot, entry, BASE)

    with pytest.raises(ValidationError):
        VariantBuilder(backend=backend).build_many([request, replace(request)])


def test_variant_test_step_wraps_backend_failure(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> None:
    backend = InProcessBackend(fail_variants=frozenset({"liquid"}))
    entry = _ready_entry(tmp_path, backend, toolchain, snapshot)
    builder = VariantBuilder(backend=backend)

    builder.test(_request(tmp_path, toolchain, snapshot, entry, BASE))
    with pytest.raises(VariantBuildFailed) as excinfo:
        builder.test(_request(tmp_path, toolchain, snapshot, entry, LIQUID))
    assert excinfo.value.context["operation"] == "test"


def _ready_entry(
    tmp_path: Path,
    backend: InProcessBackend,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
) -> CacheEntry:
    builder = DependencyCacheBuilder(backend=backend, store=CacheStore(tmp_path / "cache"))
    return builder.ensure(toolchain=toolchain, snapshot=snapshot, lockfile="Cargo.lock").entry


def _request(
    tmp_path: Path,
    toolchain: ToolchainSpec,
    snapshot: SourceSnapshot,
    entry: CacheEntry,
    variant: Variant,
) -> VariantRequest:
    root = tmp_path / "build" / toolchain.platform / variant.name
    return VariantRequest(
        platform=toolchain.platform,
        toolchain=toolchain,
        snapshot=snapshot,
        variant=variant,
        entry=entry,
        binary="electrs",
        output_dir=root / "bin",
        work_dir=root / "work",
    )
