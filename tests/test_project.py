import hashlib
from pathlib import Path

import pytest
from conftest import MANIFEST_TOML, load_project

from strata.backends import InProcessBackend
from strata.errors import (
    BackendExecutionError,
    NonDeterministicInputRejected,
    ValidationError,
    VariantBuildFailed,
)
from strata.models import OutputKind
from strata.project import Project


def test_base_and_extended_variants_share_one_dependency_build(
    project: Project,
    inprocess_backend: InProcessBackend,
) -> None:
    base = project.build("base")
    liquid = project.build("liquid")

    assert base.derivation_key == liquid.derivation_key
    assert len(inprocess_backend.dependency_builds) == 1
    assert base.artifact_path != liquid.artifact_path
    assert base.artifact_path is not None and liquid.artifact_path is not None
    assert _sha(base.artifact_path) != _sha(liquid.artifact_path)
    assert project.resolve("bin") == liquid.artifact_path
    assert project.resolve("electrs", kind=OutputKind.APP) == base.artifact_path


def test_rebuild_returns_identical_artifact_from_cache(
    project: Project,
    inprocess_backend: InProcessBackend,
) -> None:
    first = project.build("liquid")
    assert first.artifact_path is not None
    first_digest = _sha(first.artifact_path)

    second = project.build("liquid")

    assert second.artifact_path is not None
    assert _sha(second.artifact_path) == first_digest
    assert len(inprocess_backend.dependency_builds) == 1
    assert "dependency_cache_hit" in project.logger.operations()


def test_rebuild_flag_invalidates_dependency_entry(
    project: Project,
    inprocess_backend: InProcessBackend,
) -> None:
    project.build("base")
    project.build("base", rebuild=True)

    assert len(inprocess_backend.dependency_builds) == 2
    assert "dependency_cache_invalidated" in project.logger.operations()


def test_features_must_match_the_package_variant(project: Project) -> None:
    outcome = project.build("bin", features=["liquid"])

    assert outcome.variant.name == "liquid"
    assert project.build("default", features=[]).variant.name == "base"
    with pytest.raises(ValidationError) as excinfo:
        project.build("base", features=["liquid"])
    assert excinfo.value.context["selected"] == "liquid"
    with pytest.raises(ValidationError):
        project.build("default", features=["electrum"])


def test_source_change_moves_the_derivation_key(project: Project, source_tree: Path) -> None:
    before = project.build("base").derivation_key
    (source_tree / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")

    after = project.build("base").derivation_key

    assert before != after


def test_support_library_path_enters_the_key(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    manifest = source_tree / "strata.toml"
    plain = load_project(tmp_path, manifest=manifest, backend=InProcessBackend())
    with_clang = load_project(
        tmp_path,
        manifest=manifest,
        backend=InProcessBackend(),
        environ={"LIBCLANG_PATH": "/opt/clang/lib"},
    )

    assert with_clang.config.dependency_env() == {"LIBCLANG_PATH": "/opt/clang/lib"}
    assert plain.build("base").derivation_key != with_clang.build("base").derivation_key


def test_variant_failure_is_raised_and_recorded(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    backend = InProcessBackend(fail_variants=frozenset({"liquid"}))
    project = load_project(tmp_path, manifest=source_tree / "strata.toml", backend=backend)

    with pytest.raises(VariantBuildFailed):
        project.build("liquid")
    with pytest.raises(VariantBuildFailed):
        project.resolve("bin")
    assert project.build("base").ok


def test_auto_fetch_is_rejected_before_any_build(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    backend = InProcessBackend()
    project = load_project(
        tmp_path,
        manifest=source_tree / "strata.toml",
        backend=backend,
        auto_fetch=True,
    )

    with pytest.raises(NonDeterministicInputRejected):
        project.build("base")
    assert backend.dependency_builds == []


def test_variant_enabling_runtime_download_is_rejected(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    manifest = source_tree / "strata.toml"
    manifest.write_text(
        MANIFEST_TOML + '\n[variants.online]\nfeatures = ["autodownload"]\n',
        encoding="utf-8",
    )
    project = load_project(tmp_path, manifest=manifest, backend=InProcessBackend())

    with pytest.raises(NonDeterministicInputRejected):
        project.build("online")
    assert project.build("base").ok


def test_second_manifest_reuses_shared_dependency_cache(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    liquid_manifest = source_tree / "strata.liquid.toml"
    liquid_manifest.write_text(
        MANIFEST_TOML.replace('default_variant = "base"', 'default_variant = "liquid"'),
        encoding="utf-8",
    )
    first_backend = InProcessBackend()
    second_backend = InProcessBackend()
    base_project = load_project(
        tmp_path,
        manifest=source_tree / "strata.toml",
        backend=first_backend,
    )
    liquid_project = load_project(tmp_path, manifest=liquid_manifest, backend=second_backend)

    base = base_project.build("default")
    liquid = liquid_project.build("default")

    assert base.variant.name == "base"
    assert liquid.variant.name == "liquid"
    assert base.derivation_key == liquid.derivation_key
    assert len(first_backend.dependency_builds) == 1
    assert second_backend.dependency_builds == []
    assert liquid_project.lock_path.name == "strata.liquid.lock"


def test_run_executes_the_app_and_forwards_exit_code(
    project: Project,
    monkeypatch: pytest.MonkeyPatch,
    capfd: pytest.CaptureFixture[str],
) -> None:
    assert project.run("electrs-liquid", ["--network", "liquid"]) == 0
    assert "electrs liquid --network liquid" in capfd.readouterr().out

    monkeypatch.setenv("STRATA_EXIT_CODE", "3")
    assert project.run("default") == 3


def test_apps_for_other_platforms_cannot_run(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    manifest = source_tree / "strata.toml"
    manifest.write_text(
        MANIFEST_TOML
        + '\n[packages.arm]\nvariant = "base"\nplatform = "aarch64-linux"\n'
        + '\n[apps.arm]\npackage = "arm"\n',
        encoding="utf-8",
    )
    project = load_project(tmp_path, manifest=manifest, backend=InProcessBackend())

    with pytest.raises(ValidationError):
        project.run("arm")


def test_shell_env_exposes_toolchain_without_building(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    backend = InProcessBackend()
    project = load_project(
        tmp_path,
        manifest=source_tree / "strata.toml",
        backend=backend,
        environ={"LIBCLANG_PATH": "/opt/clang/lib"},
    )

    env = project.shell_env("bin")

    assert env["CARGO_INCREMENTAL"] == "0"
    assert env["LIBCLANG_PATH"] == "/opt/clang/lib"
    assert env["STRATA_VARIANT"] == "liquid"
    assert env["STRATA_FEATURES"] == "liquid"
    assert env["PATH"].startswith(str(toolchain_store / "rust-1.75.0"))
    assert backend.dependency_builds == []
    assert backend.variant_builds == []


def test_host_falls_back_to_first_manifest_platform(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    project = Project.load(
        source_tree / "strata.toml",
        backend=InProcessBackend(),
        host="aarch64-darwin",
        environ={},
        cache_dir=tmp_path / "cache",
        build_dir=tmp_path / "build",
        toolchain_store=toolchain_store,
    )

    assert project.host == "x86_64-linux"


def test_lint_checks_formatting_without_building(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    backend = InProcessBackend()
    project = load_project(tmp_path, manifest=source_tree / "strata.toml", backend=backend)

    project.lint()

    assert [run.split(":")[0] for run in backend.lint_runs] == ["x86_64-linux"]
    assert backend.dependency_builds == []
    assert backend.variant_builds == []
    assert "lint_complete" in project.logger.operations()


def test_lint_failure_is_raised(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
) -> None:
    project = load_project(
        tmp_path,
        manifest=source_tree / "strata.toml",
        backend=InProcessBackend(fail_lint=True),
    )

    with pytest.raises(BackendExecutionError):
        project.lint()
    assert "lint_complete" not in project.logger.operations()


def test_invalid_manifest_is_a_validation_error(tmp_path: Path) -> None:
    manifest = tmp_path / "strata.toml"
    manifest.write_text('[project]\nname = "electrs"\n', encoding="utf-8")

    with pytest.raises(ValidationError):
        Project.load(manifest, backend=InProcessBackend(), environ={})
    with pytest.raises(ValidationError):
        Project.load(tmp_path / "missing.toml", backend=InProcessBackend(), environ={})


def _sha(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()
