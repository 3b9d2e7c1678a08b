import json
import shutil
from pathlib import Path

import pytest

from strata.cli import EXIT_FAILURE, EXIT_OK, EXIT_USAGE, main
from strata.platforms import PLATFORM_TARGETS


def test_build_prints_artifact_path(
    tmp_path: Path,
    cli_args: list[str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "build", "bin"]) == EXIT_OK

    artifact = Path(capsys.readouterr().out.strip())
    assert artifact.is_file()
    assert artifact.parent == tmp_path / "build" / artifact.parts[-4] / "liquid" / "bin"


def test_unknown_package_is_a_usage_error(
    cli_args: list[str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "build", "electrum"]) == EXIT_USAGE

    err = capsys.readouterr().err
    assert "error[UnknownOutput] electrum:" in err
    assert "hint:" in err


def test_matrix_reports_failing_platform_and_keeps_others(
    cli_args: list[str],
    toolchain_store: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    shutil.rmtree(toolchain_store / "rust-1.75.0" / PLATFORM_TARGETS["aarch64-linux"])

    assert main([*cli_args, "matrix"]) == EXIT_FAILURE

    captured = capsys.readouterr()
    assert "ok base-x86_64-linux" in captured.out
    assert "ok liquid-x86_64-linux" in captured.out
    assert "error[ToolchainUnavailable] aarch64-linux:" in captured.err


def test_matrix_platform_filter(cli_args: list[str], capsys: pytest.CaptureFixture[str]) -> None:
    assert main([*cli_args, "matrix", "--platform", "x86_64-linux"]) == EXIT_OK

    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[1] for line in lines] == ["base-x86_64-linux", "liquid-x86_64-linux"]


def test_lock_then_frozen_build(
    cli_args: list[str],
    source_tree: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "--frozen", "build", "base"]) == EXIT_FAILURE
    assert "error[LockfileError]" in capsys.readouterr().err

    assert main([*cli_args, "lock"]) == EXIT_OK
    assert Path(capsys.readouterr().out.strip()) == source_tree / "strata.lock"
    assert main([*cli_args, "--frozen", "build", "base"]) == EXIT_OK


def test_features_option_must_match_the_package_variant(
    cli_args: list[str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "--features", "liquid", "build", "liquid"]) == EXIT_OK
    assert Path(capsys.readouterr().out.strip()).parts[-3] == "liquid"

    assert main([*cli_args, "--features", "liquid", "build", "default"]) == EXIT_USAGE
    assert "error[ValidationError]" in capsys.readouterr().err
    assert main([*cli_args, "--features", "electrum", "build", "default"]) == EXIT_USAGE


def test_shell_print_emits_quoted_exports(
    cli_args: list[str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "shell", "bin", "--print"]) == EXIT_OK

    lines = capsys.readouterr().out.splitlines()
    assert "export CARGO_INCREMENTAL=0" in lines
    assert "export STRATA_VARIANT=liquid" in lines
    assert all(line.startswith("export ") for line in lines)


def test_run_forwards_arguments_and_exit_code(
    cli_args: list[str],
    monkeypatch: pytest.MonkeyPatch,
    capfd: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "run", "electrs-liquid", "--", "--network", "liquid"]) == EXIT_OK
    assert "electrs liquid --network liquid" in capfd.readouterr().out

    monkeypatch.setenv("STRATA_EXIT_CODE", "4")
    assert main([*cli_args, "run", "electrs"]) == 4


def test_auto_fetch_is_rejected(cli_args: list[str], capsys: pytest.CaptureFixture[str]) -> None:
    assert main([*cli_args, "--auto-fetch", "build", "base"]) == EXIT_FAILURE

    assert "error[NonDeterministicInputRejected] base:" in capsys.readouterr().err


def test_log_json_writes_structured_records(tmp_path: Path, cli_args: list[str]) -> None:
    log_path = tmp_path / "logs" / "build.jsonl"

    assert main([*cli_args, "--log-json", str(log_path), "build", "base"]) == EXIT_OK

    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    operations = [record["operation"] for record in records]
    assert "toolchain_resolved" in operations
    assert "variant_build_complete" in operations


def test_lint_command_reports_success(
    cli_args: list[str],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main([*cli_args, "lint"]) == EXIT_OK
    assert capsys.readouterr().out.strip() == "lint passed"


def test_missing_manifest_is_a_usage_error(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main(["--manifest", str(tmp_path / "missing.toml"), "lock"]) == EXIT_USAGE
    assert "error[ValidationError]" in capsys.readouterr().err


@pytest.fixture
def cli_args(
    tmp_path: Path,
    source_tree: Path,
    toolchain_store: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> list[str]:
    monkeypatch.setenv("STRATA_TOOLCHAIN_STORE", str(toolchain_store))
    monkeypatch.delenv("LIBCLANG_PATH", raising=False)
    return [
        "--manifest",
        str(source_tree / "strata.toml"),
        "--backend",
        "inprocess",
        "--cache-dir",
        str(tmp_path / "cache"),
        "--build-dir",
        str(tmp_path / "build"),
    ]
