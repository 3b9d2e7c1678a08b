"""Command-line interface for strata.

Usage:
    strata build <package> [--rebuild]
    strata test <package>
    strata run <app> [args...]
    strata shell <package> [--print]
    strata matrix [--platform P ...]
    strata lock
"""

from __future__ import annotations

import argparse
import os
import shlex
import subprocess
import sys
from collections.abc import Iterable, Sequence

from strata.errors import StrataError, UnknownOutput, ValidationError
from strata.manifest import DEFAULT_MANIFEST
from strata.observability import StructuredLogger
from strata.project import Project

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def cmd_build(project: Project, args: argparse.Namespace) -> int:
    outcome = project.build(
        args.package,
        features=args.features,
        frozen=args.frozen,
        rebuild=args.rebuild,
    )
    print(outcome.artifact_path)
    return EXIT_OK


def cmd_test(project: Project, args: argparse.Namespace) -> int:
    project.test(args.package, features=args.features)
    print(f"tests passed: {args.package}")
    return EXIT_OK


def cmd_lint(project: Project, args: argparse.Namespace) -> int:
    project.lint()
    print("lint passed")
    return EXIT_OK


def cmd_run(project: Project, args: argparse.Namespace) -> int:
    forwarded = list(args.args)
    if forwarded[:1] == ["--"]:
        forwarded = forwarded[1:]
    return project.run(args.app, forwarded)


def cmd_shell(project: Project, args: argparse.Namespace) -> int:
    env = project.shell_env(args.package)
    if args.print:
        for key, value in env.items():
            print(f"export {key}={shlex.quote(value)}")
        return EXIT_OK
    shell = os.environ.get("SHELL", "/bin/sh")
    return subprocess.run([shell], env={**os.environ, **env}, check=False).returncode


def cmd_matrix(project: Project, args: argparse.Namespace) -> int:
    result = project.build_matrix(args.platform or None, features=args.features, frozen=args.frozen)
    for platform, platform_result in sorted(result.platforms.items()):
        for name, outcome in sorted(platform_result.variants.items()):
            if outcome.ok:
                print(f"ok {name}-{platform} {outcome.artifact_path}")
    failures = result.failures()
    for line in failure_lines(failures):
        print(line, file=sys.stderr)
    return EXIT_FAILURE if failures else EXIT_OK


def cmd_lock(project: Project, args: argparse.Namespace) -> int:
    print(project.lock())
    return EXIT_OK


COMMANDS = {
    "build": cmd_build,
    "test": cmd_test,
    "lint": cmd_lint,
    "run": cmd_run,
    "shell": cmd_shell,
    "matrix": cmd_matrix,
    "lock": cmd_lock,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strata",
        description="Reproducible multi-platform build graph for feature-flagged binaries",
    )
    parser.add_argument("--manifest", default=DEFAULT_MANIFEST, help="Project manifest path")
    parser.add_argument("--cache-dir", help="Dependency cache directory")
    parser.add_argument("--build-dir", help="Build output directory")
    parser.add_argument("--backend", choices=("cargo", "inprocess"), help="Compiler backend")
    parser.add_argument(
        "--features",
        type=_feature_list,
        default=None,
        help="Comma-separated feature list selecting the targeted variant",
    )
    parser.add_argument(
        "--auto-fetch",
        action="store_true",
        default=None,
        help="Allow fetching unpinned inputs at build time (rejected by policy)",
    )
    network = parser.add_mutually_exclusive_group()
    network.add_argument(
        "--offline",
        dest="network_mode",
        action="store_const",
        const="offline",
        help="Never fetch toolchains from mirrors (default)",
    )
    network.add_argument(
        "--online",
        dest="network_mode",
        action="store_const",
        const="online",
        help="Allow fetching pinned toolchains from mirrors",
    )
    parser.add_argument("--frozen", action="store_true", help="Require an up-to-date lockfile")
    parser.add_argument("--log-json", help="Write structured log records as JSON lines")

    sub = parser.add_subparsers(dest="command", required=True)

    build_p = sub.add_parser("build", help="Build one package")
    build_p.add_argument("package")
    build_p.add_argument(
        "--rebuild",
        action="store_true",
        help="Invalidate the dependency cache entry first",
    )

    test_p = sub.add_parser("test", help="Run the test step for one package")
    test_p.add_argument("package")

    sub.add_parser("lint", help="Check source formatting with the pinned toolchain")

    run_p = sub.add_parser("run", help="Build if needed and execute an app")
    run_p.add_argument("app")
    run_p.add_argument("args", nargs=argparse.REMAINDER)

    shell_p = sub.add_parser("shell", help="Enter the build environment of a package")
    shell_p.add_argument("package")
    shell_p.add_argument("--print", action="store_true", help="Print export lines instead")

    matrix_p = sub.add_parser("matrix", help="Build every variant on every platform")
    matrix_p.add_argument("--platform", action="append", help="Restrict to one platform")

    sub.add_parser("lock", help="Write the build lockfile")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = StructuredLogger()
    try:
        try:
            project = Project.load(
                args.manifest,
                backend=args.backend,
                logger=logger,
                cache_dir=args.cache_dir,
                build_dir=args.build_dir,
                features=args.features,
                auto_fetch=args.auto_fetch,
                network_mode=args.network_mode,
            )
            return COMMANDS[args.command](project, args)
        except StrataError as exc:
            target = _target_of(args)
            for line in failure_lines([(target, exc)]):
                print(line, file=sys.stderr)
            if exc.hint:
                print(f"  hint: {exc.hint}", file=sys.stderr)
            if isinstance(exc, UnknownOutput | ValidationError):
                return EXIT_USAGE
            return EXIT_FAILURE
    finally:
        if args.log_json:
            logger.to_json_lines(args.log_json)


def failure_lines(failures: Iterable[tuple[str, StrataError]]) -> list[str]:
    return [f"error[{error.kind}] {target}: {error.message}" for target, error in failures]


def _target_of(args: argparse.Namespace) -> str:
    for attr in ("package", "app"):
        value = getattr(args, attr, None)
        if value:
            return str(value)
    return str(args.command)


def _feature_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


if __name__ == "__main__":
    raise SystemExit(main())
