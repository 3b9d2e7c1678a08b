"""Deterministic, filtered snapshots of a working tree.

The snapshot hash only depends on the relative paths, contents, executable
bits and symlink targets of included files. Directory listings are sorted
before hashing so filesystem ordering never leaks into the hash.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import stat
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from strata.errors import SnapshotInconsistent
from strata.models import SnapshotFile, SourceSnapshot

DEFAULT_EXCLUDES = (
    ".git",
    ".hg",
    ".svn",
    ".direnv",
    ".strata",
    "target",
    "result",
    "result-*",
    "__pycache__",
    "*.swp",
    "*~",
    ".DS_Store",
    "strata.toml",
    "strata.*.toml",
    "strata.lock",
    "strata.*.lock",
)

_CHUNK = 1 << 16


@dataclass(frozen=True, slots=True)
class ExclusionRules:
    patterns: tuple[str, ...] = DEFAULT_EXCLUDES

    def extended(self, extra: Iterable[str]) -> ExclusionRules:
        return ExclusionRules(patterns=tuple(dict.fromkeys((*self.patterns, *extra))))

    def excludes(self, relpath: str) -> bool:
        pure = PurePosixPath(relpath)
        for pattern in self.patterns:
            if fnmatch.fnmatchcase(relpath, pattern):
                return True
            if any(fnmatch.fnmatchcase(part, pattern) for part in pure.parts):
                return True
        return False


def take_snapshot(root: str | Path, rules: ExclusionRules | None = None) -> SourceSnapshot:
    tree_root = Path(root)
    active_rules = rules or ExclusionRules()
    if not tree_root.exists():
        raise SnapshotInconsistent(
            "Source root does not exist.",
            context={"operation": "snapshot", "root": str(tree_root)},
        )
    if not tree_root.is_dir():
        raise SnapshotInconsistent(
            "Source root is not a directory.",
            context={"operation": "snapshot", "root": str(tree_root)},
        )

    files: list[SnapshotFile] = []
    for relpath in _walk(tree_root, active_rules):
        files.append(_snapshot_file(tree_root, relpath))

    digest = hashlib.sha256()
    for item in files:
        kind = "l" if item.symlink is not None else ("x" if item.executable else "f")
        digest.update(f"{item.path}\0{kind}\0{item.symlink or item.sha256}\n".encode())
    return SourceSnapshot(root=tree_root, content_hash=digest.hexdigest(), files=tuple(files))


def _walk(root: Path, rules: ExclusionRules) -> list[str]:
    collected: list[str] = []

    def on_error(exc: OSError) -> None:
        raise SnapshotInconsistent(
            "Source directory could not be read.",
            hint=str(exc),
            context={"operation": "snapshot", "path": str(exc.filename or "")},
        ) from exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        base = Path(dirpath).relative_to(root)
        dirnames[:] = sorted(
            name for name in dirnames if not rules.excludes(_posix(base / name))
        )
        for name in sorted(filenames):
            relpath = _posix(base / name)
            if not rules.excludes(relpath):
                collected.append(relpath)
        # symlinked directories are not followed; record them as links
        for name in list(dirnames):
            if (Path(dirpath) / name).is_symlink():
                dirnames.remove(name)
                collected.append(_posix(base / name))
    return sorted(collected)


def _snapshot_file(root: Path, relpath: str) -> SnapshotFile:
    path = root / relpath
    context = {"operation": "snapshot", "path": relpath}
    try:
        before = path.lstat()
        if stat.S_ISLNK(before.st_mode):
            target = os.readlink(path)
            return SnapshotFile(
                path=relpath,
                sha256=hashlib.sha256(target.encode()).hexdigest(),
                symlink=target,
            )
        digest = hashlib.sha256()
        remaining = before.st_size
        with path.open("rb") as handle:
            while remaining > 0:
                chunk = handle.read(min(_CHUNK, remaining))
                if not chunk:
                    break
                digest.update(chunk)
                remaining -= len(chunk)
        after = path.lstat()
    except OSError as exc:
        raise SnapshotInconsistent(
            "Source file could not be read.",
            hint=str(exc),
            context=context,
        ) from exc

    if (before.st_size, before.st_mtime_ns) != (after.st_size, after.st_mtime_ns):
        raise SnapshotInconsistent(
            "Source file changed while the snapshot was taken.",
            hint="Re-run the build once the working tree is quiescent.",
            context=context,
        )
    return SnapshotFile(
        path=relpath,
        sha256=digest.hexdigest(),
        executable=bool(before.st_mode & stat.S_IXUSR),
    )


def _posix(path: Path) -> str:
    return PurePosixPath(*path.parts).as_posix()
