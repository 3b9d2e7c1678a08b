"""Lockfile parser and serializer."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from strata.errors import LockfileError
from strata.lockfile.model import LockedPlatform, Lockfile


def serialize_lockfile(lockfile: Lockfile) -> str:
    payload = {
        "version": lockfile.version,
        "manifest_digest": lockfile.manifest_digest,
        "platforms": {
            platform: {
                "toolchain": locked.toolchain,
                "source_hash": locked.source_hash,
                "derivation_key": locked.derivation_key,
            }
            for platform, locked in sorted(lockfile.platforms.items())
        },
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def parse_lockfile(raw: str) -> Lockfile:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LockfileError("Invalid lockfile JSON.", hint=str(exc)) from exc

    if not isinstance(payload, dict):
        raise LockfileError("Invalid lockfile payload type.")

    version = _required_int(payload, "version")
    digest = _required_str(payload, "manifest_digest")
    platforms_raw = payload.get("platforms", {})
    if not isinstance(platforms_raw, dict):
        raise LockfileError("Invalid lockfile `platforms` value.")
    platforms = {
        str(platform): _parse_locked_platform(item) for platform, item in platforms_raw.items()
    }
    return Lockfile(version=version, manifest_digest=digest, platforms=platforms)


def read_lockfile(path: str | Path) -> Lockfile:
    lock_path = Path(path)
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise LockfileError(
            "Lockfile does not exist.",
            hint="Run `strata lock` before using frozen mode.",
            context={"path": str(lock_path)},
        ) from exc
    return parse_lockfile(raw)


def write_lockfile(lockfile: Lockfile, path: str | Path) -> Path:
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(serialize_lockfile(lockfile), encoding="utf-8")
    return lock_path


def _parse_locked_platform(item: Any) -> LockedPlatform:
    if not isinstance(item, dict):
        raise LockfileError("Invalid platform entry in lockfile.")
    return LockedPlatform(
        toolchain=_required_str(item, "toolchain"),
        source_hash=_required_str(item, "source_hash"),
        derivation_key=_required_str(item, "derivation_key"),
    )


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise LockfileError(f"Invalid lockfile `{key}` value.")
    return value


def _required_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if not isinstance(value, int):
        raise LockfileError(f"Invalid lockfile `{key}` value.")
    return value
