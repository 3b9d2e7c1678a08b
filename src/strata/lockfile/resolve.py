"""Lockfile resolution helpers."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from strata.lockfile.model import LockedPlatform, Lockfile

LOCKFILE_VERSION = 1


def manifest_digest(manifest: Mapping[str, Any]) -> str:
    canonical = json.dumps(manifest, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_lockfile(
    *,
    manifest: Mapping[str, Any],
    platforms: Mapping[str, LockedPlatform],
) -> Lockfile:
    return Lockfile(
        version=LOCKFILE_VERSION,
        manifest_digest=manifest_digest(manifest),
        platforms=dict(sorted(platforms.items())),
    )
