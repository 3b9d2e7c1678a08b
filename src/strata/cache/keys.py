"""Derivation key computation for dependency cache entries."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class DependencyInputs:
    """Every input that affects dependency compilation, and nothing else.

    Variant feature flags never appear here.
    """

    toolchain: str
    source_hash: str
    platform: str
    lockfile_digest: str
    flags: tuple[str, ...] = ()
    profile: str = "release"
    offline: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


def derivation_key(inputs: DependencyInputs) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_payload(inputs: DependencyInputs) -> dict[str, Any]:
    return {
        "toolchain": inputs.toolchain,
        "source_hash": inputs.source_hash,
        "platform": inputs.platform,
        "lockfile_digest": inputs.lockfile_digest,
        "flags": list(inputs.flags),
        "profile": inputs.profile,
        "offline": inputs.offline,
        "env": dict(sorted(inputs.env.items())),
    }
