"""Lockfile typed model."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class LockedPlatform:
    toolchain: str
    source_hash: str
    derivation_key: str


@dataclass(frozen=True, slots=True)
class Lockfile:
    version: int
    manifest_digest: str
    platforms: dict[str, LockedPlatform] = field(default_factory=dict)

    def key_for(self, platform: str) -> str | None:
        locked = self.platforms.get(platform)
        return locked.derivation_key if locked is not None else None
