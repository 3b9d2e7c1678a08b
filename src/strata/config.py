"""Per-invocation build settings resolved from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from strata.manifest import ProjectManifest
from strata.policy import Policy

ENV_CACHE_DIR = "STRATA_CACHE_DIR"
ENV_BUILD_DIR = "STRATA_BUILD_DIR"
ENV_TOOLCHAIN_STORE = "STRATA_TOOLCHAIN_STORE"

_POLICY_FIELDS = ("auto_fetch", "network_mode", "require_frozen_lock")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    cache_dir: Path
    build_dir: Path
    toolchain_store: Path
    support_lib_env: str = "LIBCLANG_PATH"
    support_lib: Path | None = None
    features: tuple[str, ...] | None = None
    policy: Policy = field(default_factory=Policy)
    max_workers: int | None = None

    @classmethod
    def from_env(
        cls,
        manifest: ProjectManifest,
        *,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> BuildConfig:
        """Resolve settings for *manifest*; explicit ``overrides`` win over the environment."""
        env = os.environ if environ is None else environ
        state_dir = manifest.root / ".strata"
        support_lib = env.get(manifest.support_lib_env)
        config = cls(
            cache_dir=_path(env.get(ENV_CACHE_DIR), state_dir / "cache"),
            build_dir=_path(env.get(ENV_BUILD_DIR), state_dir / "build"),
            toolchain_store=_path(env.get(ENV_TOOLCHAIN_STORE), _default_toolchain_store(env)),
            support_lib_env=manifest.support_lib_env,
            support_lib=Path(support_lib) if support_lib else None,
            policy=Policy(denied_features=manifest.denied_features),
        )
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        policy_overrides = {
            key: cleaned.pop(key) for key in _POLICY_FIELDS if key in cleaned
        }
        if policy_overrides:
            cleaned["policy"] = replace(config.policy, **policy_overrides)
        for key in ("cache_dir", "build_dir", "toolchain_store", "support_lib"):
            if key in cleaned:
                cleaned[key] = Path(cleaned[key])
        return replace(config, **cleaned)

    def dependency_env(self) -> dict[str, str]:
        """Environment entries that affect compiled dependencies, and so the key."""
        if self.support_lib is None:
            return {}
        return {self.support_lib_env: str(self.support_lib)}


def _path(value: str | None, fallback: Path) -> Path:
    return Path(value) if value else fallback


def _default_toolchain_store(env: Mapping[str, str]) -> Path:
    cache_home = env.get("XDG_CACHE_HOME")
    base = Path(cache_home) if cache_home else Path.home() / ".cache"
    return base / "strata" / "toolchains"
