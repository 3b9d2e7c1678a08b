"""Platform identifiers and their compiler target triples."""

from __future__ import annotations

import platform as _platform
import sys

from strata.errors import ToolchainUnavailable

PLATFORM_TARGETS: dict[str, str] = {
    "x86_64-linux": "x86_64-unknown-linux-gnu",
    "aarch64-linux": "aarch64-unknown-linux-gnu",
    "x86_64-darwin": "x86_64-apple-darwin",
    "aarch64-darwin": "aarch64-apple-darwin",
}

DEFAULT_PLATFORMS = tuple(PLATFORM_TARGETS)

_MACHINE_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}


def target_for(platform: str) -> str:
    try:
        return PLATFORM_TARGETS[platform]
    except KeyError:
        raise ToolchainUnavailable(
            "Unsupported platform identifier.",
            hint=f"Use one of: {', '.join(DEFAULT_PLATFORMS)}.",
            context={"platform": platform},
        ) from None


def host_platform() -> str:
    machine = _MACHINE_ALIASES.get(_platform.machine().lower(), _platform.machine().lower())
    system = "darwin" if sys.platform == "darwin" else "linux"
    return f"{machine}-{system}"


__all__ = ["DEFAULT_PLATFORMS", "PLATFORM_TARGETS", "host_platform", "target_for"]
