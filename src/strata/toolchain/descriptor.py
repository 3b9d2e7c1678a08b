"""Pinned toolchain descriptor parsing."""

from __future__ import annotations

import hashlib
import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from strata.errors import ToolchainUnavailable


@dataclass(frozen=True, slots=True)
class ToolchainDescriptor:
    name: str
    version: str
    targets: tuple[str, ...] = ()
    components: tuple[str, ...] = ()
    profile: str = "minimal"

    def payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "targets": sorted(self.targets),
            "components": sorted(self.components),
            "profile": self.profile,
        }

    def digest(self) -> str:
        canonical = json.dumps(self.payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def identifier(self) -> str:
        return f"{self.name}-{self.version}-{self.digest()[:16]}"


def parse_toolchain_descriptor(raw: str, *, source: str = "<string>") -> ToolchainDescriptor:
    try:
        payload = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ToolchainUnavailable(
            "Toolchain descriptor is not valid TOML.",
            hint=str(exc),
            context={"path": source},
        ) from exc

    section = payload.get("toolchain")
    if not isinstance(section, dict):
        raise ToolchainUnavailable(
            "Toolchain descriptor is missing the [toolchain] table.",
            context={"path": source},
        )
    channel = section.get("channel")
    if not isinstance(channel, str) or not channel:
        raise ToolchainUnavailable(
            "Toolchain descriptor must pin a non-empty `channel`.",
            hint='Pin an exact version, for example channel = "1.75.0".',
            context={"path": source},
        )
    return ToolchainDescriptor(
        name=_optional_str(section, "name", default="rust", source=source),
        version=channel,
        targets=_str_tuple(section, "targets", source=source),
        components=_str_tuple(section, "components", source=source),
        profile=_optional_str(section, "profile", default="minimal", source=source),
    )


def read_toolchain_descriptor(path: str | Path) -> ToolchainDescriptor:
    descriptor_path = Path(path)
    try:
        raw = descriptor_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ToolchainUnavailable(
            "Toolchain descriptor does not exist.",
            hint="Point the manifest `toolchain` key at a pinned descriptor file.",
            context={"path": str(descriptor_path)},
        ) from exc
    return parse_toolchain_descriptor(raw, source=str(descriptor_path))


def _optional_str(section: dict[str, Any], key: str, *, default: str, source: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value:
        raise ToolchainUnavailable(
            f"Invalid toolchain descriptor `{key}` value.",
            context={"path": source},
        )
    return value


def _str_tuple(section: dict[str, Any], key: str, *, source: str) -> tuple[str, ...]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ToolchainUnavailable(
            f"Invalid toolchain descriptor `{key}` list.",
            context={"path": source},
        )
    return tuple(sorted(dict.fromkeys(value)))
