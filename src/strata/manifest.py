"""Project manifest (``strata.toml``) parsing and validation."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from strata.errors import ValidationError
from strata.models import Variant
from strata.platforms import PLATFORM_TARGETS, host_platform
from strata.policy import DEFAULT_DENIED_FEATURES
from strata.toolchain import ToolchainMirror
from strata.variants import VariantCatalog

DEFAULT_MANIFEST = "strata.toml"


@dataclass(frozen=True, slots=True)
class PackageDecl:
    name: str
    variant: str
    platform: str | None = None


@dataclass(frozen=True, slots=True)
class AppDecl:
    name: str
    package: str


@dataclass(frozen=True, slots=True)
class ProjectManifest:
    path: Path
    root: Path
    name: str
    binary: str
    toolchain: Path
    variants: VariantCatalog
    default_variant: str
    lockfile: str = "Cargo.lock"
    backend: str = "cargo"
    platforms: tuple[str, ...] = ()
    dependency_flags: tuple[str, ...] = ()
    denied_features: tuple[str, ...] = DEFAULT_DENIED_FEATURES
    support_lib_env: str = "LIBCLANG_PATH"
    exclude: tuple[str, ...] = ()
    packages: tuple[PackageDecl, ...] = ()
    apps: tuple[AppDecl, ...] = ()
    mirrors: tuple[ToolchainMirror, ...] = field(default_factory=tuple)

    def payload(self) -> dict[str, Any]:
        """Canonical, location-independent view used for lockfile digests."""
        return {
            "name": self.name,
            "binary": self.binary,
            "toolchain": _relative(self.toolchain, self.root),
            "lockfile": self.lockfile,
            "platforms": list(self.platforms),
            "dependency_flags": list(self.dependency_flags),
            "denied_features": sorted(self.denied_features),
            "exclude": sorted(self.exclude),
            "variants": {
                variant.name: list(variant.sorted_features()) for variant in self.variants
            },
        }


def parse_manifest(raw: str, *, path: str | Path) -> ProjectManifest:
    manifest_path = Path(path)
    try:
        payload = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(
            "Project manifest is not valid TOML.",
            hint=str(exc),
            context={"path": str(manifest_path)},
        ) from exc

    project = payload.get("project")
    if not isinstance(project, dict):
        raise ValidationError(
            "Project manifest is missing the [project] table.",
            context={"path": str(manifest_path)},
        )

    base = manifest_path.parent
    root = base / _str(project, "root", default=".")
    name = _str(project, "name")
    variants = _parse_variants(payload.get("variants"), path=manifest_path)
    default_variant = _str(project, "default_variant", default=variants.names()[0])
    if default_variant not in variants:
        raise ValidationError(
            "`default_variant` does not name a declared variant.",
            context={"path": str(manifest_path), "variant": default_variant},
        )

    platforms = _str_tuple(project, "platforms") or (host_platform(),)
    for platform in platforms:
        if platform not in PLATFORM_TARGETS:
            raise ValidationError(
                "Manifest lists an unsupported platform.",
                hint=f"Use one of: {', '.join(PLATFORM_TARGETS)}.",
                context={"path": str(manifest_path), "platform": platform},
            )

    packages = _parse_packages(payload.get("packages", {}), variants=variants, platforms=platforms)
    return ProjectManifest(
        path=manifest_path,
        root=root,
        name=name,
        binary=_str(project, "binary", default=name),
        toolchain=base / _str(project, "toolchain", default="rust-toolchain.toml"),
        variants=variants,
        default_variant=default_variant,
        lockfile=_str(project, "lockfile", default="Cargo.lock"),
        backend=_str(project, "backend", default="cargo"),
        platforms=tuple(dict.fromkeys(platforms)),
        dependency_flags=_str_tuple(project, "dependency_flags"),
        denied_features=_str_tuple(project, "denied_features", default=DEFAULT_DENIED_FEATURES),
        support_lib_env=_str(project, "support_lib_env", default="LIBCLANG_PATH"),
        exclude=_str_tuple(project, "exclude"),
        packages=packages,
        apps=_parse_apps(payload.get("apps", {})),
        mirrors=_parse_mirrors(payload.get("mirrors", [])),
    )


def read_manifest(path: str | Path) -> ProjectManifest:
    manifest_path = Path(path)
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(
            "Project manifest does not exist.",
            hint=f"Create {DEFAULT_MANIFEST} or pass --manifest.",
            context={"path": str(manifest_path)},
        ) from exc
    return parse_manifest(raw, path=manifest_path)


def _parse_variants(raw: Any, *, path: Path) -> VariantCatalog:
    if not isinstance(raw, dict) or not raw:
        raise ValidationError(
            "Project manifest must declare at least one [variants.<name>] table.",
            context={"path": str(path)},
        )
    variants: list[Variant] = []
    for name, table in raw.items():
        if not isinstance(table, dict):
            raise ValidationError("Invalid variant table.", context={"variant": str(name)})
        variants.append(Variant(name=str(name), features=frozenset(_str_tuple(table, "features"))))
    return VariantCatalog(tuple(variants))


def _parse_packages(
    raw: Any,
    *,
    variants: VariantCatalog,
    platforms: tuple[str, ...],
) -> tuple[PackageDecl, ...]:
    if not isinstance(raw, dict):
        raise ValidationError("Invalid [packages] table.")
    packages: list[PackageDecl] = []
    for name, table in sorted(raw.items()):
        if not isinstance(table, dict):
            raise ValidationError("Invalid package table.", context={"package": str(name)})
        variant = _str(table, "variant")
        variants.get(variant)
        platform = table.get("platform")
        if platform is not None and platform not in platforms:
            raise ValidationError(
                "Package platform is not listed in [project].platforms.",
                context={"package": str(name), "platform": str(platform)},
            )
        packages.append(PackageDecl(name=str(name), variant=variant, platform=platform))
    return tuple(packages)


def _parse_apps(raw: Any) -> tuple[AppDecl, ...]:
    if not isinstance(raw, dict):
        raise ValidationError("Invalid [apps] table.")
    apps: list[AppDecl] = []
    for name, table in sorted(raw.items()):
        if not isinstance(table, dict):
            raise ValidationError("Invalid app table.", context={"app": str(name)})
        apps.append(AppDecl(name=str(name), package=_str(table, "package")))
    return tuple(apps)


def _parse_mirrors(raw: Any) -> tuple[ToolchainMirror, ...]:
    if not isinstance(raw, list):
        raise ValidationError("Invalid [[mirrors]] array.")
    mirrors: list[ToolchainMirror] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("Invalid mirror entry.")
        mirrors.append(
            ToolchainMirror(
                version=_str(item, "version"),
                target=_str(item, "target"),
                url=_str(item, "url"),
                sha256=_str(item, "sha256"),
            )
        )
    return tuple(mirrors)


def _str(table: dict[str, Any], key: str, *, default: str | None = None) -> str:
    value = table.get(key, default)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid manifest `{key}` value.", context={"key": key})
    return value


def _str_tuple(
    table: dict[str, Any],
    key: str,
    *,
    default: tuple[str, ...] = (),
) -> tuple[str, ...]:
    value = table.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Invalid manifest `{key}` list.", context={"key": key})
    return tuple(value)


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()
