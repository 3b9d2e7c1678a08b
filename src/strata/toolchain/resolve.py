"""Materialize a pinned toolchain for one platform."""

from __future__ import annotations

import os
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from strata.errors import PolicyError, ReproducibilityError, ToolchainUnavailable, ValidationError
from strata.fetch import fetch
from strata.models import ToolchainSpec
from strata.platforms import target_for
from strata.policy import Policy
from strata.toolchain.descriptor import ToolchainDescriptor


@dataclass(frozen=True, slots=True)
class ToolchainMirror:
    """A trusted, hash-pinned toolchain archive for one version and target."""

    version: str
    target: str
    url: str
    sha256: str


@dataclass(slots=True)
class ToolchainResolver:
    store_root: Path
    mirrors: Sequence[ToolchainMirror] = ()
    policy: Policy = field(default_factory=Policy)

    def resolve(self, descriptor: ToolchainDescriptor, *, platform: str) -> ToolchainSpec:
        target = target_for(platform)
        context = {"platform": platform, "target": target, "version": descriptor.version}
        if target not in descriptor.targets:
            raise ToolchainUnavailable(
                "Toolchain descriptor does not declare the platform target.",
                hint=f"Add {target!r} to the descriptor `targets` list.",
                context=context,
            )

        root = self.store_root / f"{descriptor.name}-{descriptor.version}" / target
        if not root.is_dir():
            self._materialize(descriptor=descriptor, target=target, root=root, context=context)

        return ToolchainSpec(
            identifier=descriptor.identifier,
            name=descriptor.name,
            version=descriptor.version,
            targets=descriptor.targets,
            components=descriptor.components,
            profile=descriptor.profile,
            platform=platform,
            target=target,
            root=root,
        )

    def _materialize(
        self,
        *,
        descriptor: ToolchainDescriptor,
        target: str,
        root: Path,
        context: dict[str, str],
    ) -> None:
        mirror = self._mirror_for(version=descriptor.version, target=target)
        if mirror is None:
            raise ToolchainUnavailable(
                "Toolchain is not present locally and no trusted mirror declares it.",
                hint="Install it under the toolchain store or add a [[mirrors]] entry.",
                context={**context, "store": str(root)},
            )
        try:
            archive = fetch(
                mirror.url,
                sha256=mirror.sha256,
                cache_dir=self.store_root / ".downloads",
                policy=self.policy,
            )
        except (PolicyError, ReproducibilityError, ValidationError) as exc:
            raise ToolchainUnavailable(
                "Toolchain archive could not be fetched from the trusted mirror.",
                hint=exc.message,
                context={**context, "url": mirror.url},
            ) from exc
        except OSError as exc:
            raise ToolchainUnavailable(
                "Toolchain archive could not be fetched from the trusted mirror.",
                hint=str(exc),
                context={**context, "url": mirror.url},
            ) from exc

        root.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".unpack-", dir=str(root.parent)))
        try:
            with tarfile.open(archive) as bundle:
                bundle.extractall(staging, filter="data")
            os.replace(staging, root)
        except (tarfile.TarError, OSError) as exc:
            raise ToolchainUnavailable(
                "Toolchain archive could not be unpacked.",
                hint=str(exc),
                context={**context, "archive": str(archive)},
            ) from exc
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _mirror_for(self, *, version: str, target: str) -> ToolchainMirror | None:
        for mirror in self.mirrors:
            if mirror.version == version and mirror.target == target:
                return mirror
        return None
