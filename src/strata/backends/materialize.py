"""Shared artifact materialization helpers for backends."""

from __future__ import annotations

import hashlib
import json
import shutil
from collections.abc import Sequence
from pathlib import Path

from strata.backends.base import VariantRequest


def install_artifact(
    *,
    backend_name: str,
    built: Path,
    request: VariantRequest,
    command: Sequence[str],
) -> Path:
    """Copy *built* into the variant output dir and record its metadata."""
    request.output_dir.mkdir(parents=True, exist_ok=True)
    output_path = request.output_dir / request.binary
    if built != output_path:
        shutil.copy2(built, output_path)
    write_artifact_metadata(
        backend_name=backend_name,
        output_path=output_path,
        request=request,
        command=command,
    )
    return output_path


def write_artifact_metadata(
    *,
    backend_name: str,
    output_path: Path,
    request: VariantRequest,
    command: Sequence[str],
) -> Path:
    metadata_path = output_path.with_name(f"{output_path.name}.json")
    metadata = {
        "backend": backend_name,
        "platform": request.platform,
        "target": request.toolchain.target,
        "toolchain": request.toolchain.identifier,
        "source_hash": request.snapshot.content_hash,
        "derivation_key": request.entry.key,
        "variant": request.variant.name,
        "features": list(request.variant.sorted_features()),
        "flags": list(request.flags),
        "command": list(command),
        "output_path": str(output_path),
        "sha256": hashlib.sha256(output_path.read_bytes()).hexdigest(),
    }
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return metadata_path
