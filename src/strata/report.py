"""Per-platform build reports with stable JSON and CBOR export."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cbor2

from strata.models import PlatformResult


@dataclass(frozen=True, slots=True)
class BuildReport:
    platform: str
    toolchain: str | None
    source_hash: str | None
    derivation_key: str | None
    cache_hit: bool
    error: dict[str, object] | None = None
    variants: dict[str, dict[str, Any]] = field(default_factory=dict)
    logs: list[dict[str, Any]] = field(default_factory=list)
    schema_version: int = 1

    @classmethod
    def from_result(
        cls,
        result: PlatformResult,
        *,
        logs: list[dict[str, Any]] | None = None,
    ) -> BuildReport:
        variants: dict[str, dict[str, Any]] = {}
        for name, outcome in sorted(result.variants.items()):
            artifact = outcome.artifact_path
            variants[name] = {
                "features": list(outcome.variant.sorted_features()),
                "derivation_key": outcome.derivation_key,
                "status": "ok" if outcome.ok else "failed",
                "artifact": str(artifact) if artifact is not None else None,
                "sha256": (
                    hashlib.sha256(artifact.read_bytes()).hexdigest()
                    if artifact is not None and artifact.exists()
                    else None
                ),
                "error": outcome.error.to_dict() if outcome.error is not None else None,
            }
        return cls(
            platform=result.platform,
            toolchain=result.toolchain.identifier if result.toolchain is not None else None,
            source_hash=result.source_hash,
            derivation_key=result.derivation_key,
            cache_hit=result.cache_hit,
            error=result.error.to_dict() if result.error is not None else None,
            variants=variants,
            logs=list(logs or []),
        )

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def write(self, directory: str | Path) -> Path:
        report_dir = Path(directory)
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / "report.json"
        self.to_json(report_path)
        return report_path

    def _payload(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "platform": self.platform,
            "toolchain": self.toolchain,
            "source_hash": self.source_hash,
            "derivation_key": self.derivation_key,
            "cache_hit": self.cache_hit,
            "error": self.error,
            "variants": self.variants,
            "logs": self.logs,
        }
