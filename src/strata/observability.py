"""Structured logging and observability helpers."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def log(
        self,
        *,
        operation: str,
        platform: str | None,
        stage: str | None,
        message: str,
        variant: str | None = None,
        key: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "platform": platform,
            "stage": stage,
            "variant": variant,
            "key": key,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        with self._lock:
            self.records.append(record)

    def mark(self) -> int:
        """Return a position usable as ``since`` to read only later records."""
        with self._lock:
            return len(self.records)

    def records_for_platform(self, platform: str, *, since: int = 0) -> list[dict[str, Any]]:
        with self._lock:
            return [
                record for record in self.records[since:] if record.get("platform") == platform
            ]

    def operations(self) -> list[str]:
        with self._lock:
            return [str(record["operation"]) for record in self.records]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
