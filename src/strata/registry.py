"""Named build outputs: packages and runnable apps."""

from __future__ import annotations

import threading
from pathlib import Path

from strata.errors import UnknownOutput, ValidationError
from strata.models import OutputEntry, OutputKind, VariantOutcome


class OutputRegistry:
    """Maps output names to exactly one ``(platform, variant)`` pair.

    Packages and apps live in separate namespaces. Resolution is a pure
    function of the name: it reads the outcome recorded for the entry's own
    platform and variant, never an outcome from any other platform.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[OutputKind, str], OutputEntry] = {}
        self._outcomes: dict[tuple[str, str], VariantOutcome] = {}
        self._lock = threading.Lock()

    def define_package(self, name: str, *, platform: str, variant: str) -> OutputEntry:
        return self._define(OutputEntry(name, OutputKind.PACKAGE, platform, variant))

    def define_app(self, name: str, *, platform: str, variant: str) -> OutputEntry:
        return self._define(OutputEntry(name, OutputKind.APP, platform, variant))

    def package(self, name: str) -> OutputEntry:
        return self.entry(name, kind=OutputKind.PACKAGE)

    def app(self, name: str) -> OutputEntry:
        return self.entry(name, kind=OutputKind.APP)

    def entry(self, name: str, *, kind: OutputKind) -> OutputEntry:
        found = self._entries.get((kind, name))
        if found is None:
            raise UnknownOutput(
                f"No {kind.value} named {name!r} is defined.",
                hint=f"Known {kind.value}s: {', '.join(self.names(kind)) or '(none)'}.",
                context={"name": name, "kind": kind.value},
            )
        return found

    def names(self, kind: OutputKind) -> tuple[str, ...]:
        return tuple(sorted(name for entry_kind, name in self._entries if entry_kind is kind))

    def entries(self) -> tuple[OutputEntry, ...]:
        return tuple(entry for _, entry in sorted(self._entries.items()))

    def record(self, outcome: VariantOutcome) -> None:
        with self._lock:
            self._outcomes[(outcome.platform, outcome.variant.name)] = outcome

    def outcome(
        self,
        name: str,
        *,
        kind: OutputKind = OutputKind.PACKAGE,
    ) -> VariantOutcome | None:
        entry = self.entry(name, kind=kind)
        with self._lock:
            return self._outcomes.get((entry.platform, entry.variant))

    def resolve(self, name: str, *, kind: OutputKind = OutputKind.PACKAGE) -> Path:
        """Return the artifact path recorded for *name*.

        Re-raises the recorded ``VariantBuildFailed`` when the variant failed.
        """
        entry = self.entry(name, kind=kind)
        outcome = self.outcome(name, kind=kind)
        if outcome is None:
            raise ValidationError(
                f"The {kind.value} {name!r} has not been built yet.",
                hint=f"Run `strata build` for {entry.variant!r} on {entry.platform!r}.",
                context={"name": name, "platform": entry.platform, "variant": entry.variant},
            )
        if outcome.error is not None:
            raise outcome.error
        if outcome.artifact_path is None:
            raise ValidationError(
                f"The {kind.value} {name!r} has no artifact path.",
                context={"name": name},
            )
        return outcome.artifact_path

    def _define(self, entry: OutputEntry) -> OutputEntry:
        if not entry.name:
            raise ValidationError("Output names must be non-empty.")
        with self._lock:
            existing = self._entries.get((entry.kind, entry.name))
            if existing is not None and existing != entry:
                raise ValidationError(
                    f"The {entry.kind.value} {entry.name!r} is already defined.",
                    context={
                        "name": entry.name,
                        "platform": existing.platform,
                        "variant": existing.variant,
                    },
                )
            self._entries[(entry.kind, entry.name)] = entry
        return entry
