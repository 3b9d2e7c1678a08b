"""The fixed enumeration of supported build variants."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from strata.errors import ValidationError
from strata.models import Variant


@dataclass(frozen=True, slots=True)
class VariantCatalog:
    variants: tuple[Variant, ...]

    def __post_init__(self) -> None:
        if not self.variants:
            raise ValidationError("At least one variant must be declared.")
        seen_names: set[str] = set()
        seen_features: dict[frozenset[str], str] = {}
        for variant in self.variants:
            if not variant.name:
                raise ValidationError("Variant names must be non-empty.")
            if variant.name in seen_names:
                raise ValidationError(
                    "Variant names must be unique.",
                    context={"variant": variant.name},
                )
            if variant.features in seen_features:
                raise ValidationError(
                    "Two variants declare the same feature set.",
                    context={
                        "variant": variant.name,
                        "duplicate_of": seen_features[variant.features],
                    },
                )
            seen_names.add(variant.name)
            seen_features[variant.features] = variant.name

    def __iter__(self) -> Iterator[Variant]:
        return iter(self.variants)

    def __contains__(self, name: object) -> bool:
        return any(variant.name == name for variant in self.variants)

    def names(self) -> tuple[str, ...]:
        return tuple(variant.name for variant in self.variants)

    def get(self, name: str) -> Variant:
        for variant in self.variants:
            if variant.name == name:
                return variant
        raise ValidationError(
            "Unknown variant.",
            hint=f"Declared variants: {', '.join(self.names())}.",
            context={"variant": name},
        )

    def select(self, features: Iterable[str]) -> Variant:
        """Return the variant whose feature set is exactly *features*."""
        requested = frozenset(item for item in features if item)
        for variant in self.variants:
            if variant.features == requested:
                return variant
        raise ValidationError(
            "No declared variant matches the requested feature set.",
            hint="Pick a feature set that matches one of the declared variants.",
            context={"features": ",".join(sorted(requested))},
        )

    def features(self) -> frozenset[str]:
        collected: set[str] = set()
        for variant in self.variants:
            collected.update(variant.features)
        return frozenset(collected)
