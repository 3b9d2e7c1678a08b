"""Compiler backend interfaces and implementations."""

from strata.errors import ValidationError

from .base import (
    BuildBackend,
    DependencyRequest,
    LintRequest,
    VariantRequest,
    toolchain_environment,
)
from .cargo import CargoBackend
from .inprocess import InProcessBackend


def get_backend(name: str) -> BuildBackend:
    if name == "cargo":
        return CargoBackend()
    if name == "inprocess":
        return InProcessBackend()
    raise ValidationError(
        "Unsupported build backend.",
        hint="Use one of: cargo, inprocess.",
        context={"backend": name},
    )


__all__ = [
    "BuildBackend",
    "CargoBackend",
    "DependencyRequest",
    "InProcessBackend",
    "LintRequest",
    "VariantRequest",
    "get_backend",
    "toolchain_environment",
]
