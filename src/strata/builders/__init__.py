"""Dependency cache and variant builders."""

from .deps import DependencyCacheBuilder, DependencyResult, features_in_flags
from .variant import VariantBuilder

__all__ = [
    "DependencyCacheBuilder",
    "DependencyResult",
    "VariantBuilder",
    "features_in_flags",
]
