"""Content-addressed dependency cache APIs."""

from .keys import DependencyInputs, derivation_key
from .store import CacheResolution, CacheStore

__all__ = ["CacheResolution", "CacheStore", "DependencyInputs", "derivation_key"]
