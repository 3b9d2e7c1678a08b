"""Integrity-checked retrieval of pinned inputs."""

from .http import fetch

__all__ = ["fetch"]
