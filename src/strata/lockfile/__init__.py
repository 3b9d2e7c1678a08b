"""Build lockfile model, serialization and resolution."""

from .io import parse_lockfile, read_lockfile, serialize_lockfile, write_lockfile
from .model import LockedPlatform, Lockfile
from .resolve import LOCKFILE_VERSION, build_lockfile, manifest_digest

__all__ = [
    "LOCKFILE_VERSION",
    "LockedPlatform",
    "Lockfile",
    "build_lockfile",
    "manifest_digest",
    "parse_lockfile",
    "read_lockfile",
    "serialize_lockfile",
    "write_lockfile",
]
