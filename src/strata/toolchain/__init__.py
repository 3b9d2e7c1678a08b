"""Pinned toolchain descriptors and resolution."""

from .descriptor import ToolchainDescriptor, parse_toolchain_descriptor, read_toolchain_descriptor
from .resolve import ToolchainMirror, ToolchainResolver

__all__ = [
    "ToolchainDescriptor",
    "ToolchainMirror",
    "ToolchainResolver",
    "parse_toolchain_descriptor",
    "read_toolchain_descriptor",
]
