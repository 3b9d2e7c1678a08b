"""strata: reproducible multi-platform builds for feature-flagged binaries."""

from .backends import CargoBackend, InProcessBackend, get_backend
from .cache import CacheStore, DependencyInputs, derivation_key
from .config import BuildConfig
from .errors import (
    BackendExecutionError,
    DependencyBuildFailed,
    ErrorCode,
    LockfileError,
    NonDeterministicInputRejected,
    PolicyError,
    ReproducibilityError,
    SnapshotInconsistent,
    StrataError,
    ToolchainUnavailable,
    UnknownOutput,
    ValidationError,
    VariantBuildFailed,
)
from .manifest import ProjectManifest, parse_manifest, read_manifest
from .matrix import PlatformGraph, PlatformMatrixRunner
from .models import (
    CacheEntry,
    CacheStatus,
    MatrixResult,
    OutputKind,
    PlatformResult,
    SourceSnapshot,
    ToolchainSpec,
    Variant,
    VariantOutcome,
)
from .observability import StructuredLogger
from .policy import Policy
from .project import Project
from .registry import OutputRegistry
from .report import BuildReport
from .snapshot import ExclusionRules, take_snapshot
from .toolchain import ToolchainResolver, read_toolchain_descriptor
from .variants import VariantCatalog

__version__ = "0.1.0"

__all__ = [
    "BackendExecutionError",
    "BuildConfig",
    "BuildReport",
    "CacheEntry",
    "CacheStatus",
    "CacheStore",
    "CargoBackend",
    "DependencyBuildFailed",
    "DependencyInputs",
    "ErrorCode",
    "ExclusionRules",
    "InProcessBackend",
    "LockfileError",
    "MatrixResult",
    "NonDeterministicInputRejected",
    "OutputKind",
    "OutputRegistry",
    "PlatformGraph",
    "PlatformMatrixRunner",
    "PlatformResult",
    "Policy",
    "PolicyError",
    "Project",
    "ProjectManifest",
    "ReproducibilityError",
    "SnapshotInconsistent",
    "SourceSnapshot",
    "StrataError",
    "StructuredLogger",
    "ToolchainResolver",
    "ToolchainSpec",
    "ToolchainUnavailable",
    "UnknownOutput",
    "ValidationError",
    "Variant",
    "VariantBuildFailed",
    "VariantCatalog",
    "VariantOutcome",
    "derivation_key",
    "get_backend",
    "parse_manifest",
    "read_manifest",
    "read_toolchain_descriptor",
    "take_snapshot",
]
