"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API and CLI surfaces."""

    VALIDATION = "E_VALIDATION"
    TOOLCHAIN_UNAVAILABLE = "E_TOOLCHAIN_UNAVAILABLE"
    SNAPSHOT_INCONSISTENT = "E_SNAPSHOT_INCONSISTENT"
    NONDETERMINISTIC_INPUT = "E_NONDETERMINISTIC_INPUT"
    DEPENDENCY_BUILD = "E_DEPENDENCY_BUILD"
    VARIANT_BUILD = "E_VARIANT_BUILD"
    UNKNOWN_OUTPUT = "E_UNKNOWN_OUTPUT"
    LOCKFILE = "E_LOCKFILE"
    REPRODUCIBILITY = "E_REPRODUCIBILITY"
    BACKEND_EXECUTION = "E_BACKEND_EXECUTION"
    POLICY = "E_POLICY"


class StrataError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class ToolchainUnavailable(StrataError):
    """The pinned toolchain cannot be materialized for a platform."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.TOOLCHAIN_UNAVAILABLE, hint=hint, context=context
        )


class SnapshotInconsistent(StrataError):
    """The working tree could not be read into a stable snapshot."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.SNAPSHOT_INCONSISTENT, hint=hint, context=context
        )


class NonDeterministicInputRejected(StrataError):
    """A build input would consult unpinned external state."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.NONDETERMINISTIC_INPUT, hint=hint, context=context
        )


class DependencyBuildFailed(StrataError):
    """Dependency compilation failed; fatal for every variant sharing the entry."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DEPENDENCY_BUILD, hint=hint, context=context)


class VariantBuildFailed(StrataError):
    """Top-level compilation of a single variant failed."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VARIANT_BUILD, hint=hint, context=context)


class UnknownOutput(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.UNKNOWN_OUTPUT, hint=hint, context=context)


class LockfileError(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOCKFILE, hint=hint, context=context)


class ReproducibilityError(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.REPRODUCIBILITY, hint=hint, context=context)


class BackendExecutionError(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.BACKEND_EXECUTION, hint=hint, context=context)


class PolicyError(StrataError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


__all__ = [
    "BackendExecutionError",
    "DependencyBuildFailed",
    "ErrorCode",
    "LockfileError",
    "NonDeterministicInputRejected",
    "PolicyError",
    "ReproducibilityError",
    "SnapshotInconsistent",
    "StrataError",
    "ToolchainUnavailable",
    "UnknownOutput",
    "ValidationError",
    "VariantBuildFailed",
]
