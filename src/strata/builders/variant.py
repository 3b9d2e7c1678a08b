"""Variant builder: incremental top-level compilation per feature set."""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from strata.backends.base import BuildBackend, VariantRequest
from strata.errors import StrataError, ValidationError, VariantBuildFailed
from strata.models import CacheStatus, VariantOutcome
from strata.observability import StructuredLogger


@dataclass(slots=True)
class VariantBuilder:
    backend: BuildBackend
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    max_workers: int | None = None

    def build(self, request: VariantRequest) -> VariantOutcome:
        """Compile one variant on top of a ready dependency entry.

        Raises :class:`VariantBuildFailed` for any compilation failure. The
        cache entry is only read, so siblings sharing it are unaffected.
        """
        self._ensure_ready(request)
        self._log(request, operation="variant_build_start", message="Building variant.")
        try:
            artifact_path = self.backend.compile_variant(request)
        except VariantBuildFailed:
            raise
        except Exception as exc:
            failure = _variant_failure(request, exc, operation="build")
            self._log(
                request,
                operation="variant_build_failed",
                message=failure.message,
                level="error",
            )
            raise failure from exc
        self._log(
            request,
            operation="variant_build_complete",
            message="Variant built.",
            extra={"artifact": str(artifact_path)},
        )
        return VariantOutcome(
            platform=request.platform,
            variant=request.variant,
            derivation_key=request.entry.key,
            artifact_path=artifact_path,
        )

    def build_many(self, requests: Sequence[VariantRequest]) -> dict[str, VariantOutcome]:
        """Build variants concurrently; one failure never cancels its siblings."""
        names = [request.variant.name for request in requests]
        if len(set(names)) != len(names):
            raise ValidationError(
                "Variant names must be unique within one platform build.",
                context={"variants": ",".join(names)},
            )
        for request in requests:
            self._ensure_ready(request)
        if not requests:
            return {}
        with ThreadPoolExecutor(max_workers=self.max_workers or len(requests)) as pool:
            futures = {
                request.variant.name: pool.submit(self._build_isolated, request)
                for request in requests
            }
            return {name: future.result() for name, future in sorted(futures.items())}

    def test(self, request: VariantRequest) -> None:
        self._ensure_ready(request)
        try:
            self.backend.test_variant(request)
        except VariantBuildFailed:
            raise
        except Exception as exc:
            raise _variant_failure(request, exc, operation="test") from exc
        self._log(request, operation="variant_test_complete", message="Variant tests passed.")

    def _build_isolated(self, request: VariantRequest) -> VariantOutcome:
        try:
            return self.build(request)
        except VariantBuildFailed as exc:
            return VariantOutcome(
                platform=request.platform,
                variant=request.variant,
                derivation_key=request.entry.key,
                error=exc,
            )

    def _ensure_ready(self, request: VariantRequest) -> None:
        if request.entry.status is not CacheStatus.READY:
            raise ValidationError(
                "Variant builds require a ready dependency cache entry.",
                hint="Run the dependency cache builder to completion first.",
                context={
                    "platform": request.platform,
                    "variant": request.variant.name,
                    "status": request.entry.status.value,
                },
            )
        if request.entry.platform != request.platform:
            raise ValidationError(
                "Dependency cache entry belongs to another platform.",
                context={"platform": request.platform, "entry_platform": request.entry.platform},
            )

    def _log(
        self,
        request: VariantRequest,
        *,
        operation: str,
        message: str,
        level: str = "info",
        extra: dict[str, object] | None = None,
    ) -> None:
        self.logger.log(
            operation=operation,
            platform=request.platform,
            stage="variant",
            variant=request.variant.name,
            key=request.entry.key,
            level=level,
            message=message,
            extra=extra,
        )


def _variant_failure(
    request: VariantRequest,
    exc: BaseException,
    *,
    operation: str,
) -> VariantBuildFailed:
    hint = exc.message if isinstance(exc, StrataError) else str(exc)
    context = {
        "operation": operation,
        "platform": request.platform,
        "variant": request.variant.name,
        "cause": type(exc).__name__,
    }
    if isinstance(exc, StrataError):
        for key in ("returncode", "stderr"):
            if key in exc.context:
                context[key] = exc.context[key]
    return VariantBuildFailed(
        f"Variant {request.variant.name!r} failed to {operation}.",
        hint=hint,
        context=context,
    )
