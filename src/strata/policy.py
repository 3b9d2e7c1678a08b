"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from strata.errors import NonDeterministicInputRejected, PolicyError

NetworkMode = Literal["online", "offline"]

DEFAULT_DENIED_FEATURES = ("autodownload",)


@dataclass(frozen=True, slots=True)
class Policy:
    auto_fetch: bool = False
    network_mode: NetworkMode = "offline"
    require_frozen_lock: bool = False
    denied_features: tuple[str, ...] = DEFAULT_DENIED_FEATURES


def ensure_build_policy(*, policy: Policy, frozen: bool) -> None:
    if policy.require_frozen_lock and not frozen:
        raise PolicyError(
            "Frozen lock mode is required by policy.",
            hint="Pass --frozen or relax policy.require_frozen_lock.",
            context={"operation": "build"},
        )


def ensure_deterministic_inputs(
    *,
    policy: Policy,
    features: Iterable[str],
    operation: str,
) -> None:
    """Reject any request that would let the build consult unpinned inputs."""
    if policy.auto_fetch:
        raise NonDeterministicInputRejected(
            "Auto-fetch of unpinned build inputs was requested.",
            hint="Pin every input in the lockfile and drop --auto-fetch.",
            context={"operation": operation},
        )
    denied = sorted(set(features) & set(policy.denied_features))
    if denied:
        raise NonDeterministicInputRejected(
            "Requested features enable runtime download of unpinned inputs.",
            hint="Remove the feature; it breaks key-to-artifact determinism.",
            context={"operation": operation, "features": ",".join(denied)},
        )


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )
