"""Hash-pinned retrieval of toolchain archives from trusted mirrors."""

from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path
from typing import BinaryIO
from urllib.request import urlopen

from strata.errors import ReproducibilityError, ValidationError
from strata.policy import Policy, ensure_network_allowed

CHUNK_SIZE = 1 << 20
DEFAULT_TIMEOUT = 60.0
_SHA256 = re.compile(r"[0-9a-f]{64}")


def fetch(
    url: str,
    *,
    sha256: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Path:
    """Return the cached path of *url*, downloading it only when absent.

    Downloads are stored under their expected digest and only become visible
    once the streamed content has been verified. ``file:`` URLs are local
    mirrors and are allowed in offline mode.
    """
    if not _SHA256.fullmatch(sha256):
        raise ValidationError(
            "fetch() requires a lowercase hex sha256 digest.",
            context={"url": url, "sha256": sha256},
        )
    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)
    artifact_path = cache_path / sha256

    if artifact_path.exists():
        with artifact_path.open("rb") as handle:
            actual = _digest(handle)
        if actual != sha256:
            raise ReproducibilityError(
                "Cached toolchain archive does not match its pinned hash.",
                hint="Delete the download cache entry and fetch again.",
                context={"path": str(artifact_path), "expected": sha256, "actual": actual},
            )
        return artifact_path

    if policy is not None and not url.startswith("file:"):
        ensure_network_allowed(policy=policy, operation="fetch")

    fd, temp_name = tempfile.mkstemp(prefix=".fetch-", dir=str(cache_path))
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as out, urlopen(url, timeout=timeout) as response:  # noqa: S310
            actual = _digest(response, sink=out)
        if actual != sha256:
            raise ReproducibilityError(
                "Fetched toolchain archive does not match its pinned hash.",
                hint="Point the mirror at an immutable artifact or update the pinned hash.",
                context={"url": url, "expected": sha256, "actual": actual},
            )
        os.replace(temp_path, artifact_path)
    finally:
        temp_path.unlink(missing_ok=True)
    return artifact_path


def _digest(stream: BinaryIO, *, sink: BinaryIO | None = None) -> str:
    hasher = hashlib.sha256()
    while chunk := stream.read(CHUNK_SIZE):
        hasher.update(chunk)
        if sink is not None:
            sink.write(chunk)
    return hasher.hexdigest()
