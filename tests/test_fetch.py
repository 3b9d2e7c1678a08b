import hashlib
from pathlib import Path

import pytest

from strata.errors import PolicyError, ReproducibilityError, ValidationError
from strata.fetch import fetch
from strata.policy import Policy


def test_fetch_requires_sha256(tmp_path: Path) -> None:
    source = tmp_path / "rust-1.75.0.tar.gz"
    source.write_bytes(b"payload")

    with pytest.raises(ValidationError):
        fetch(source.as_uri(), sha256="", cache_dir=tmp_path / "cache")
    with pytest.raises(ValidationError):
        fetch(source.as_uri(), sha256="ABC", cache_dir=tmp_path / "cache")


def test_fetch_caches_by_content_hash(tmp_path: Path) -> None:
    source = tmp_path / "rust-1.75.0.tar.gz"
    payload = b"pinned toolchain archive"
    source.write_bytes(payload)
    digest = hashlib.sha256(payload).hexdigest()

    first = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")
    source.write_bytes(b"mutated upstream archive")
    second = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")

    assert first == second == tmp_path / "cache" / digest
    assert second.read_bytes() == payload


def test_fetch_raises_on_hash_mismatch(tmp_path: Path) -> None:
    source = tmp_path / "rust-1.75.0.tar.gz"
    source.write_bytes(b"mismatch")

    with pytest.raises(ReproducibilityError) as excinfo:
        fetch(source.as_uri(), sha256="0" * 64, cache_dir=tmp_path / "cache")
    assert excinfo.value.context["expected"] == "0" * 64
    assert list((tmp_path / "cache").iterdir()) == []


def test_tampered_cache_entry_is_rejected(tmp_path: Path) -> None:
    source = tmp_path / "rust-1.75.0.tar.gz"
    payload = b"pinned toolchain archive"
    source.write_bytes(payload)
    digest = hashlib.sha256(payload).hexdigest()
    cached = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")
    cached.write_bytes(b"tampered")

    with pytest.raises(ReproducibilityError):
        fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")


def test_offline_policy_blocks_remote_urls_but_not_local_files(tmp_path: Path) -> None:
    source = tmp_path / "rust-1.75.0.tar.gz"
    payload = b"pinned toolchain archive"
    source.write_bytes(payload)
    digest = hashlib.sha256(payload).hexdigest()

    with pytest.raises(PolicyError):
        fetch(
            "https://static.rust-lang.org/dist/rust-1.75.0.tar.gz",
            sha256=digest,
            cache_dir=tmp_path / "cache",
            policy=Policy(),
        )

    local = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache", policy=Policy())
    assert local.read_bytes() == payload
