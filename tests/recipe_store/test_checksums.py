"""Checksum declaration parsing, digest computation, and verification.

Exercises the ``UNSET -> PENDING -> RESOLVED`` lifecycle: ``auto`` is
resolved exactly once by :func:`verify`, definite digests are enforced,
and disabled or absent declarations always pass.
"""

from __future__ import annotations

import hashlib
import zlib
from pathlib import Path

import pytest

from RecipeStore.checksums import Checksum, ChecksumState, file_digest, resolve_auto, verify
from RecipeStore.errors import ChecksumMismatch, ConfigError


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "artifact.bin"
    path.write_bytes(b"hello world")
    return path


@pytest.mark.parametrize(
    ("raw", "state"),
    [
        (None, ChecksumState.UNSET),
        (False, ChecksumState.NONE),
        ("false", ChecksumState.NONE),
        ("none", ChecksumState.NONE),
        ("auto", ChecksumState.PENDING),
        ("AUTO", ChecksumState.PENDING),
        ("sha256:" + "ab" * 32, ChecksumState.RESOLVED),
        ("crc32:0d4a1185", ChecksumState.RESOLVED),
    ],
)
def test_parse_states(raw, state) -> None:
    assert Checksum.parse(raw).state is state


@pytest.mark.parametrize(
    "raw",
    ["sha256", "whirlpool:abcdef12", "sha256:not-hex", "md5:abc", 42],
)
def test_parse_rejects_malformed(raw) -> None:
    with pytest.raises(ConfigError):
        Checksum.parse(raw)


def test_render_round_trips_configuration_form() -> None:
    assert Checksum.parse("auto").render() == "auto"
    assert Checksum.parse(False).render() is False
    assert Checksum.parse(None).render() is None
    value = "sha1:" + "0" * 40
    assert Checksum.parse(value).render() == value
    assert str(Checksum.parse(value)) == value


def test_file_digest_matches_hashlib(artifact: Path) -> None:
    assert file_digest(artifact, "sha256") == hashlib.sha256(b"hello world").hexdigest()
    assert file_digest(artifact, "md5") == hashlib.md5(b"hello world").hexdigest()
    assert file_digest(artifact, "crc32") == f"{zlib.crc32(b'hello world') & 0xFFFFFFFF:08x}"


def test_file_digest_rejects_unknown_algorithm(artifact: Path) -> None:
    with pytest.raises(ConfigError):
        file_digest(artifact, "sha3_999")


def test_resolve_auto_produces_definite_checksum(artifact: Path) -> None:
    resolved = resolve_auto(artifact, "sha512")
    assert resolved.is_definite
    assert resolved.algorithm == "sha512"
    assert resolved.value == hashlib.sha512(b"hello world").hexdigest()


def test_verify_passes_unset_and_disabled(artifact: Path) -> None:
    assert verify(artifact, None).state is ChecksumState.UNSET
    assert verify(artifact, False).state is ChecksumState.NONE


def test_verify_resolves_pending(artifact: Path) -> None:
    effective = verify(artifact, "auto", auto_algorithm="sha1")
    assert effective == Checksum(ChecksumState.RESOLVED, "sha1", hashlib.sha1(b"hello world").hexdigest())


def test_verify_accepts_matching_digest(artifact: Path) -> None:
    expected = "sha256:" + hashlib.sha256(b"hello world").hexdigest()
    assert verify(artifact, expected).render() == expected


def test_verify_raises_on_mismatch(artifact: Path) -> None:
    expected = "sha256:" + hashlib.sha256(b"something else").hexdigest()
    with pytest.raises(ChecksumMismatch) as excinfo:
        verify(artifact, expected)
    assert excinfo.value.expected == expected
    assert excinfo.value.actual == "sha256:" + hashlib.sha256(b"hello world").hexdigest()
    assert excinfo.value.path == artifact
