"""Checksum parsing, computation, and verification for stored artifacts.

Storage backends declare integrity expectations through their ``checksum``
parameter, which accepts three forms:

- ``"<algorithm>:<hex>"`` - a definite digest that stored content must match;
- ``"auto"`` - compute a digest on first access and persist it in place of
  the sentinel;
- ``False`` (or an absent parameter) - no checksum.

A declaration moves through the states ``UNSET -> PENDING -> RESOLVED``;
the transition out of ``PENDING`` happens exactly once, inside
:func:`verify`, and the resolved value is handed back to the caller to
persist.
"""

from __future__ import annotations

import hashlib
import logging
import re
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import ChecksumMismatch, ConfigError

__all__ = [
    "AUTO",
    "SUPPORTED_ALGORITHMS",
    "Checksum",
    "ChecksumState",
    "file_digest",
    "resolve_auto",
    "verify",
]

logger = logging.getLogger(__name__)

AUTO = "auto"
SUPPORTED_ALGORITHMS = frozenset({"md5", "sha1", "sha256", "sha512", "blake2b", "crc32"})

_HEX_PATTERN = re.compile(r"[0-9a-f]{8,128}")
_CHUNK_SIZE = 1 << 20


class ChecksumState(str, Enum):
    UNSET = "unset"
    NONE = "none"
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Checksum:
    """A checksum declaration or resolved digest."""

    state: ChecksumState = ChecksumState.UNSET
    algorithm: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def parse(cls, raw: Any, *, context: str = "checksum") -> "Checksum":
        """Normalise a configuration value into a :class:`Checksum`."""

        if isinstance(raw, Checksum):
            return raw
        if raw is None:
            return cls()
        if raw is False:
            return cls(ChecksumState.NONE)
        if not isinstance(raw, str):
            raise ConfigError(f"{context}: checksum must be a string, 'auto', or false")
        text = raw.strip().lower()
        if text in {"", "none", "false"}:
            return cls(ChecksumState.NONE)
        if text == AUTO:
            return cls(ChecksumState.PENDING)
        algorithm, sep, value = text.partition(":")
        if not sep:
            raise ConfigError(f"{context}: checksum must have the form '<algorithm>:<hex>'")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(f"{context}: unsupported checksum algorithm '{algorithm}'")
        if not _HEX_PATTERN.fullmatch(value):
            raise ConfigError(f"{context}: checksum value must be a hexadecimal digest")
        return cls(ChecksumState.RESOLVED, algorithm, value)

    @property
    def is_definite(self) -> bool:
        return self.state is ChecksumState.RESOLVED

    def render(self) -> Any:
        """Return the configuration form of this checksum."""

        if self.state is ChecksumState.RESOLVED:
            return f"{self.algorithm}:{self.value}"
        if self.state is ChecksumState.PENDING:
            return AUTO
        if self.state is ChecksumState.NONE:
            return False
        return None

    def __str__(self) -> str:
        rendered = self.render()
        return "unset" if rendered is None else str(rendered).lower()


def file_digest(path: Path, algorithm: str) -> str:
    """Compute ``algorithm`` digest for ``path`` without loading it whole."""

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ConfigError(f"Unsupported checksum algorithm '{algorithm}'")
    with Path(path).open("rb") as stream:
        if algorithm == "crc32":
            crc = 0
            for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                crc = zlib.crc32(chunk, crc)
            return f"{crc & 0xFFFFFFFF:08x}"
        hasher = hashlib.new(algorithm)
        for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
        return hasher.hexdigest()


def resolve_auto(path: Path, algorithm: str = "sha256") -> Checksum:
    """Compute a definite checksum for ``path``."""

    digest = file_digest(path, algorithm)
    logger.debug(
        "resolved auto checksum",
        extra={"stage": "checksum", "path": str(path), "algorithm": algorithm},
    )
    return Checksum(ChecksumState.RESOLVED, algorithm, digest)


def verify(path: Path, expected: Any, *, auto_algorithm: str = "sha256") -> Checksum:
    """Verify ``path`` against ``expected`` and return the effective checksum.

    ``UNSET``/``NONE`` always pass unchanged.  ``PENDING`` always passes and
    returns the newly resolved checksum.  A ``RESOLVED`` checksum that does
    not match the recomputed digest raises :class:`ChecksumMismatch`.
    """

    checksum = Checksum.parse(expected)
    if checksum.state in (ChecksumState.UNSET, ChecksumState.NONE):
        return checksum
    if checksum.state is ChecksumState.PENDING:
        return resolve_auto(path, auto_algorithm)
    actual = file_digest(path, checksum.algorithm)
    if actual != checksum.value:
        raise ChecksumMismatch(path, f"{checksum.algorithm}:{checksum.value}", f"{checksum.algorithm}:{actual}")
    return checksum
