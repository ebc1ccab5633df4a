# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.io_utils",
#   "purpose": "Atomic file writes and best-effort deletion for store data and the index",
#   "sections": [
#     {"id": "fsync-directory", "name": "fsync_directory", "anchor": "function-fsync-directory", "kind": "function"},
#     {"id": "atomic-write-stream", "name": "atomic_write_stream", "anchor": "function-atomic-write-stream", "kind": "function"},
#     {"id": "atomic-write-bytes", "name": "atomic_write_bytes", "anchor": "function-atomic-write-bytes", "kind": "function"},
#     {"id": "atomic-copy-file", "name": "atomic_copy_file", "anchor": "function-atomic-copy-file", "kind": "function"},
#     {"id": "unlink-quietly", "name": "unlink_if_exists", "anchor": "function-unlink-if-exists", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Atomic file write utilities.

Every file the store produces, data and index alike, is written to a
temporary sibling, flushed and fsynced, then moved into place with
:func:`os.replace` followed by a directory fsync.  Readers therefore see
either the previous file or the complete new one, never a partial write.
Temporary files carry the ``.part-`` prefix so the garbage collector can
recognise leftovers from interrupted writes.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterable, Union

__all__ = [
    "PART_PREFIX",
    "atomic_copy_file",
    "atomic_write_bytes",
    "atomic_write_stream",
    "fsync_directory",
    "iter_chunks",
    "unlink_if_exists",
]

PART_PREFIX = ".part-"
_CHUNK_SIZE = 1 << 20

PathLike = Union[str, Path]


def fsync_directory(directory: PathLike) -> None:
    """Fsync ``directory`` so a completed rename is durable."""

    try:
        dir_fd = os.open(str(directory), os.O_DIRECTORY)
    except (AttributeError, OSError):  # pragma: no cover - platforms without O_DIRECTORY
        return
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def atomic_write_stream(dest_path: PathLike, byte_iter: Iterable[bytes]) -> int:
    """Write ``byte_iter`` to ``dest_path`` atomically.

    Args:
        dest_path: Final location. Parent directories are created if needed.
        byte_iter: Chunks to write; empty chunks are skipped.

    Returns:
        Number of bytes written.

    Raises:
        OSError: If file I/O fails. The temporary file is removed first.
    """
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(dest.parent), prefix=PART_PREFIX, suffix=".tmp")
    bytes_written = 0
    try:
        with os.fdopen(fd, "wb") as handle:
            for chunk in byte_iter:
                if chunk:
                    handle.write(chunk)
                    bytes_written += len(chunk)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, dest)
        fsync_directory(dest.parent)
        return bytes_written
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def atomic_write_bytes(dest_path: PathLike, payload: bytes) -> int:
    """Write ``payload`` to ``dest_path`` atomically."""

    return atomic_write_stream(dest_path, [payload])


def iter_chunks(handle: BinaryIO, chunk_size: int = _CHUNK_SIZE) -> Iterable[bytes]:
    return iter(lambda: handle.read(chunk_size), b"")


def atomic_copy_file(source: PathLike, dest_path: PathLike) -> int:
    """Copy ``source`` into ``dest_path`` atomically and return the byte count."""

    with open(source, "rb") as handle:
        return atomic_write_stream(dest_path, iter_chunks(handle))


def unlink_if_exists(path: PathLike) -> bool:
    """Delete ``path``; return ``False`` when it was already gone.

    Other ``OSError`` failures propagate so callers can record them.
    """

    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    return True
