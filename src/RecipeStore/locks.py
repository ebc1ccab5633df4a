"""File-based locking for inventory transactions.

The inventory holds a :mod:`filelock` lock only for the short
refresh-mutate-write window of a mutation.  Lookups never take the lock:
they rely on the index being replaced atomically.  Compound operations
(lookup, then fetch, then register) are deliberately not serialised across
processes; two racing writers both compute and the later registration wins.
"""

from __future__ import annotations

import contextlib
import logging
import time
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from .errors import StoreLockTimeout

__all__ = ["index_lock", "lock_path_for"]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_POLL_INTERVAL = 0.05


def lock_path_for(index_path: Path) -> Path:
    return index_path.with_name(index_path.name + ".lock")


@contextlib.contextmanager
def index_lock(index_path: Path, *, timeout: float = 10.0) -> Iterator[None]:
    """Hold the exclusive writer lock for ``index_path``.

    Raises:
        StoreLockTimeout: If the lock is not acquired within ``timeout`` seconds.
    """

    lock_file = lock_path_for(index_path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_file), timeout=timeout, thread_local=False)
    start = time.monotonic()
    try:
        lock.acquire(timeout=timeout, poll_interval=_POLL_INTERVAL)
    except Timeout as exc:
        wait_ms = (time.monotonic() - start) * 1000.0
        LOGGER.warning(
            "lock-timeout wait_ms=%.3f lock_file=%s",
            wait_ms,
            lock_file,
        )
        raise StoreLockTimeout(f"Timed out after {timeout}s waiting for {lock_file}") from exc
    LOGGER.debug("lock-acquired wait_ms=%.3f lock_file=%s", (time.monotonic() - start) * 1000.0, lock_file)
    try:
        yield None
    finally:
        lock.release()
