# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.gc",
#   "purpose": "Age, size, and orphan sweeps over the inventory",
#   "sections": [
#     {"id": "collectionresult", "name": "CollectionResult", "anchor": "class-collectionresult", "kind": "class"},
#     {"id": "score-entries", "name": "score_entries", "anchor": "function-score-entries", "kind": "function"},
#     {"id": "eviction-order", "name": "eviction_order", "anchor": "function-eviction-order", "kind": "function"},
#     {"id": "collect", "name": "collect", "anchor": "function-collect", "kind": "function"},
#     {"id": "should-auto-collect", "name": "should_auto_collect", "anchor": "function-should-auto-collect", "kind": "function"},
#     {"id": "maybe-collect", "name": "maybe_collect", "anchor": "function-maybe-collect", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Garbage collection for the recipe store.

Responsibilities:
- Remove entries not accessed within ``max_age`` days
- Evict the worst-scoring entries until the store fits in ``max_size``
- Delete orphaned data files (interrupted writes, entries dropped by reset)
- Decide when an automatic collection is due

A collection is one synchronous sweep.  Failing to delete a file never
aborts it: the failure is recorded in :attr:`CollectionResult.failures`, the
entry stays indexed, and the sweep moves on to the next candidate.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

from .errors import EvictionIOFailure
from .inventory import (
    CacheEntry,
    Inventory,
    ensure_aware,
    entry_age_days,
    iter_data_files,
    relative_path,
    utcnow,
)
from .io_utils import unlink_if_exists
from .settings import GCConfig

__all__ = [
    "CollectionResult",
    "collect",
    "eviction_order",
    "maybe_collect",
    "score_entries",
    "should_auto_collect",
]

logger = logging.getLogger(__name__)

DEFAULT_ORPHAN_GRACE = timedelta(hours=1)


# ============================================================================
# RESULT TYPES (TYP)
# ============================================================================


@dataclass
class CollectionResult:
    """Outcome of one garbage collection sweep."""

    removed_by_age: List[str] = field(default_factory=list)
    removed_by_size: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    failures: List[EvictionIOFailure] = field(default_factory=list)
    bytes_freed: int = 0
    size_before: int = 0
    size_after: int = 0
    dry_run: bool = False
    duration_ms: float = 0.0

    @property
    def removed(self) -> List[str]:
        return [*self.removed_by_age, *self.removed_by_size]

    def to_mapping(self) -> Dict[str, object]:
        return {
            "removed_by_age": list(self.removed_by_age),
            "removed_by_size": list(self.removed_by_size),
            "orphans_removed": list(self.orphans_removed),
            "failures": [
                {"recipe_hash": f.recipe_hash, "path": str(f.path), "error": str(f.error)}
                for f in self.failures
            ],
            "bytes_freed": self.bytes_freed,
            "size_before": self.size_before,
            "size_after": self.size_after,
            "dry_run": self.dry_run,
            "duration_ms": round(self.duration_ms, 3),
        }


# ============================================================================
# SCORING (SCORE)
# ============================================================================


def _weights(beta: float) -> tuple[float, float]:
    # (recency exponent, size exponent); beta and -beta agree at magnitude 1.
    magnitude = abs(beta)
    if beta >= 0:
        return magnitude, 1.0
    return 1.0, magnitude


def score_entries(entries: Iterable[CacheEntry], beta: float, now: datetime) -> Dict[str, float]:
    """Return a keep-score (log scale) per recipe hash; lower is evicted first.

    Recency and size are each normalised into ``(0, 1]`` across ``entries``
    and combined as ``a * log(recency) - b * log(size)``.  For ``beta >= 0``
    the exponents are ``(beta, 1)``, for ``beta < 0`` they are ``(1, -beta)``,
    so growing positive values favour keeping recently used entries, growing
    negative values favour keeping small entries, and ``1``/``-1`` coincide.
    """

    rows = list(entries)
    if not rows:
        return {}
    ages = {e.recipe_hash: max((now - e.last_accessed_at).total_seconds(), 0.0) for e in rows}
    oldest = max(ages.values())
    largest = max(e.size_bytes for e in rows)
    recency_weight, size_weight = _weights(beta)
    scores: Dict[str, float] = {}
    for entry in rows:
        recency = (oldest - ages[entry.recipe_hash] + 1.0) / (oldest + 1.0)
        size = (entry.size_bytes + 1.0) / (largest + 1.0)
        scores[entry.recipe_hash] = recency_weight * math.log(recency) - size_weight * math.log(size)
    return scores


def eviction_order(entries: Iterable[CacheEntry], beta: float, now: datetime) -> List[CacheEntry]:
    """Order ``entries`` worst-first; ties go to the earliest created."""

    rows = list(entries)
    scores = score_entries(rows, beta, now)
    return sorted(rows, key=lambda e: (scores[e.recipe_hash], e.created_at, e.recipe_hash))


# ============================================================================
# COLLECTION (GC)
# ============================================================================


def _evict(
    inventory: Inventory,
    entry: CacheEntry,
    result: CollectionResult,
    removed: List[str],
) -> bool:
    if result.dry_run:
        removed.append(entry.recipe_hash)
        result.bytes_freed += entry.size_bytes
        return True
    path = inventory.absolute(entry.file_path)
    try:
        unlink_if_exists(path)
    except OSError as exc:
        failure = EvictionIOFailure(entry.recipe_hash, path, exc)
        result.failures.append(failure)
        logger.warning(
            "eviction failed",
            extra={"stage": "gc", "recipe_hash": entry.recipe_hash, "path": str(path), "error": str(exc)},
        )
        return False
    inventory.remove_entry(entry.recipe_hash, delete_file=False)
    removed.append(entry.recipe_hash)
    result.bytes_freed += entry.size_bytes
    return True


def _sweep_orphans(
    inventory: Inventory, result: CollectionResult, now: datetime, grace: timedelta
) -> None:
    owned = {entry.file_path for entry in inventory.entries()}
    cutoff = (now - grace).timestamp()
    for path in iter_data_files(inventory):
        rel = relative_path(inventory, path)
        if rel in owned:
            continue
        try:
            if path.stat().st_mtime > cutoff:
                continue
        except FileNotFoundError:
            continue
        if result.dry_run:
            result.orphans_removed.append(rel)
            continue
        try:
            unlink_if_exists(path)
        except OSError as exc:
            result.failures.append(EvictionIOFailure(path.stem, path, exc))
            continue
        result.orphans_removed.append(rel)


def _sweep(
    inventory: Inventory,
    config: GCConfig,
    now: datetime,
    result: CollectionResult,
    orphan_grace: timedelta,
    protect: FrozenSet[str],
) -> None:
    result.size_before = inventory.total_size()
    remaining: List[CacheEntry] = []
    for entry in inventory.entries():
        if entry.recipe_hash in protect:
            remaining.append(entry)
        elif entry_age_days(entry, now) > config.max_age:
            if not _evict(inventory, entry, result, result.removed_by_age):
                remaining.append(entry)
        else:
            remaining.append(entry)

    total = sum(entry.size_bytes for entry in remaining)
    if total > config.max_size:
        for entry in eviction_order(remaining, config.recency_beta, now):
            if total <= config.max_size:
                break
            if entry.recipe_hash in protect:
                continue
            if _evict(inventory, entry, result, result.removed_by_size):
                total -= entry.size_bytes
    result.size_after = total

    _sweep_orphans(inventory, result, now, orphan_grace)
    if not result.dry_run:
        inventory.prune_references()
        inventory.last_gc = now


def collect(
    inventory: Inventory,
    config: Optional[GCConfig] = None,
    now: Optional[datetime] = None,
    *,
    dry_run: bool = False,
    orphan_grace: timedelta = DEFAULT_ORPHAN_GRACE,
    protect: Iterable[str] = (),
) -> CollectionResult:
    """Run one garbage collection sweep over ``inventory``.

    Args:
        inventory: Store index to sweep.
        config: Limits to enforce; defaults to ``inventory.config``.
        now: Reference time for age and recency.
        dry_run: Report what would be removed without touching anything.
        orphan_grace: Unindexed files younger than this are left alone.
        protect: Recipe hashes that must survive this sweep.

    Returns:
        CollectionResult describing evictions and failures.
    """
    start = time.perf_counter()
    now = ensure_aware(now or utcnow())
    result = CollectionResult(dry_run=dry_run)
    protected = frozenset(protect)
    logger.info(
        "gc begin",
        extra={"stage": "gc", "entries": len(inventory), "dry_run": dry_run},
    )

    if dry_run:
        inventory.refresh()
        _sweep(inventory, config or inventory.config, now, result, orphan_grace, protected)
    else:
        with inventory.transaction():
            _sweep(inventory, config or inventory.config, now, result, orphan_grace, protected)

    result.duration_ms = (time.perf_counter() - start) * 1000.0
    logger.info(
        "gc complete",
        extra={
            "stage": "gc",
            "removed_by_age": len(result.removed_by_age),
            "removed_by_size": len(result.removed_by_size),
            "orphans_removed": len(result.orphans_removed),
            "failures": len(result.failures),
            "bytes_freed": result.bytes_freed,
            "dry_run": dry_run,
        },
    )
    return result


def should_auto_collect(inventory: Inventory, now: Optional[datetime] = None) -> bool:
    """Return whether an automatic collection is due."""

    interval = inventory.config.auto_gc
    if interval <= 0:
        return False
    if inventory.last_gc is None:
        return True
    now = ensure_aware(now or utcnow())
    return now - inventory.last_gc >= timedelta(hours=interval)


def maybe_collect(
    inventory: Inventory, now: Optional[datetime] = None, *, protect: Iterable[str] = ()
) -> Optional[CollectionResult]:
    """Collect if the ``auto_gc`` interval has elapsed since the last run."""

    inventory.refresh()
    if not should_auto_collect(inventory, now):
        return None
    return collect(inventory, now=now, protect=protect)
