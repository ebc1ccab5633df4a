# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.errors",
#   "purpose": "Define the exception hierarchy used across hashing, inventory, and collection",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "integrity", "name": "Integrity Errors", "anchor": "INT", "kind": "api"},
#     {"id": "graph", "name": "Recipe Graph Errors", "anchor": "GRA", "kind": "api"},
#     {"id": "index", "name": "Index & Eviction Errors", "anchor": "IDX", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared across recipe hashing, the inventory, and GC.

The store only surfaces integrity and structural failures: a cache miss is
always transparent to callers.  Errors raised by fetch/load collaborators
are never wrapped by this package and propagate unchanged.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

__all__ = [
    "RecipeStoreError",
    "ConfigError",
    "ChecksumMismatch",
    "MissingDependency",
    "CycleDetected",
    "CorruptIndex",
    "EvictionIOFailure",
    "StoreLockTimeout",
]


class RecipeStoreError(RuntimeError):
    """Base exception for recipe store failures."""


class ConfigError(RecipeStoreError):
    """Raised when settings, checksum declarations, or GC values are invalid."""


class ChecksumMismatch(RecipeStoreError):
    """Raised when on-disk content disagrees with a definite checksum."""

    def __init__(self, path: Path, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = Path(path)
        self.expected = expected
        self.actual = actual


class MissingDependency(RecipeStoreError):
    """Raised when a dataset reference cannot be resolved while hashing."""

    def __init__(self, reference: str, *, collection: Optional[str] = None) -> None:
        where = f" in collection '{collection}'" if collection else ""
        super().__init__(f"Referenced dataset '{reference}' could not be resolved{where}")
        self.reference = reference
        self.collection = collection


class CycleDetected(RecipeStoreError):
    """Raised when dataset references loop back onto the active hashing path."""

    def __init__(self, path: Sequence[str]) -> None:
        self.path = tuple(path)
        super().__init__("Dataset reference cycle: " + " -> ".join(self.path))


class CorruptIndex(RecipeStoreError):
    """Raised when the persisted inventory cannot be read or parsed.

    Recovery is only ever explicit, via ``Inventory.reset()``.
    """

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Inventory index {path} is unreadable: {reason}")
        self.path = Path(path)
        self.reason = reason


class EvictionIOFailure(RecipeStoreError):
    """A backing file could not be deleted during garbage collection.

    Instances are collected in ``CollectionResult.failures`` rather than
    raised, so a sweep always runs to completion.
    """

    def __init__(self, recipe_hash: str, path: Path, error: OSError) -> None:
        super().__init__(f"Could not delete {path} for entry {recipe_hash[:12]}: {error}")
        self.recipe_hash = recipe_hash
        self.path = Path(path)
        self.error = error


class StoreLockTimeout(RecipeStoreError):
    """Raised when the inventory lock could not be acquired in time."""
