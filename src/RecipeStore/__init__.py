# === NAVMAP v1 ===
# {
#   "module": "RecipeStore",
#   "purpose": "Public API for the content-addressed recipe store",
#   "sections": [
#     {"id": "exports", "name": "Public Exports", "anchor": "EXP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Public API for the recipe store.

The store caches the outputs of a data pipeline, both raw artifacts fetched
by storage backends and values produced by loaders, under a hash of their
full recipe.  Anything whose recipe is unchanged is served from disk;
everything else falls through to the real fetch or load.  Disk usage is
bounded by age and size limits enforced by the garbage collector.
"""

from __future__ import annotations

from .checksums import Checksum, ChecksumState
from .errors import (
    ChecksumMismatch,
    ConfigError,
    CorruptIndex,
    CycleDetected,
    EvictionIOFailure,
    MissingDependency,
    RecipeStoreError,
    StoreLockTimeout,
)
from .gateways import CacheGateway, Decision, EventFilter, GatewayPlan, StoreGateway, dispatch
from .gc import CollectionResult, collect, maybe_collect, should_auto_collect
from .hashing import RecipeHasher, type_hash
from .inventory import CacheEntry, Inventory, SourceRef
from .recipes import DataCollection, DataSet, DataSetRef, Loader, Representation, StorageBackend
from .settings import GCConfig, StoreSettings, load_settings
from .store import RecipeStore

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "CacheGateway",
    "Checksum",
    "ChecksumMismatch",
    "ChecksumState",
    "CollectionResult",
    "ConfigError",
    "CorruptIndex",
    "CycleDetected",
    "DataCollection",
    "DataSet",
    "DataSetRef",
    "Decision",
    "EventFilter",
    "EvictionIOFailure",
    "GCConfig",
    "GatewayPlan",
    "Inventory",
    "Loader",
    "MissingDependency",
    "RecipeHasher",
    "RecipeStore",
    "RecipeStoreError",
    "Representation",
    "SourceRef",
    "StorageBackend",
    "StoreGateway",
    "StoreLockTimeout",
    "StoreSettings",
    "__version__",
    "collect",
    "dispatch",
    "load_settings",
    "maybe_collect",
    "should_auto_collect",
    "type_hash",
]
