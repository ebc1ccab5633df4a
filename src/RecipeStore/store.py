"""High-level facade wiring the inventory, hasher, gateways, and collector.

Embedding applications normally need only :class:`RecipeStore`::

    store = RecipeStore(StoreSettings(root=tmp), fetcher=my_fetcher, loader=my_loader)
    path = store.storage(dataset.storage[0], Representation.FILE_PATH)
    table = store.load(dataset.loaders[0], path, Table)

After every persisted entry the facade checks whether an automatic
collection is due (``auto_gc`` hours since the last run) and, if so, runs
one synchronously.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .gateways import ArtifactFetcher, CacheGateway, EventFilter, StoreGateway, TypeResolver, ValueLoader
from .gc import CollectionResult, collect, maybe_collect
from .hashing import RecipeHasher
from .inventory import CACHE_DIR, STORAGE_DIR, CacheEntry, Inventory
from .recipes import DataCollection, Loader, Representation, StorageBackend
from .settings import StoreSettings

__all__ = ["RecipeStore"]

logger = logging.getLogger(__name__)


class RecipeStore:
    """One store directory plus the gateways that use it."""

    def __init__(
        self,
        settings: Optional[StoreSettings] = None,
        *,
        fetcher: Optional[ArtifactFetcher] = None,
        loader: Optional[ValueLoader] = None,
        collection: Optional[DataCollection] = None,
        resolver: Optional[TypeResolver] = None,
        events: Optional[EventFilter] = None,
        auto_collect: bool = True,
    ) -> None:
        self.settings = settings or StoreSettings()
        self.inventory = Inventory.open(self.settings)
        self.hasher = RecipeHasher(collection)
        self.auto_collect = auto_collect
        on_persist = self._after_persist if auto_collect else None
        self.store_gateway = (
            StoreGateway(
                self.inventory,
                self.hasher,
                fetcher,
                events=events,
                on_persist=on_persist,
                auto_algorithm=self.settings.default_checksum_algorithm,
            )
            if fetcher is not None
            else None
        )
        self.cache_gateway = (
            CacheGateway(
                self.inventory, self.hasher, loader, resolver=resolver, events=events, on_persist=on_persist
            )
            if loader is not None
            else None
        )

    def storage(
        self, node: StorageBackend, representation: Representation, *, write: bool = False
    ) -> Any:
        if self.store_gateway is None:
            raise RuntimeError("RecipeStore was created without an artifact fetcher")
        return self.store_gateway.fetch(node, representation, write)

    def load(self, node: Loader, source: Any, as_type: type) -> Any:
        if self.cache_gateway is None:
            raise RuntimeError("RecipeStore was created without a value loader")
        return self.cache_gateway.load(node, source, as_type)

    def collect(self, *, now: Optional[datetime] = None, dry_run: bool = False) -> CollectionResult:
        self.inventory.flush()
        return collect(self.inventory, now=now, dry_run=dry_run)

    def maybe_collect(
        self, now: Optional[datetime] = None, *, protect: Iterable[str] = ()
    ) -> Optional[CollectionResult]:
        self.inventory.flush()
        return maybe_collect(self.inventory, now, protect=protect)

    def _after_persist(self, entry: CacheEntry) -> None:
        # The entry just written is about to be handed to the caller.
        result = self.maybe_collect(protect={entry.recipe_hash})
        if result is not None:
            logger.info(
                "automatic collection ran",
                extra={"stage": "gc", "bytes_freed": result.bytes_freed, "trigger": entry.recipe_hash},
            )

    def status(self) -> Dict[str, Any]:
        self.inventory.refresh()
        return {
            "root": str(self.inventory.root),
            "entries": len(self.inventory),
            "storage_entries": len(self.inventory.entries(STORAGE_DIR)),
            "cache_entries": len(self.inventory.entries(CACHE_DIR)),
            "total_size": self.inventory.total_size(),
            "last_gc": self.inventory.last_gc.isoformat() if self.inventory.last_gc else None,
            "config": self.inventory.config.model_dump(),
        }

    def close(self) -> None:
        self.inventory.flush()

    def __enter__(self) -> "RecipeStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
