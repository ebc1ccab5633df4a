# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.inventory",
#   "purpose": "Persisted index of cached artifacts and values keyed by recipe hash",
#   "sections": [
#     {"id": "sourceref", "name": "SourceRef", "anchor": "class-sourceref", "kind": "class"},
#     {"id": "cacheentry", "name": "CacheEntry", "anchor": "class-cacheentry", "kind": "class"},
#     {"id": "inventory", "name": "Inventory", "anchor": "class-inventory", "kind": "class"},
#     {"id": "persistence", "name": "Index Persistence", "anchor": "PER", "kind": "infra"}
#   ]
# }
# === /NAVMAP ===

"""Inventory of stored artifacts and cached values.

The inventory is a single JSON document under the store root listing every
:class:`CacheEntry` together with the store's :class:`GCConfig`, the time of
the last garbage collection, and which datasets reference which entries.
Backing files live beside it under ``storage/`` and ``cache/`` and are owned
exclusively by the inventory.

Consistency model
-----------------
- Reads call :meth:`Inventory.refresh`, a cheap ``stat`` comparison, and
  reload only when another process has replaced the index.
- Mutations run as a transaction: take the writer lock, refresh, mutate,
  then atomically replace the index.  Concurrent writers therefore merge
  rather than clobber each other; two writers racing on the same hash
  resolve as last-writer-wins.
- :meth:`Inventory.record_access` is batched in memory and written by the
  next mutation or :meth:`Inventory.flush`.  Access times never move
  backwards, even across reloads.
- An unreadable index raises :class:`CorruptIndex` from every operation
  until :meth:`Inventory.reset` is called explicitly.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .checksums import Checksum
from .errors import CorruptIndex
from .io_utils import atomic_write_bytes, unlink_if_exists
from .locks import index_lock
from .settings import GCConfig, StoreSettings

__all__ = [
    "CACHE_DIR",
    "INDEX_VERSION",
    "STORAGE_DIR",
    "CacheEntry",
    "Inventory",
    "SourceRef",
    "ensure_aware",
    "utcnow",
]

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
STORAGE_DIR = "storage"
CACHE_DIR = "cache"
ENTRY_KINDS = (STORAGE_DIR, CACHE_DIR)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Read naive datetimes as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_time(raw: Any) -> datetime:
    return ensure_aware(datetime.fromisoformat(str(raw)))


@dataclass(frozen=True)
class SourceRef:
    """Which dataset and driver produced an entry."""

    dataset: str
    driver: str
    collection: Optional[str] = None

    @property
    def dataset_id(self) -> str:
        return f"{self.collection}:{self.dataset}" if self.collection else self.dataset

    def to_mapping(self) -> Dict[str, Any]:
        return {"dataset": self.dataset, "driver": self.driver, "collection": self.collection}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "SourceRef":
        return cls(
            dataset=str(payload["dataset"]),
            driver=str(payload["driver"]),
            collection=payload.get("collection"),
        )


@dataclass
class CacheEntry:
    """One stored artifact (``kind="storage"``) or cached value (``kind="cache"``)."""

    recipe_hash: str
    kind: str
    file_path: str
    size_bytes: int
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    checksum: Checksum = field(default_factory=Checksum)
    source: Optional[SourceRef] = None
    types: Dict[str, str] = field(default_factory=dict)
    packages: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.kind not in ENTRY_KINDS:
            raise ValueError(f"Unknown entry kind '{self.kind}'")
        self.created_at = ensure_aware(self.created_at)
        self.last_accessed_at = ensure_aware(self.last_accessed_at)

    def touch(self, when: datetime) -> None:
        if when > self.last_accessed_at:
            self.last_accessed_at = when

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "recipe_hash": self.recipe_hash,
            "kind": self.kind,
            "file_path": self.file_path,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "checksum": self.checksum.render(),
            "checksum_state": self.checksum.state.value,
            "source": self.source.to_mapping() if self.source else None,
            "types": dict(self.types),
            "packages": list(self.packages),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "CacheEntry":
        source = payload.get("source")
        return cls(
            recipe_hash=str(payload["recipe_hash"]),
            kind=str(payload["kind"]),
            file_path=str(payload["file_path"]),
            size_bytes=int(payload["size_bytes"]),
            created_at=_parse_time(payload["created_at"]),
            last_accessed_at=_parse_time(payload["last_accessed_at"]),
            checksum=Checksum.parse(payload.get("checksum")),
            source=SourceRef.from_mapping(source) if source else None,
            types={str(k): str(v) for k, v in (payload.get("types") or {}).items()},
            packages=[str(p) for p in payload.get("packages") or []],
        )


class Inventory:
    """The persisted index of every cache entry in one store directory."""

    def __init__(
        self,
        root: Union[str, Path],
        *,
        index_name: str = "inventory.json",
        lock_timeout: float = 10.0,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.index_path = self.root / index_name
        self.lock_timeout = lock_timeout
        self.config = GCConfig()
        self.last_gc: Optional[datetime] = None
        self._entries: Dict[str, CacheEntry] = {}
        self._references: Dict[str, Set[str]] = {}
        self._pending_access: Dict[str, datetime] = {}
        self._signature: Optional[Tuple[int, int, int]] = None
        self._loaded = False
        self._guard = threading.RLock()
        self._txn_depth = 0

    @classmethod
    def open(cls, settings: StoreSettings) -> "Inventory":
        inventory = cls(
            settings.root, index_name=settings.index_name, lock_timeout=settings.lock_timeout
        )
        inventory.load()
        return inventory

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def absolute(self, file_path: str) -> Path:
        return self.root / PurePosixPath(file_path)

    def storage_path(self, recipe_hash: str, suffix: str = "") -> str:
        return f"{STORAGE_DIR}/{recipe_hash}{suffix}"

    def cache_path(self, recipe_hash: str) -> str:
        return f"{CACHE_DIR}/{recipe_hash}.pkl"

    def data_dirs(self) -> List[Path]:
        return [self.root / name for name in ENTRY_KINDS]

    # ------------------------------------------------------------------
    # Loading & refreshing
    # ------------------------------------------------------------------

    def _stat_signature(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.index_path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size, stat.st_ino)

    def load(self) -> "Inventory":
        """Read the index from disk, or start empty if none exists yet."""

        with self._guard:
            signature = self._stat_signature()
            if signature is None:
                self._apply({})
            else:
                self._apply(self._read_index())
            self._signature = signature
            self._loaded = True
            return self

    def refresh(self) -> bool:
        """Reload the index if it changed on disk; return whether it did."""

        with self._guard:
            signature = self._stat_signature()
            if self._loaded and signature == self._signature:
                return False
            self.load()
            logger.debug(
                "inventory reloaded",
                extra={"stage": "inventory", "entries": len(self._entries)},
            )
            return True

    def _read_index(self) -> Mapping[str, Any]:
        try:
            raw = self.index_path.read_text(encoding="utf-8")
            payload = json.loads(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptIndex(self.index_path, str(exc)) from exc
        if not isinstance(payload, dict):
            raise CorruptIndex(self.index_path, "index root is not a mapping")
        version = payload.get("version")
        if version != INDEX_VERSION:
            raise CorruptIndex(self.index_path, f"unsupported index version {version!r}")
        return payload

    def _apply(self, payload: Mapping[str, Any]) -> None:
        try:
            config = GCConfig(**(payload.get("config") or {}))
            entries = {}
            for row in payload.get("entries") or []:
                entry = CacheEntry.from_mapping(row)
                entries[entry.recipe_hash] = entry
            references = {
                str(dataset_id): set(map(str, hashes))
                for dataset_id, hashes in (payload.get("references") or {}).items()
            }
            last_gc = _parse_time(payload["last_gc"]) if payload.get("last_gc") else None
        except (KeyError, TypeError, ValueError, PydanticValidationError) as exc:
            raise CorruptIndex(self.index_path, f"malformed record: {exc}") from exc
        for recipe_hash, when in self._pending_access.items():
            entry = entries.get(recipe_hash)
            if entry is not None:
                entry.touch(when)
        self.config = config
        self._entries = entries
        self._references = references
        self.last_gc = last_gc

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "version": INDEX_VERSION,
            "config": self.config.model_dump(),
            "last_gc": self.last_gc.isoformat() if self.last_gc else None,
            "entries": [
                entry.to_mapping()
                for entry in sorted(self._entries.values(), key=lambda e: e.recipe_hash)
            ],
            "references": {
                dataset_id: sorted(hashes)
                for dataset_id, hashes in sorted(self._references.items())
                if hashes
            },
        }

    def _write(self) -> None:
        payload = json.dumps(self.to_mapping(), indent=2, sort_keys=True) + "\n"
        atomic_write_bytes(self.index_path, payload.encode("utf-8"))
        self._signature = self._stat_signature()
        self._pending_access.clear()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["Inventory"]:
        """Lock, refresh, let the caller mutate, then persist atomically.

        Nested transactions join the outermost one.
        """

        with self._guard:
            if self._txn_depth:
                self._txn_depth += 1
                try:
                    yield self
                finally:
                    self._txn_depth -= 1
                return
            with index_lock(self.index_path, timeout=self.lock_timeout):
                self.refresh()
                self._txn_depth = 1
                try:
                    yield self
                    self._write()
                except BaseException:
                    # In-memory state may be half-mutated; reread on next access.
                    self._loaded = False
                    raise
                finally:
                    self._txn_depth = 0

    def flush(self) -> None:
        """Persist batched access times, if any."""

        with self._guard:
            if not self._pending_access:
                return
            with self.transaction():
                pass

    def reset(self, *, keep_config: bool = False) -> None:
        """Replace the index with an empty one.

        This is the only recovery from :class:`CorruptIndex`.  Backing files
        are left for the garbage collector's orphan sweep.
        """

        with self._guard, index_lock(self.index_path, timeout=self.lock_timeout):
            config = self.config if keep_config else GCConfig()
            self._pending_access.clear()
            self._apply({})
            self.config = config
            self._write()
            self._loaded = True
            logger.warning(
                "inventory reset",
                extra={"stage": "inventory", "index": str(self.index_path)},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _file_exists(self, entry: CacheEntry) -> bool:
        return self.absolute(entry.file_path).is_file()

    def lookup(self, recipe_hash: str) -> Optional[CacheEntry]:
        """Return the live entry for ``recipe_hash``, pruning it if its file vanished."""

        with self._guard:
            self.refresh()
            entry = self._entries.get(recipe_hash)
            if entry is None:
                return None
            if self._file_exists(entry):
                return entry
            logger.info(
                "pruning entry with missing file",
                extra={"stage": "inventory", "recipe_hash": recipe_hash, "path": entry.file_path},
            )
            self.remove_entry(recipe_hash)
            return None

    def get(self, recipe_hash: str) -> Optional[CacheEntry]:
        """Return the indexed entry without checking its backing file."""

        with self._guard:
            return self._entries.get(recipe_hash)

    def entries(self, kind: Optional[str] = None) -> List[CacheEntry]:
        with self._guard:
            return [e for e in self._entries.values() if kind is None or e.kind == kind]

    def total_size(self) -> int:
        with self._guard:
            return sum(entry.size_bytes for entry in self._entries.values())

    def references_for(self, recipe_hash: str) -> Set[str]:
        with self._guard:
            return {ds for ds, hashes in self._references.items() if recipe_hash in hashes}

    def references(self) -> Dict[str, Set[str]]:
        with self._guard:
            return {ds: set(hashes) for ds, hashes in self._references.items()}

    def __contains__(self, recipe_hash: object) -> bool:
        return recipe_hash in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_entry(self, entry: CacheEntry) -> Optional[CacheEntry]:
        """Insert ``entry``, replacing any entry with the same recipe hash.

        Returns the superseded entry, whose file is deleted unless another
        entry still points at it.
        """

        with self.transaction():
            previous = self._entries.get(entry.recipe_hash)
            self._entries[entry.recipe_hash] = entry
            if previous is not None and previous.file_path != entry.file_path:
                self._release_file(previous)
        logger.debug(
            "registered entry",
            extra={
                "stage": "inventory",
                "recipe_hash": entry.recipe_hash,
                "kind": entry.kind,
                "size_bytes": entry.size_bytes,
            },
        )
        return previous

    def update_entry(self, recipe_hash: str, **changes: Any) -> Optional[CacheEntry]:
        """Apply attribute ``changes`` to an entry and persist."""

        with self.transaction():
            entry = self._entries.get(recipe_hash)
            if entry is None:
                return None
            for name, value in changes.items():
                setattr(entry, name, value)
            return entry

    def record_access(self, recipe_hash: str, when: Optional[datetime] = None) -> None:
        """Note an access to ``recipe_hash``; persisted lazily."""

        when = ensure_aware(when or utcnow())
        with self._guard:
            entry = self._entries.get(recipe_hash)
            if entry is None:
                return
            entry.touch(when)
            pending = self._pending_access.get(recipe_hash)
            if pending is None or when > pending:
                self._pending_access[recipe_hash] = when

    def register_reference(self, dataset_id: str, entry: Union[CacheEntry, str]) -> None:
        """Record that ``dataset_id`` uses ``entry``."""

        recipe_hash = entry.recipe_hash if isinstance(entry, CacheEntry) else entry
        with self._guard:
            if recipe_hash in self._references.get(dataset_id, ()):
                return
            with self.transaction():
                if recipe_hash in self._entries:
                    self._references.setdefault(dataset_id, set()).add(recipe_hash)

    def remove_entry(self, recipe_hash: str, *, delete_file: bool = True) -> bool:
        """Drop ``recipe_hash`` from the index; idempotent.

        The backing file is deleted best-effort unless ``delete_file`` is
        false (the collector deletes files itself to record failures).
        """

        with self.transaction():
            entry = self._entries.pop(recipe_hash, None)
            if entry is None:
                return False
            self._pending_access.pop(recipe_hash, None)
            for hashes in self._references.values():
                hashes.discard(recipe_hash)
            if delete_file:
                self._release_file(entry)
        return True

    def prune_references(self) -> int:
        """Forget references to entries that no longer exist."""

        with self.transaction():
            removed = 0
            for dataset_id in list(self._references):
                hashes = self._references[dataset_id]
                stale = {h for h in hashes if h not in self._entries}
                removed += len(stale)
                hashes -= stale
                if not hashes:
                    del self._references[dataset_id]
            return removed

    def update_config(self, **changes: Any) -> GCConfig:
        """Change GC settings (by name) and persist them."""

        with self.transaction():
            for name, value in changes.items():
                self.config.set(name, value)
            return self.config

    def mark_collected(self, when: datetime) -> None:
        with self.transaction():
            self.last_gc = ensure_aware(when)

    def owns_file(self, file_path: str) -> bool:
        with self._guard:
            return any(entry.file_path == file_path for entry in self._entries.values())

    def _release_file(self, entry: CacheEntry) -> None:
        if self.owns_file(entry.file_path):
            return
        path = self.absolute(entry.file_path)
        try:
            unlink_if_exists(path)
        except OSError as exc:
            logger.warning(
                "could not delete backing file",
                extra={"stage": "inventory", "path": str(path), "error": str(exc)},
            )


def entry_age_days(entry: CacheEntry, now: datetime) -> float:
    return (now - entry.last_accessed_at).total_seconds() / 86400.0


def iter_data_files(inventory: Inventory) -> Iterator[Path]:
    for directory in inventory.data_dirs():
        if not directory.is_dir():
            continue
        for path in directory.iterdir():
            if path.is_file():
                yield path


def relative_path(inventory: Inventory, path: Path) -> str:
    return PurePosixPath(*Path(os.path.relpath(path, inventory.root)).parts).as_posix()
