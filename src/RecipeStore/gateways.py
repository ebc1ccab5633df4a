# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.gateways",
#   "purpose": "Store and cache interception points in front of fetch and load collaborators",
#   "sections": [
#     {"id": "decision", "name": "Decision", "anchor": "class-decision", "kind": "class"},
#     {"id": "gatewayplan", "name": "GatewayPlan", "anchor": "class-gatewayplan", "kind": "class"},
#     {"id": "collaborators", "name": "Collaborator Protocols", "anchor": "COL", "kind": "api"},
#     {"id": "dispatch", "name": "dispatch", "anchor": "function-dispatch", "kind": "function"},
#     {"id": "storegateway", "name": "StoreGateway", "anchor": "class-storegateway", "kind": "class"},
#     {"id": "cachegateway", "name": "CacheGateway", "anchor": "class-cachegateway", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Gateways that consult the inventory before fetching or loading.

Each gateway splits a request into two steps.  ``plan`` inspects the
inventory and returns a :class:`GatewayPlan` carrying one :class:`Decision`;
:func:`dispatch` then carries the plan out by calling back into the
gateway.  Keeping the decision explicit makes every path (bypass, hit,
miss) observable and testable on its own.

The :class:`StoreGateway` caches raw artifacts from storage backends; the
:class:`CacheGateway` caches loaded Python values.  A miss is always
transparent: the caller receives exactly what the collaborator would have
returned.  Collaborator exceptions are never caught here.
"""

from __future__ import annotations

import importlib
import io
import logging
import pickle
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterable, Optional, Protocol, Set

from .checksums import Checksum, ChecksumState, verify
from .errors import ChecksumMismatch
from .hashing import RecipeHasher, referenced_types, type_hash
from .inventory import CACHE_DIR, STORAGE_DIR, CacheEntry, Inventory, SourceRef
from .io_utils import atomic_copy_file, atomic_write_bytes, atomic_write_stream, iter_chunks, unlink_if_exists
from .recipes import Loader, Representation, StorageBackend

__all__ = [
    "ArtifactFetcher",
    "CacheGateway",
    "Decision",
    "EventFilter",
    "GatewayPlan",
    "ImportlibTypeResolver",
    "StoreGateway",
    "TypeResolver",
    "ValueLoader",
    "dispatch",
    "is_cacheable",
    "locate_type",
]

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    PASS_THROUGH = "pass_through"
    SERVE_CACHED = "serve_cached"
    SERVE_CACHED_THEN_POSTPROCESS = "serve_cached_then_postprocess"
    DELEGATE_THEN_PERSIST = "delegate_then_persist"


@dataclass
class GatewayPlan:
    """What a gateway decided to do with one request."""

    decision: Decision
    node: Any
    recipe_hash: Optional[str] = None
    entry: Optional[CacheEntry] = None
    representation: Optional[Representation] = None
    fetch_as: Optional[Representation] = None
    as_type: Optional[type] = None
    source: Any = None
    write: bool = False


# ============================================================================
# COLLABORATORS (COL)
# ============================================================================


class ArtifactFetcher(Protocol):
    def fetch_artifact(self, node: StorageBackend, representation: Representation, write: bool) -> Any:
        """Fetch raw data: ``bytes``, a binary stream, or a file path (``None`` if unavailable)."""


class ValueLoader(Protocol):
    def load_value(self, node: Loader, source: Any, as_type: type) -> Any:
        """Turn ``source`` into a value of ``as_type``."""


class TypeResolver(Protocol):
    def resolve_package_for_type(self, module: str) -> None:
        """Make ``module`` importable, raising ``ImportError`` when it cannot be."""


class ImportlibTypeResolver:
    """Resolve packages by importing them."""

    def resolve_package_for_type(self, module: str) -> None:
        importlib.import_module(module)


class EventFilter:
    """Decide whether "served from store" events are logged.

    Categories are ``"store"`` and ``"cache"``.  A node can silence itself
    with the parameter ``log = false``.
    """

    def __init__(self, disabled: Iterable[str] = ()) -> None:
        self.disabled: Set[str] = set(disabled)

    def should_log_event(self, category: str, node: Any) -> bool:
        if category in self.disabled:
            return False
        return getattr(node, "parameters", {}).get("log", True) is not False


def locate_type(qualified: str) -> type:
    """Return the class named ``"module:Qual.Name"``."""

    module_name, _, qualname = qualified.partition(":")
    target: Any = importlib.import_module(module_name)
    for part in qualname.split("."):
        target = getattr(target, part)
    if not isinstance(target, type):
        raise TypeError(f"{qualified} does not name a class")
    return target


def _qualified(cls: type) -> str:
    return f"{cls.__module__}:{cls.__qualname__}"


def _locatable(cls: type) -> bool:
    """Whether :func:`locate_type` finds ``cls`` again from its qualified name."""

    try:
        return locate_type(_qualified(cls)) is cls
    except (ImportError, AttributeError, TypeError):
        return False


def is_cacheable(as_type: Any) -> bool:
    """I/O handles and non-class type hints cannot be cached."""

    if as_type is IO or not isinstance(as_type, type):
        return False
    return not issubclass(as_type, io.IOBase)


def _source_for(node: Any) -> SourceRef:
    dataset = node.dataset
    collection = dataset.collection.name if dataset is not None and dataset.collection else None
    return SourceRef(dataset=node.dataset_name, driver=node.driver, collection=collection)


def dispatch(plan: GatewayPlan, gateway: "_Gateway") -> Any:
    """Carry out ``plan`` using ``gateway``'s handlers."""

    handler = gateway.handlers().get(plan.decision)
    if handler is None:
        raise ValueError(f"{type(gateway).__name__} cannot carry out {plan.decision.value}")
    return handler(plan)


class _Gateway:
    category = ""

    def __init__(
        self,
        inventory: Inventory,
        hasher: RecipeHasher,
        *,
        events: Optional[EventFilter] = None,
        on_persist: Optional[Callable[[CacheEntry], None]] = None,
    ) -> None:
        self.inventory = inventory
        self.hasher = hasher
        self.events = events or EventFilter()
        self.on_persist = on_persist

    def _note_hit(self, plan: GatewayPlan) -> None:
        source = _source_for(plan.node)
        self.inventory.record_access(plan.recipe_hash)
        self.inventory.register_reference(source.dataset_id, plan.recipe_hash)

    def _register(self, entry: CacheEntry) -> None:
        self.inventory.register_entry(entry)
        if entry.source is not None:
            self.inventory.register_reference(entry.source.dataset_id, entry)
        if self.on_persist is not None:
            self.on_persist(entry)

    def handlers(self) -> Dict[Decision, Callable[[GatewayPlan], Any]]:
        return {
            Decision.PASS_THROUGH: self.pass_through,
            Decision.SERVE_CACHED: self.serve_cached,
            Decision.DELEGATE_THEN_PERSIST: self.delegate_then_persist,
        }


# ============================================================================
# STORE GATEWAY (STORE)
# ============================================================================


class StoreGateway(_Gateway):
    """Cache raw artifacts fetched from storage backends.

    Per-node configuration:

    - ``save = false`` disables storing for the backend;
    - ``checksum`` is ``"<algorithm>:<hex>"``, ``"auto"``, or ``false``.
      ``"auto"`` is replaced in the node's parameters by the digest computed
      on first access.
    """

    category = "store"

    def __init__(
        self,
        inventory: Inventory,
        hasher: RecipeHasher,
        fetcher: ArtifactFetcher,
        *,
        events: Optional[EventFilter] = None,
        on_persist: Optional[Callable[[CacheEntry], None]] = None,
        auto_algorithm: str = "sha256",
    ) -> None:
        super().__init__(inventory, hasher, events=events, on_persist=on_persist)
        self.fetcher = fetcher
        self.auto_algorithm = auto_algorithm

    def fetch(
        self, storage: StorageBackend, representation: Representation, write: bool = False
    ) -> Any:
        """Return ``storage``'s artifact in ``representation``, using the store when possible."""

        return dispatch(self.plan(storage, representation, write), self)

    def plan(
        self, storage: StorageBackend, representation: Representation, write: bool = False
    ) -> GatewayPlan:
        representation = Representation(representation)
        recipe_hash = self.hasher.hash_storage(storage)
        plan = GatewayPlan(
            Decision.PASS_THROUGH,
            storage,
            recipe_hash=recipe_hash,
            representation=representation,
            fetch_as=representation,
            write=write,
        )

        if not storage.should_store() or write:
            # About to be written to, or not stored at all: drop any stale copy.
            self.inventory.refresh()
            if self.inventory.get(recipe_hash) is not None:
                self.inventory.remove_entry(recipe_hash)
                logger.info(
                    "invalidated stored artifact",
                    extra={"stage": "store", "recipe_hash": recipe_hash, "dataset": storage.dataset_name},
                )
            return plan

        entry = self.inventory.lookup(recipe_hash)
        if entry is not None and entry.kind == STORAGE_DIR:
            entry = self._validate(storage, entry)
            if entry is not None:
                plan.entry = entry
                if representation is Representation.BYTES:
                    plan.decision = Decision.SERVE_CACHED_THEN_POSTPROCESS
                else:
                    plan.decision = Decision.SERVE_CACHED
                return plan

        plan.decision = Decision.DELEGATE_THEN_PERSIST
        if representation is Representation.STREAM:
            plan.fetch_as = Representation.FILE_PATH
        return plan

    # -- checksum handling -------------------------------------------------

    def _expected_checksum(self, storage: StorageBackend, entry: Optional[CacheEntry]) -> Checksum:
        declared = Checksum.parse(storage.get("checksum"), context=f"dataset '{storage.dataset_name}'")
        if declared.state is ChecksumState.NONE or declared.is_definite:
            return declared
        if entry is not None and entry.checksum.is_definite:
            return entry.checksum
        return declared

    def _adopt_checksum(self, storage: StorageBackend, resolved: Checksum) -> None:
        if Checksum.parse(storage.get("checksum")).state is ChecksumState.PENDING and resolved.is_definite:
            storage.set("checksum", resolved.render())
            logger.info(
                "resolved auto checksum",
                extra={"stage": "checksum", "dataset": storage.dataset_name, "checksum": resolved.render()},
            )

    def _validate(self, storage: StorageBackend, entry: CacheEntry) -> Optional[CacheEntry]:
        path = self.inventory.absolute(entry.file_path)
        expected = self._expected_checksum(storage, entry)
        try:
            effective = verify(path, expected, auto_algorithm=self.auto_algorithm)
        except ChecksumMismatch as exc:
            logger.warning(
                "stored artifact failed checksum; purging",
                extra={
                    "stage": "checksum",
                    "recipe_hash": entry.recipe_hash,
                    "expected": exc.expected,
                    "actual": exc.actual,
                },
            )
            self.inventory.remove_entry(entry.recipe_hash)
            return None
        if effective.is_definite and effective != entry.checksum:
            entry = self.inventory.update_entry(entry.recipe_hash, checksum=effective) or entry
        self._adopt_checksum(storage, effective)
        return entry

    # -- handlers ------------------------------------------------------------

    def handlers(self) -> Dict[Decision, Callable[[GatewayPlan], Any]]:
        handlers = super().handlers()
        handlers[Decision.SERVE_CACHED_THEN_POSTPROCESS] = self.serve_cached_then_postprocess
        return handlers

    def _open(self, path: Path, representation: Representation) -> Any:
        if representation is Representation.STREAM:
            return path.open("rb")
        return path

    def _stored_path(self, plan: GatewayPlan) -> Path:
        self._note_hit(plan)
        if self.events.should_log_event(self.category, plan.node):
            logger.info(
                "Opening %s for %r from the store",
                plan.representation.value,
                plan.node.dataset_name,
                extra={"stage": "store", "recipe_hash": plan.recipe_hash},
            )
        return self.inventory.absolute(plan.entry.file_path)

    def pass_through(self, plan: GatewayPlan) -> Any:
        return self.fetcher.fetch_artifact(plan.node, plan.representation, plan.write)

    def serve_cached(self, plan: GatewayPlan) -> Any:
        return self._open(self._stored_path(plan), plan.representation)

    def serve_cached_then_postprocess(self, plan: GatewayPlan) -> Any:
        return self._stored_path(plan).read_bytes()

    def delegate_then_persist(self, plan: GatewayPlan) -> Any:
        if plan.representation is Representation.STREAM:
            return self._delegate_stream(plan)
        fetched = self.fetcher.fetch_artifact(plan.node, plan.fetch_as, plan.write)
        if plan.fetch_as is Representation.FILE_PATH:
            if fetched is None:
                return None
            return self._persist_file(plan, Path(fetched))
        if plan.fetch_as is Representation.BYTES:
            payload = bytes(fetched)
            self._persist(plan, lambda dest: atomic_write_bytes(dest, payload))
            return fetched
        return fetched

    def _delegate_stream(self, plan: GatewayPlan) -> Any:
        # Materialise to a file first so large payloads never sit in memory.
        fetched = self.fetcher.fetch_artifact(plan.node, Representation.FILE_PATH, plan.write)
        if fetched is not None:
            return self._open(self._persist_file(plan, Path(fetched)), plan.representation)
        stream = self.fetcher.fetch_artifact(plan.node, Representation.STREAM, plan.write)
        try:
            stored = self._persist(plan, lambda dest: atomic_write_stream(dest, iter_chunks(stream)))
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        return self._open(stored, plan.representation)

    # -- persistence -------------------------------------------------------

    def _persist_file(self, plan: GatewayPlan, fetched: Path) -> Path:
        return self._persist(plan, lambda dest: atomic_copy_file(fetched, dest), suffix=fetched.suffix)

    def _persist(self, plan: GatewayPlan, write: Callable[[Path], int], suffix: Optional[str] = None) -> Path:
        storage: StorageBackend = plan.node
        if suffix is None:
            extension = storage.get("extension")
            suffix = f".{str(extension).lstrip('.')}" if extension else ""
        rel = self.inventory.storage_path(plan.recipe_hash, suffix)
        dest = self.inventory.absolute(rel)
        size = write(dest)
        try:
            checksum = verify(dest, self._expected_checksum(storage, None), auto_algorithm=self.auto_algorithm)
        except ChecksumMismatch:
            unlink_if_exists(dest)
            raise
        entry = CacheEntry(
            recipe_hash=plan.recipe_hash,
            kind=STORAGE_DIR,
            file_path=rel,
            size_bytes=size,
            checksum=checksum,
            source=_source_for(storage),
        )
        self._register(entry)
        self._adopt_checksum(storage, checksum)
        logger.debug(
            "saved artifact to the store",
            extra={"stage": "store", "recipe_hash": plan.recipe_hash, "size_bytes": size},
        )
        return dest


# ============================================================================
# CACHE GATEWAY (CACHE)
# ============================================================================


class CacheGateway(_Gateway):
    """Cache loaded values with :mod:`pickle`.

    The key combines the loader's recipe hash with the requested type.  An
    entry is only served when every class recorded with it still hashes to
    the same structure; otherwise the loader runs again.  ``cache = false``
    on a loader disables caching for it.
    """

    category = "cache"

    def __init__(
        self,
        inventory: Inventory,
        hasher: RecipeHasher,
        loader: ValueLoader,
        *,
        resolver: Optional[TypeResolver] = None,
        events: Optional[EventFilter] = None,
        on_persist: Optional[Callable[[CacheEntry], None]] = None,
    ) -> None:
        super().__init__(inventory, hasher, events=events, on_persist=on_persist)
        self.loader = loader
        self.resolver = resolver or ImportlibTypeResolver()

    def load(self, loader: Loader, source: Any, as_type: type) -> Any:
        """Return ``source`` loaded as ``as_type``, using the cache when possible."""

        return dispatch(self.plan(loader, as_type, source), self)

    def plan(self, loader: Loader, as_type: type, source: Any = None) -> GatewayPlan:
        plan = GatewayPlan(Decision.PASS_THROUGH, loader, as_type=as_type, source=source)
        if not loader.should_cache() or not is_cacheable(as_type):
            return plan
        plan.recipe_hash = self.hasher.cache_key(loader, as_type)
        entry = self.inventory.lookup(plan.recipe_hash)
        if entry is not None and entry.kind == CACHE_DIR and self._types_current(entry):
            plan.decision = Decision.SERVE_CACHED
            plan.entry = entry
        else:
            plan.decision = Decision.DELEGATE_THEN_PERSIST
        return plan

    def _types_current(self, entry: CacheEntry) -> bool:
        for package in entry.packages:
            try:
                self.resolver.resolve_package_for_type(package)
            except ImportError as exc:
                logger.info(
                    "cached value unusable: package unavailable",
                    extra={"stage": "cache", "recipe_hash": entry.recipe_hash, "package": package, "error": str(exc)},
                )
                return False
        for qualified, expected in entry.types.items():
            try:
                current = type_hash(locate_type(qualified))
            except (ImportError, AttributeError, TypeError):
                return False
            if current != expected:
                logger.info(
                    "cached value unusable: type changed shape",
                    extra={"stage": "cache", "recipe_hash": entry.recipe_hash, "type": qualified},
                )
                return False
        return True

    def pass_through(self, plan: GatewayPlan) -> Any:
        return self.loader.load_value(plan.node, plan.source, plan.as_type)

    def serve_cached(self, plan: GatewayPlan) -> Any:
        path = self.inventory.absolute(plan.entry.file_path)
        try:
            with path.open("rb") as handle:
                value = pickle.load(handle)
        except (OSError, EOFError, pickle.UnpicklingError, AttributeError, ImportError, TypeError) as exc:
            logger.warning(
                "could not deserialise cached value; reloading",
                extra={"stage": "cache", "recipe_hash": plan.recipe_hash, "error": str(exc)},
            )
            self.inventory.remove_entry(plan.recipe_hash)
            return self.delegate_then_persist(plan)
        self._note_hit(plan)
        if self.events.should_log_event(self.category, plan.node):
            logger.info(
                "Loading %s form of %r from the store",
                getattr(plan.as_type, "__qualname__", plan.as_type),
                plan.node.dataset_name,
                extra={"stage": "cache", "recipe_hash": plan.recipe_hash},
            )
        return value

    def delegate_then_persist(self, plan: GatewayPlan) -> Any:
        value = self.loader.load_value(plan.node, plan.source, plan.as_type)
        self._persist(plan, value)
        return value

    def _persist(self, plan: GatewayPlan, value: Any) -> Optional[CacheEntry]:
        try:
            payload = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as exc:
            logger.info(
                "value cannot be cached",
                extra={"stage": "cache", "recipe_hash": plan.recipe_hash, "error": str(exc)},
            )
            return None
        classes = referenced_types(value) | {plan.as_type}
        types = {_qualified(cls): type_hash(cls) for cls in classes if _locatable(cls)}
        packages = sorted({cls.__module__ for cls in classes} - {"builtins"})
        rel = self.inventory.cache_path(plan.recipe_hash)
        size = atomic_write_bytes(self.inventory.absolute(rel), payload)
        entry = CacheEntry(
            recipe_hash=plan.recipe_hash,
            kind=CACHE_DIR,
            file_path=rel,
            size_bytes=size,
            source=_source_for(plan.node),
            types=types,
            packages=packages,
        )
        self._register(entry)
        logger.debug(
            "cached loaded value",
            extra={"stage": "cache", "recipe_hash": plan.recipe_hash, "size_bytes": size},
        )
        return entry
