# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.hashing",
#   "purpose": "Recursive recipe hashing over the dataset reference DAG",
#   "sections": [
#     {"id": "canonical-value", "name": "canonical_value", "anchor": "function-canonical-value", "kind": "function"},
#     {"id": "type-hash", "name": "type_hash", "anchor": "function-type-hash", "kind": "function"},
#     {"id": "referenced-types", "name": "referenced_types", "anchor": "function-referenced-types", "kind": "function"},
#     {"id": "recipehasher", "name": "RecipeHasher", "anchor": "class-recipehasher", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Recipe hashing.

The "recipe" of a storage backend or loader is its driver, its parameters,
and, through any :class:`~RecipeStore.recipes.DataSetRef` parameters, the
recipes of every dataset it depends on.  Hashing is Merkle-style: each
referenced dataset contributes its own aggregate digest rather than its raw
reference, so a change anywhere upstream changes every downstream hash.

The graph is a DAG, not a tree.  A dataset reachable along several paths is
hashed once per top-level computation and the digest reused.  A reference
back onto the active path is a configuration error and raises
:class:`~RecipeStore.errors.CycleDetected`.

Hashing is a pure function of the current configuration; nothing here is
cached across calls, so edits to the graph are always observed.
"""

from __future__ import annotations

import dataclasses
import hashlib
import inspect
import json
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from .errors import ConfigError, CycleDetected, MissingDependency
from .recipes import DataCollection, DataSet, DataSetRef, Loader, StorageBackend

__all__ = [
    "DEFAULT_LOADER_EXCLUDED",
    "DEFAULT_STORAGE_EXCLUDED",
    "RecipeHasher",
    "cache_key",
    "canonical_value",
    "referenced_types",
    "type_hash",
]

# Parameters that control store behaviour without affecting the artifact.
DEFAULT_STORAGE_EXCLUDED: FrozenSet[str] = frozenset({"save", "checksum", "log"})
DEFAULT_LOADER_EXCLUDED: FrozenSet[str] = frozenset({"cache", "log"})

_REFERENCED_TYPES_DEPTH = 4
_REFERENCED_TYPES_SAMPLE = 64


def _digest(*parts: str) -> str:
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return hasher.hexdigest()


def canonical_value(value: Any, resolve_ref) -> Any:
    """Return a JSON-serialisable, order-stable rendering of ``value``.

    Mappings are key-sorted by ``json.dumps``; sequences keep their order;
    sets are sorted.  ``resolve_ref`` replaces each :class:`DataSetRef` with
    the referenced dataset's digest.  Dataclasses, pydantic models and plain
    objects are rendered field by field.  Anything else must define its own
    ``__repr__``; the default one embeds a memory address and would give the
    same recipe a different hash in every process, so it raises
    :class:`ConfigError` instead.
    """

    if isinstance(value, DataSetRef):
        return {"$dataset": resolve_ref(value)}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return canonical_value(value.value, resolve_ref)
    if isinstance(value, dict):
        return {str(key): canonical_value(item, resolve_ref) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonical_value(item, resolve_ref) for item in value]
    if isinstance(value, (set, frozenset)):
        rendered = [canonical_value(item, resolve_ref) for item in value]
        return sorted(rendered, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, bytes):
        return {"$bytes": value.hex()}
    if isinstance(value, (PurePath, datetime, date)):
        return str(value)
    if isinstance(value, type):
        return {"$type": type_hash(value)}
    if inspect.isroutine(value):
        qualname = getattr(value, "__qualname__", value.__name__)
        return {"$callable": f"{getattr(value, '__module__', None)}:{qualname}"}
    fields = _object_fields(value)
    if fields is not None:
        return {
            "$object": _class_name(type(value)),
            "fields": {name: canonical_value(item, resolve_ref) for name, item in sorted(fields.items())},
        }
    if type(value).__repr__ is not object.__repr__:
        return {"$repr": f"{_class_name(type(value))}:{value!r}"}
    raise ConfigError(
        f"Parameter value of type {_class_name(type(value))} has no stable representation to hash"
    )


def _class_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _object_fields(value: Any) -> Optional[Dict[str, Any]]:
    if dataclasses.is_dataclass(value):
        return {item.name: getattr(value, item.name) for item in dataclasses.fields(value)}
    model_fields = getattr(type(value), "model_fields", None)
    if isinstance(model_fields, dict):
        return {name: getattr(value, name) for name in model_fields}
    if hasattr(value, "__dict__"):
        return dict(vars(value))
    return None


def _annotation_text(annotation: Any) -> str:
    if isinstance(annotation, str):
        return annotation
    if isinstance(annotation, type):
        return f"{annotation.__module__}.{annotation.__qualname__}"
    return repr(annotation)


def _type_shape(cls: type) -> List[List[str]]:
    fields: List[List[str]] = []
    if dataclasses.is_dataclass(cls):
        for item in dataclasses.fields(cls):
            fields.append([item.name, _annotation_text(item.type)])
        return fields
    model_fields = getattr(cls, "model_fields", None)
    if isinstance(model_fields, dict):
        for name, info in model_fields.items():
            fields.append([name, _annotation_text(getattr(info, "annotation", None))])
        return fields
    for name, annotation in inspect.get_annotations(cls).items():
        fields.append([name, _annotation_text(annotation)])
    slots = cls.__dict__.get("__slots__", ())
    if isinstance(slots, str):
        slots = (slots,)
    for name in slots:
        fields.append([name, "slot"])
    return fields


def type_hash(cls: type) -> str:
    """Return a structural hash of ``cls``.

    Captures the qualified name, base classes, and field layout so that a
    cached value whose type has since changed shape is not deserialised.
    """

    bases = [f"{base.__module__}.{base.__qualname__}" for base in cls.__mro__[1:] if base is not object]
    payload = {
        "name": f"{cls.__module__}.{cls.__qualname__}",
        "bases": bases,
        "fields": _type_shape(cls),
    }
    return _digest("type", json.dumps(payload, sort_keys=True))


def referenced_types(value: Any, depth: int = _REFERENCED_TYPES_DEPTH) -> Set[type]:
    """Collect the classes reachable inside ``value``.

    Containers are sampled, and traversal stops after ``depth`` levels.
    """

    found: Set[type] = set()
    seen: Set[int] = set()

    def _visit(item: Any, level: int) -> None:
        found.add(type(item))
        if level >= depth or id(item) in seen:
            return
        seen.add(id(item))
        children: Iterable[Any]
        if isinstance(item, (str, bytes, bytearray, int, float, bool, type(None))):
            return
        if isinstance(item, dict):
            children = [child for pair in list(item.items())[:_REFERENCED_TYPES_SAMPLE] for child in pair]
        elif isinstance(item, (list, tuple, set, frozenset)):
            children = list(item)[:_REFERENCED_TYPES_SAMPLE]
        elif dataclasses.is_dataclass(item) and not isinstance(item, type):
            children = [getattr(item, f.name) for f in dataclasses.fields(item)]
        elif hasattr(item, "__dict__") and not isinstance(item, type):
            children = list(vars(item).values())[:_REFERENCED_TYPES_SAMPLE]
        else:
            return
        for child in children:
            _visit(child, level + 1)

    _visit(value, 0)
    return found


class _HashRun:
    """State of one top-level hash computation: memo table and active path."""

    def __init__(self, hasher: "RecipeHasher") -> None:
        self.hasher = hasher
        self.memo: Dict[str, str] = {}
        self.active: List[DataSet] = []

    def _collection(self, dataset: Optional[DataSet]) -> DataCollection:
        collection = self.hasher.collection
        if collection is None and dataset is not None:
            collection = dataset.collection
        if collection is None:
            raise MissingDependency("<no collection>")
        return collection

    def params(self, node, excluded: FrozenSet[str]) -> List[str]:
        def _resolve(ref: DataSetRef) -> str:
            return self.dataset(self._collection(node.dataset).resolve(ref))

        folded: List[str] = []
        for name in sorted(node.parameters):
            if name in excluded:
                continue
            rendered = canonical_value(node.parameters[name], _resolve)
            folded.append(name)
            folded.append(json.dumps(rendered, sort_keys=True, separators=(",", ":")))
        return folded

    def storage(self, node: StorageBackend, excluded: FrozenSet[str]) -> str:
        return _digest("storage", node.driver, *self.params(node, excluded))

    def loader(self, node: Loader, excluded: FrozenSet[str]) -> str:
        storage_hashes: List[str] = []
        if node.dataset is not None:
            storage_hashes = [
                self.storage(backend, self.hasher.storage_excluded) for backend in node.dataset.storage
            ]
        types = sorted(type_hash(cls) for cls in node.types)
        return _digest(
            "loader",
            node.driver,
            *self.params(node, excluded),
            "types",
            *types,
            "storage",
            *storage_hashes,
        )

    def dataset(self, dataset: DataSet) -> str:
        cached = self.memo.get(dataset.uuid)
        if cached is not None:
            return cached
        if any(active is dataset for active in self.active):
            names = [active.name for active in self.active]
            start = names.index(dataset.name) if dataset.name in names else 0
            raise CycleDetected([*names[start:], dataset.name])
        self.active.append(dataset)
        try:
            storage_hashes = [
                self.storage(backend, self.hasher.storage_excluded) for backend in dataset.storage
            ]
            loader_hashes = [self.loader(loader, self.hasher.loader_excluded) for loader in dataset.loaders]
        finally:
            self.active.pop()
        digest = _digest("dataset", "storage", *storage_hashes, "loaders", *loader_hashes)
        self.memo[dataset.uuid] = digest
        return digest


class RecipeHasher:
    """Compute recipe hashes for storage backends, loaders, and datasets.

    Args:
        collection: Arena used to resolve :class:`DataSetRef` parameters.
            When ``None``, each node's own dataset collection is used.
        storage_excluded: Storage parameters ignored by default.
        loader_excluded: Loader parameters ignored by default.
    """

    def __init__(
        self,
        collection: Optional[DataCollection] = None,
        *,
        storage_excluded: Iterable[str] = DEFAULT_STORAGE_EXCLUDED,
        loader_excluded: Iterable[str] = DEFAULT_LOADER_EXCLUDED,
    ) -> None:
        self.collection = collection
        self.storage_excluded = frozenset(storage_excluded)
        self.loader_excluded = frozenset(loader_excluded)

    def compute_hash(self, node, excluded_params: Optional[Iterable[str]] = None) -> str:
        """Return the recipe hash of ``node``.

        ``excluded_params`` replaces the default exclusions for ``node``
        itself; referenced datasets always use the defaults.
        """

        run = _HashRun(self)
        if isinstance(node, DataSet):
            return run.dataset(node)
        if isinstance(node, StorageBackend):
            excluded = self.storage_excluded if excluded_params is None else frozenset(excluded_params)
            return self._within(run, node, lambda: run.storage(node, excluded))
        if isinstance(node, Loader):
            excluded = self.loader_excluded if excluded_params is None else frozenset(excluded_params)
            return self._within(run, node, lambda: run.loader(node, excluded))
        raise TypeError(f"Cannot compute a recipe hash for {type(node).__name__}")

    @staticmethod
    def _within(run: _HashRun, node, compute) -> str:
        # The owning dataset is on the active path so self-references are cycles.
        if node.dataset is None:
            return compute()
        run.active.append(node.dataset)
        try:
            return compute()
        finally:
            run.active.pop()

    def hash_storage(self, node: StorageBackend) -> str:
        return self.compute_hash(node)

    def hash_loader(self, node: Loader) -> str:
        return self.compute_hash(node)

    def hash_dataset(self, dataset: DataSet) -> str:
        return self.compute_hash(dataset)

    def cache_key(self, loader: Loader, as_type: type) -> str:
        return cache_key(self.hash_loader(loader), as_type)


def cache_key(loader_hash: str, as_type: type) -> str:
    """Combine a loader recipe hash with the requested result type."""

    return _digest("cache", loader_hash, type_hash(as_type))
