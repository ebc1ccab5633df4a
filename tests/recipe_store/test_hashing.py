"""Recipe hashing over the dataset reference DAG.

Covers determinism, propagation of upstream changes through shared
(diamond) dependencies, exclusion of behaviour toggles from the hash,
cycle and missing-reference detection, and structural type hashing.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from RecipeStore.errors import ConfigError, CycleDetected, MissingDependency
from RecipeStore.hashing import RecipeHasher, cache_key, canonical_value, referenced_types, type_hash
from RecipeStore.recipes import DataCollection, DataSet, DataSetRef


@dataclass
class Point:
    x: int
    y: int


class Window:
    def __init__(self, start: int, stop: int) -> None:
        self.start = start
        self.stop = stop


def _storage(collection: DataCollection, name: str):
    return collection.dataset(name).storage[0]


def test_hash_is_deterministic_across_hashers(diamond) -> None:
    first = RecipeHasher(diamond).hash_storage(_storage(diamond, "joined"))
    second = RecipeHasher(diamond).hash_storage(_storage(diamond, "joined"))
    assert first == second
    assert len(first) == 64


def test_identical_graphs_hash_identically(diamond_factory) -> None:
    one, two = diamond_factory(), diamond_factory()
    assert RecipeHasher(one).hash_dataset(one.dataset("joined")) == RecipeHasher(two).hash_dataset(
        two.dataset("joined")
    )


def test_parameter_order_does_not_matter() -> None:
    collection = DataCollection()
    a = collection.add(DataSet("a"))
    b = collection.add(DataSet("b"))
    first = a.add_storage("http", url="u", retries=3)
    second = b.add_storage("http", retries=3, url="u")
    hasher = RecipeHasher(collection)
    assert hasher.hash_storage(first) == hasher.hash_storage(second)


def test_shared_upstream_change_propagates_once(diamond) -> None:
    hasher = RecipeHasher(diamond)
    before = {name: hasher.hash_storage(_storage(diamond, name)) for name in ("left", "right", "joined")}

    _storage(diamond, "raw").set("path", "raw-v2.csv")
    after = {name: hasher.hash_storage(_storage(diamond, name)) for name in ("left", "right", "joined")}

    assert all(before[name] != after[name] for name in before)
    # Recomputing yields the same digest: no per-path drift.
    assert hasher.hash_storage(_storage(diamond, "joined")) == after["joined"]


def test_unrelated_dataset_unaffected(diamond) -> None:
    hasher = RecipeHasher(diamond)
    before = hasher.hash_storage(_storage(diamond, "left"))
    _storage(diamond, "right").set("op", "reverse")
    assert hasher.hash_storage(_storage(diamond, "left")) == before


@pytest.mark.parametrize(
    ("name", "value"),
    [("save", False), ("checksum", "auto"), ("checksum", "sha256:" + "a" * 64), ("log", False)],
)
def test_storage_toggles_do_not_change_hash(diamond, name, value) -> None:
    hasher = RecipeHasher(diamond)
    node = _storage(diamond, "raw")
    before = hasher.hash_storage(node)
    node.set(name, value)
    assert hasher.hash_storage(node) == before


def test_loader_cache_toggle_does_not_change_hash(diamond) -> None:
    hasher = RecipeHasher(diamond)
    loader = diamond.dataset("raw").loaders[0]
    before = hasher.hash_loader(loader)
    loader.set("cache", False)
    assert hasher.hash_loader(loader) == before


def test_explicit_exclusions_replace_defaults(diamond) -> None:
    hasher = RecipeHasher(diamond)
    node = _storage(diamond, "raw")
    with_path = hasher.compute_hash(node)
    without_path = hasher.compute_hash(node, excluded_params={"path"})
    assert with_path != without_path
    node.set("path", "elsewhere.csv")
    assert hasher.compute_hash(node, excluded_params={"path"}) == without_path


def test_loader_hash_tracks_its_dataset_storage(diamond) -> None:
    hasher = RecipeHasher(diamond)
    loader = diamond.dataset("raw").loaders[0]
    before = hasher.hash_loader(loader)
    _storage(diamond, "raw").set("path", "other.csv")
    assert hasher.hash_loader(loader) != before


def test_cache_key_depends_on_requested_type(diamond) -> None:
    hasher = RecipeHasher(diamond)
    loader = diamond.dataset("raw").loaders[0]
    assert hasher.cache_key(loader, str) != hasher.cache_key(loader, bytes)
    assert hasher.cache_key(loader, str) == cache_key(hasher.hash_loader(loader), str)


def test_cycle_detected() -> None:
    collection = DataCollection()
    a = collection.add(DataSet("a"))
    b = collection.add(DataSet("b"))
    a.add_storage("derived", source=DataSetRef("b"))
    b.add_storage("derived", source=DataSetRef("a"))

    with pytest.raises(CycleDetected) as excinfo:
        RecipeHasher(collection).hash_storage(a.storage[0])
    assert excinfo.value.path[0] == excinfo.value.path[-1] == "a"
    assert "b" in excinfo.value.path


def test_self_reference_is_a_cycle() -> None:
    collection = DataCollection()
    a = collection.add(DataSet("a"))
    a.add_storage("derived", source=DataSetRef("a"))
    with pytest.raises(CycleDetected):
        RecipeHasher(collection).hash_storage(a.storage[0])


def test_missing_reference_raises() -> None:
    collection = DataCollection("demo")
    a = collection.add(DataSet("a"))
    a.add_storage("derived", source=DataSetRef("ghost"))
    with pytest.raises(MissingDependency) as excinfo:
        RecipeHasher(collection).hash_storage(a.storage[0])
    assert excinfo.value.reference == "ghost"
    assert excinfo.value.collection == "demo"


def test_hasher_falls_back_to_dataset_collection(diamond) -> None:
    assert RecipeHasher().hash_storage(_storage(diamond, "joined")) == RecipeHasher(diamond).hash_storage(
        _storage(diamond, "joined")
    )


def test_type_hash_tracks_shape() -> None:
    @dataclass
    class Shape:
        x: int

    original = type_hash(Shape)

    @dataclass
    class Shape:  # noqa: F811
        x: int
        y: int

    assert type_hash(Shape) != original
    assert type_hash(Point) == type_hash(Point)


def test_canonical_value_sorts_sets_and_resolves_refs() -> None:
    rendered = canonical_value({"b": {3, 1, 2}, "a": DataSetRef("x")}, lambda ref: f"hash-{ref.name}")
    assert rendered == {"b": [1, 2, 3], "a": {"$dataset": "hash-x"}}


def test_referenced_types_walks_containers() -> None:
    found = referenced_types({"points": [Point(1, 2)]})
    assert {dict, str, list, Point, int} <= found


def _object_param_hash(value) -> str:
    collection = DataCollection()
    node = collection.add(DataSet("a")).add_storage("http", url="u", shape=value)
    return RecipeHasher(collection).hash_storage(node)


@pytest.mark.parametrize(
    "build",
    [lambda: Point(1, 2), lambda: Window(0, 10), lambda: {"nested": [Point(3, 4)]}],
)
def test_object_params_hash_by_content(build) -> None:
    assert _object_param_hash(build()) == _object_param_hash(build())


def test_object_param_fields_change_hash() -> None:
    assert _object_param_hash(Point(1, 2)) != _object_param_hash(Point(2, 1))
    assert _object_param_hash(Window(0, 10)) != _object_param_hash(Window(0, 11))


def test_object_param_without_stable_form_rejected() -> None:
    with pytest.raises(ConfigError):
        _object_param_hash(object())
