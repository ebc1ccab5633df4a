"""Shared fixtures for the recipe store test suite.

Provides an isolated store directory per test, a diamond-shaped dataset
collection (``raw`` feeding ``left`` and ``right``, which both feed
``joined``), and counting fake collaborators so tests can assert whether a
request reached the real fetch or load path.
"""

from __future__ import annotations

import io
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from RecipeStore.inventory import Inventory
from RecipeStore.recipes import DataCollection, DataSet, DataSetRef, Representation
from RecipeStore.settings import StoreSettings


class CountingFetcher:
    """Serve canned payloads per dataset and count every fetch."""

    def __init__(self, remote_dir: Path, payloads: Optional[Dict[str, bytes]] = None) -> None:
        self.remote_dir = remote_dir
        self.payloads: Dict[str, bytes] = dict(payloads or {})
        self.calls: Counter = Counter()
        self.file_path_available = True

    def payload_for(self, name: str) -> bytes:
        return self.payloads.get(name, f"payload of {name}".encode("utf-8"))

    def fetch_artifact(self, node, representation, write):
        name = node.dataset_name
        self.calls[name] += 1
        payload = self.payload_for(name)
        representation = Representation(representation)
        if representation is Representation.BYTES:
            return payload
        if representation is Representation.STREAM:
            return io.BytesIO(payload)
        if not self.file_path_available:
            return None
        self.remote_dir.mkdir(parents=True, exist_ok=True)
        path = self.remote_dir / f"{name}.csv"
        path.write_bytes(payload)
        return path


class CountingLoader:
    """Build values by calling ``as_type(source)`` and count every load."""

    def __init__(self) -> None:
        self.calls: Counter = Counter()

    def load_value(self, node, source: Any, as_type: type) -> Any:
        self.calls[node.dataset_name] += 1
        return as_type(source)


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def settings(store_root: Path) -> StoreSettings:
    return StoreSettings(root=store_root)


@pytest.fixture
def inventory(settings: StoreSettings) -> Inventory:
    return Inventory.open(settings)


@pytest.fixture
def fetcher(tmp_path: Path) -> CountingFetcher:
    return CountingFetcher(tmp_path / "remote")


@pytest.fixture
def loader() -> CountingLoader:
    return CountingLoader()


def build_diamond() -> DataCollection:
    collection = DataCollection("pipeline")
    raw = DataSet("raw")
    raw.add_storage("filesystem", path="raw.csv", checksum=False)
    raw.add_loader("csv", types=[str], delimiter=",")
    left = DataSet("left")
    left.add_storage("derived", source=DataSetRef("raw"), op="filter")
    right = DataSet("right")
    right.add_storage("derived", source=DataSetRef("raw"), op="sort")
    joined = DataSet("joined")
    joined.add_storage("derived", inputs=[DataSetRef("left"), DataSetRef("right")], op="join")
    joined.add_loader("csv", types=[str])
    for dataset in (raw, left, right, joined):
        collection.add(dataset)
    return collection


@pytest.fixture
def diamond() -> DataCollection:
    return build_diamond()


@pytest.fixture
def diamond_factory():
    return build_diamond
