# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.recipes",
#   "purpose": "Recipe nodes (storage backends, loaders, datasets) and the dataset arena",
#   "sections": [
#     {"id": "representation", "name": "Representation", "anchor": "class-representation", "kind": "class"},
#     {"id": "datasetref", "name": "DataSetRef", "anchor": "class-datasetref", "kind": "class"},
#     {"id": "storagebackend", "name": "StorageBackend", "anchor": "class-storagebackend", "kind": "class"},
#     {"id": "loader", "name": "Loader", "anchor": "class-loader", "kind": "class"},
#     {"id": "dataset", "name": "DataSet", "anchor": "class-dataset", "kind": "class"},
#     {"id": "datacollection", "name": "DataCollection", "anchor": "class-datacollection", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Recipe nodes describing how a dataset is fetched and loaded.

A :class:`DataSet` owns an ordered list of :class:`StorageBackend` nodes
(where raw bytes come from) and :class:`Loader` nodes (how those bytes
become Python values).  Parameters of either may contain
:class:`DataSetRef` values pointing at other datasets in the same
:class:`DataCollection`, which makes the recipe graph a DAG.

Parsing of dataset definitions is outside this package; the classes here
are the narrow interface the hasher and gateways need.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import MissingDependency

__all__ = [
    "DataCollection",
    "DataSet",
    "DataSetRef",
    "Loader",
    "RecipeNode",
    "Representation",
    "StorageBackend",
]


class Representation(str, Enum):
    """Form in which a storage artifact is requested."""

    BYTES = "bytes"
    STREAM = "stream"
    FILE_PATH = "file_path"


@dataclass(frozen=True)
class DataSetRef:
    """Weak reference to another dataset, by name."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class _Node:
    driver: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    dataset: Optional["DataSet"] = field(default=None, repr=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self.parameters[name] = value

    @property
    def dataset_name(self) -> str:
        return self.dataset.name if self.dataset is not None else "<detached>"


@dataclass(eq=False)
class StorageBackend(_Node):
    """Where the raw artifact of a dataset comes from."""

    def should_store(self) -> bool:
        """Return ``False`` when the ``save`` flag disables storing."""

        return self.parameters.get("save", True) is not False


@dataclass(eq=False)
class Loader(_Node):
    """How a dataset's artifact is turned into one of ``types``."""

    types: List[type] = field(default_factory=list)

    def should_cache(self) -> bool:
        """Return ``False`` when the ``cache`` flag disables caching."""

        return self.parameters.get("cache", True) is not False


RecipeNode = Union[StorageBackend, Loader, "DataSet"]


@dataclass(eq=False)
class DataSet:
    """A named dataset: its storage backends and loaders."""

    name: str
    storage: List[StorageBackend] = field(default_factory=list)
    loaders: List[Loader] = field(default_factory=list)
    collection: Optional["DataCollection"] = field(default=None, repr=False)
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        for node in [*self.storage, *self.loaders]:
            node.dataset = self

    def add_storage(self, driver: str, **parameters: Any) -> StorageBackend:
        backend = StorageBackend(driver, dict(parameters), self)
        self.storage.append(backend)
        return backend

    def add_loader(self, driver: str, types: Optional[List[type]] = None, **parameters: Any) -> Loader:
        loader = Loader(driver, dict(parameters), self, types=list(types or []))
        self.loaders.append(loader)
        return loader


class DataCollection:
    """Arena of datasets addressed by name."""

    def __init__(self, name: str = "default", datasets: Optional[List[DataSet]] = None) -> None:
        self.name = name
        self._datasets: Dict[str, DataSet] = {}
        for dataset in datasets or []:
            self.add(dataset)

    def add(self, dataset: DataSet) -> DataSet:
        dataset.collection = self
        self._datasets[dataset.name] = dataset
        return dataset

    def dataset(self, name: str) -> DataSet:
        return self.resolve(DataSetRef(name))

    def resolve(self, ref: DataSetRef) -> DataSet:
        """Return the dataset ``ref`` points at, or raise :class:`MissingDependency`."""

        try:
            return self._datasets[ref.name]
        except KeyError:
            raise MissingDependency(ref.name, collection=self.name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._datasets

    def __iter__(self) -> Iterator[DataSet]:
        return iter(self._datasets.values())

    def __len__(self) -> int:
        return len(self._datasets)
