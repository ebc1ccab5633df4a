"""Inventory persistence, lookups, and mutation semantics.

Verifies that entries survive a reload, that entries whose backing file
vanished are pruned on lookup, that replacing an entry releases the old
file, that access times never move backwards, that independent handles on
the same store merge rather than clobber, and that a corrupt index is only
recovered through an explicit reset.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from RecipeStore.checksums import Checksum
from RecipeStore.errors import ConfigError, CorruptIndex
from RecipeStore.inventory import CACHE_DIR, STORAGE_DIR, CacheEntry, Inventory, SourceRef, utcnow


def _add(inventory: Inventory, recipe_hash: str, payload: bytes = b"data", *, suffix: str = ".bin", **kwargs):
    rel = inventory.storage_path(recipe_hash, suffix)
    path = inventory.absolute(rel)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    entry = CacheEntry(recipe_hash=recipe_hash, kind=STORAGE_DIR, file_path=rel, size_bytes=len(payload), **kwargs)
    inventory.register_entry(entry)
    return entry


def test_new_store_starts_empty(inventory: Inventory) -> None:
    assert len(inventory) == 0
    assert inventory.last_gc is None
    assert inventory.total_size() == 0
    assert not inventory.index_path.exists()


def test_register_and_reload(inventory: Inventory, settings) -> None:
    source = SourceRef(dataset="raw", driver="http", collection="pipeline")
    _add(inventory, "h1", b"12345", source=source, checksum=Checksum.parse("auto"))

    reopened = Inventory.open(settings)
    entry = reopened.lookup("h1")
    assert entry is not None
    assert entry.size_bytes == 5
    assert entry.source == source
    assert entry.source.dataset_id == "pipeline:raw"
    assert str(entry.checksum) == "auto"
    assert reopened.absolute(entry.file_path).read_bytes() == b"12345"


def test_index_is_versioned_json(inventory: Inventory) -> None:
    _add(inventory, "h1")
    payload = json.loads(inventory.index_path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert [row["recipe_hash"] for row in payload["entries"]] == ["h1"]
    assert payload["config"]["max_age"] == 30.0


def test_lookup_prunes_entry_with_missing_file(inventory: Inventory) -> None:
    entry = _add(inventory, "h1")
    inventory.absolute(entry.file_path).unlink()

    assert inventory.lookup("h1") is None
    assert "h1" not in inventory
    assert inventory.lookup("h1") is None


def test_replacing_entry_deletes_superseded_file(inventory: Inventory) -> None:
    old = _add(inventory, "h1", b"old", suffix=".csv")
    new = _add(inventory, "h1", b"newer", suffix=".parquet")

    assert not inventory.absolute(old.file_path).exists()
    assert inventory.absolute(new.file_path).read_bytes() == b"newer"
    assert inventory.total_size() == 5


def test_record_access_is_batched_and_monotonic(inventory: Inventory, settings) -> None:
    entry = _add(inventory, "h1")
    original = entry.last_accessed_at
    later = original + timedelta(hours=1)
    earlier = original - timedelta(hours=1)

    inventory.record_access("h1", later)
    inventory.record_access("h1", earlier)
    assert inventory.get("h1").last_accessed_at == later

    # Not persisted until the next write.
    assert Inventory.open(settings).get("h1").last_accessed_at == original
    inventory.flush()
    assert Inventory.open(settings).get("h1").last_accessed_at == later


def test_pending_access_survives_external_reload(inventory: Inventory, settings) -> None:
    _add(inventory, "h1")
    later = utcnow() + timedelta(minutes=5)
    inventory.record_access("h1", later)

    other = Inventory.open(settings)
    _add(other, "h2")

    assert inventory.refresh() is True
    assert inventory.get("h1").last_accessed_at == later
    assert "h2" in inventory


def test_concurrent_handles_merge(settings) -> None:
    first = Inventory.open(settings)
    second = Inventory.open(settings)
    _add(first, "a")
    _add(second, "b")
    _add(first, "c")

    assert {e.recipe_hash for e in Inventory.open(settings).entries()} == {"a", "b", "c"}


def test_remove_entry_is_idempotent(inventory: Inventory) -> None:
    entry = _add(inventory, "h1")
    inventory.register_reference("pipeline:raw", entry)

    assert inventory.remove_entry("h1") is True
    assert inventory.remove_entry("h1") is False
    assert not inventory.absolute(entry.file_path).exists()
    assert inventory.references_for("h1") == set()


def test_remove_entry_can_keep_file(inventory: Inventory) -> None:
    entry = _add(inventory, "h1")
    inventory.remove_entry("h1", delete_file=False)
    assert inventory.absolute(entry.file_path).exists()


def test_references_track_datasets(inventory: Inventory) -> None:
    _add(inventory, "h1")
    _add(inventory, "h2")
    inventory.register_reference("pipeline:raw", "h1")
    inventory.register_reference("pipeline:joined", "h1")
    inventory.register_reference("pipeline:joined", "h2")
    inventory.register_reference("pipeline:joined", "unknown")

    assert inventory.references_for("h1") == {"pipeline:raw", "pipeline:joined"}
    assert inventory.references() == {"pipeline:raw": {"h1"}, "pipeline:joined": {"h1", "h2"}}


def test_entries_filter_by_kind(inventory: Inventory) -> None:
    _add(inventory, "s1")
    rel = inventory.cache_path("c1")
    inventory.absolute(rel).parent.mkdir(parents=True, exist_ok=True)
    inventory.absolute(rel).write_bytes(b"pickle")
    inventory.register_entry(CacheEntry("c1", CACHE_DIR, rel, 6, types={"builtins:str": "x"}))

    assert [e.recipe_hash for e in inventory.entries(STORAGE_DIR)] == ["s1"]
    assert [e.recipe_hash for e in inventory.entries(CACHE_DIR)] == ["c1"]


def test_unknown_entry_kind_rejected() -> None:
    with pytest.raises(ValueError):
        CacheEntry("h", "elsewhere", "x", 1)


def test_update_config_persists(inventory: Inventory, settings) -> None:
    inventory.update_config(max_size="2MiB", recency_beta=-2)
    config = Inventory.open(settings).config
    assert config.max_size == 2 * 1024**2
    assert config.recency_beta == -2


def test_update_config_rejects_invalid(inventory: Inventory, settings) -> None:
    with pytest.raises(ConfigError):
        inventory.update_config(max_age=0)
    with pytest.raises(ConfigError):
        inventory.update_config(colour="blue")
    assert Inventory.open(settings).config.max_age == 30.0


def test_corrupt_index_raises_until_reset(inventory: Inventory, settings) -> None:
    _add(inventory, "h1")
    inventory.index_path.write_text("{ not json", encoding="utf-8")

    with pytest.raises(CorruptIndex):
        Inventory.open(settings)
    with pytest.raises(CorruptIndex):
        inventory.lookup("h1")

    inventory.reset()
    assert len(Inventory.open(settings)) == 0


def test_unsupported_version_is_corrupt(inventory: Inventory, settings) -> None:
    inventory.index_path.parent.mkdir(parents=True, exist_ok=True)
    inventory.index_path.write_text(json.dumps({"version": 99}), encoding="utf-8")
    with pytest.raises(CorruptIndex) as excinfo:
        Inventory.open(settings)
    assert "version" in excinfo.value.reason


def test_reset_can_keep_config(inventory: Inventory, settings) -> None:
    inventory.update_config(auto_gc=0)
    _add(inventory, "h1")
    inventory.reset(keep_config=True)

    reopened = Inventory.open(settings)
    assert len(reopened) == 0
    assert reopened.config.auto_gc == 0


def test_failed_transaction_rolls_back_memory(inventory: Inventory) -> None:
    _add(inventory, "h1")
    with pytest.raises(RuntimeError):
        with inventory.transaction():
            inventory._entries.clear()
            raise RuntimeError("boom")
    assert inventory.lookup("h1") is not None
