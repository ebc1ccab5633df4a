"""Settings models: GC limits, YAML/environment loading, and logging setup."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path

import pytest

from RecipeStore.errors import ConfigError
from RecipeStore.logging_config import JSONFormatter, setup_logging
from RecipeStore.settings import (
    GCConfig,
    LoggingSettings,
    StoreSettings,
    describe_gc_settings,
    load_raw_yaml,
    load_settings,
)


def test_gc_defaults() -> None:
    config = GCConfig()
    assert config.auto_gc == 2.0
    assert config.max_age == 30.0
    assert config.max_size == 50 * 1024**3
    assert config.recency_beta == 1.0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1024", 1024), ("20GiB", 20 * 1024**3), ("1.5 MiB", int(1.5 * 1024**2)), ("10k", 10240)],
)
def test_max_size_accepts_suffixes(raw, expected) -> None:
    assert GCConfig().set("max_size", raw).max_size == expected


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("max_size", "-5"),
        ("max_size", "lots"),
        ("max_size", "10 parsecs"),
        ("max_age", 0),
        ("recency_beta", math.nan),
        ("auto_gc", "soon"),
        ("unknown", 1),
    ],
)
def test_invalid_gc_values_rejected(name, value) -> None:
    config = GCConfig()
    with pytest.raises(ConfigError):
        config.set(name, value)
    assert config == GCConfig()


def test_negative_auto_gc_disables_collection() -> None:
    assert GCConfig().set("auto_gc", "-1").auto_gc == -1.0


def test_describe_gc_settings_lists_all_four() -> None:
    text = describe_gc_settings()
    for name in ("auto_gc", "max_age", "max_size", "recency_beta"):
        assert name in text


def test_store_settings_from_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RECIPESTORE_ROOT", str(tmp_path / "env-store"))
    monkeypatch.setenv("RECIPESTORE_LOGGING__LEVEL", "debug")
    settings = StoreSettings()
    assert settings.root == (tmp_path / "env-store").resolve()
    assert settings.logging.level == "DEBUG"
    assert settings.index_path == settings.root / "inventory.json"


def test_load_settings_from_yaml_with_overrides(tmp_path: Path) -> None:
    config_file = tmp_path / "store.yaml"
    config_file.write_text(
        "root: {root}\nlock_timeout: 2.5\ndefault_checksum_algorithm: SHA512\n".format(root=tmp_path / "a"),
        encoding="utf-8",
    )
    settings = load_settings(config_file, {"root": tmp_path / "b"})
    assert settings.root == (tmp_path / "b").resolve()
    assert settings.lock_timeout == 2.5
    assert settings.default_checksum_algorithm == "sha512"


def test_load_settings_rejects_bad_algorithm(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_settings(overrides={"root": tmp_path, "default_checksum_algorithm": "rot13"})


def test_load_raw_yaml_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_raw_yaml(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("root: [unterminated\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_raw_yaml(broken)
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_raw_yaml(listing)
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_raw_yaml(empty) == {}


def test_logging_level_validation() -> None:
    assert LoggingSettings(level="warning").level_int() == logging.WARNING
    with pytest.raises(ValueError):
        LoggingSettings(level="chatty")


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.makeLogRecord({"msg": "hello %s", "args": ("world",), "stage": "gc", "recipe_hash": "abc"})
    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "hello world"
    assert payload["stage"] == "gc"
    assert payload["recipe_hash"] == "abc"


def test_setup_logging_is_idempotent() -> None:
    logger = setup_logging(LoggingSettings(level="DEBUG", emit_json_logs=True))
    setup_logging(LoggingSettings(level="DEBUG", emit_json_logs=True))
    marked = [h for h in logger.handlers if getattr(h, "_recipestore_handler", False)]
    try:
        assert len(marked) == 1
        assert isinstance(marked[0].formatter, JSONFormatter)
        assert logger.level == logging.DEBUG
    finally:
        for handler in marked:
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
