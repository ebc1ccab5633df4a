# === NAVMAP v1 ===
# {
#   "module": "RecipeStore.settings",
#   "purpose": "Pydantic models for garbage collection and process-level store settings",
#   "sections": [
#     {"id": "gcconfig", "name": "GCConfig", "anchor": "class-gcconfig", "kind": "class"},
#     {"id": "loggingsettings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "storesettings", "name": "StoreSettings", "anchor": "class-storesettings", "kind": "class"},
#     {"id": "load-raw-yaml", "name": "load_raw_yaml", "anchor": "function-load-raw-yaml", "kind": "function"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the recipe store.

Two layers of configuration exist.  :class:`GCConfig` holds the four
system-wide garbage collection settings and is persisted inside the
inventory index, so every process sharing a store observes the same
limits.  :class:`StoreSettings` describes the local process: where the
store lives, how long to wait for the index lock, and how to log.  It is
populated from defaults, ``RECIPESTORE_*`` environment variables, and an
optional YAML file.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .checksums import SUPPORTED_ALGORITHMS
from .errors import ConfigError

__all__ = [
    "GC_SETTING_NAMES",
    "GCConfig",
    "LoggingSettings",
    "StoreSettings",
    "describe_gc_settings",
    "load_raw_yaml",
    "load_settings",
]

GIB = 1024**3

GC_SETTING_NAMES = ("auto_gc", "max_age", "max_size", "recency_beta")


class GCConfig(BaseModel):
    """System-wide garbage collection behaviour."""

    auto_gc: float = Field(
        default=2.0,
        description="How often to automatically run garbage collection (hours); <= 0 disables",
    )
    max_age: float = Field(
        default=30.0,
        gt=0,
        description="Maximum days since an entry was last accessed before it is removed",
    )
    max_size: int = Field(
        default=50 * GIB,
        gt=0,
        description="Maximum total size of the store (bytes)",
    )
    recency_beta: float = Field(
        default=1.0,
        description=(
            "How much recency is valued when evicting to stay under max_size. "
            "Larger positive values weight recency more, negative values weight "
            "size more; -1 and 1 are equivalent."
        ),
    )

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    @field_validator("auto_gc", "max_age", "recency_beta")
    @classmethod
    def reject_non_finite(cls, value: float) -> float:
        """Refuse NaN and infinities, which make schedules and scores meaningless."""

        if not math.isfinite(value):
            raise ValueError("value must be a finite number")
        return value

    def set(self, name: str, value: Any) -> "GCConfig":
        """Assign one named setting from a CLI string or native value."""

        if name not in GC_SETTING_NAMES:
            raise ConfigError(
                f"Unknown store setting '{name}'; expected one of {', '.join(GC_SETTING_NAMES)}"
            )
        if isinstance(value, str):
            value = _parse_size(value) if name == "max_size" else value.strip()
        try:
            setattr(self, name, value)
        except PydanticValidationError as exc:
            raise ConfigError(f"Invalid value for '{name}': {value!r}") from exc
        return self


_SIZE_SUFFIXES = {
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "kib": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "mib": 1024**2,
    "g": GIB,
    "gb": GIB,
    "gib": GIB,
    "t": 1024**4,
    "tb": 1024**4,
    "tib": 1024**4,
}


def _parse_size(raw: str) -> int:
    text = raw.strip().lower().replace("_", "")
    number = text.rstrip("abcdefghijklmnopqrstuvwxyz").strip()
    suffix = text[len(number) :].strip()
    if not number:
        raise ConfigError(f"Invalid size '{raw}'")
    multiplier = _SIZE_SUFFIXES.get(suffix or "b")
    if multiplier is None:
        raise ConfigError(f"Unknown size suffix in '{raw}'")
    try:
        return int(float(number) * multiplier)
    except ValueError as exc:
        raise ConfigError(f"Invalid size '{raw}'") from exc


def describe_gc_settings(config: Optional[GCConfig] = None) -> str:
    """Return human readable help for the four GC settings."""

    config = config or GCConfig()
    lines = []
    for index, name in enumerate(GC_SETTING_NAMES, start=1):
        field = GCConfig.model_fields[name]
        lines.append(f"{index}. {name} (current {getattr(config, name)}): {field.description}")
    return "\n".join(lines)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    emit_json_logs: bool = Field(default=False, description="Emit JSON-formatted log lines")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        """Normalize and validate logging level."""
        upper = str(v).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{v}'")
        return upper

    def level_int(self) -> int:
        """Convert level string to logging module integer."""
        return logging.getLevelName(self.level)


class StoreSettings(BaseSettings):
    """Process-level settings for a recipe store."""

    model_config = SettingsConfigDict(
        env_prefix="RECIPESTORE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    root: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "recipestore",
        description="Store directory holding the index and data files",
    )
    index_name: str = Field(default="inventory.json", description="Inventory file name")
    lock_timeout: float = Field(
        default=10.0, ge=0.0, description="Seconds to wait for the inventory lock"
    )
    default_checksum_algorithm: str = Field(
        default="sha256", description="Algorithm used when resolving 'auto' checksums"
    )
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("root", mode="before")
    @classmethod
    def normalize_root(cls, v: Any) -> Path:
        """Normalize store directory to an absolute path."""
        return Path(v).expanduser().resolve()

    @field_validator("default_checksum_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Only accept algorithms the checksum validator can compute."""
        lowered = v.strip().lower()
        if lowered not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported checksum algorithm '{v}'")
        return lowered

    @property
    def index_path(self) -> Path:
        return self.root / self.index_name


def normalize_config_path(config_path: Path) -> Path:
    """Return a user-supplied configuration path with ``~`` and symlinks resolved."""

    expanded = Path(config_path).expanduser()
    try:
        return expanded.resolve(strict=False)
    except (OSError, RuntimeError):  # pragma: no cover - only triggered on rare filesystems
        return expanded


def load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    """Read a YAML configuration file and return its top-level mapping."""

    normalized_path = normalize_config_path(config_path)

    if not normalized_path.exists():
        raise ConfigError(f"Configuration file not found: {normalized_path}")

    try:
        with normalized_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{normalized_path}' contains invalid YAML") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the root")
    return data


def load_settings(
    config_path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None
) -> StoreSettings:
    """Build :class:`StoreSettings` from an optional YAML file plus overrides.

    Values in the YAML file take precedence over environment variables;
    explicit ``overrides`` take precedence over both.
    """

    raw: Dict[str, Any] = {}
    if config_path is not None:
        raw.update(load_raw_yaml(config_path))
    if overrides:
        raw.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return StoreSettings(**raw)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid store settings: {exc}") from exc
