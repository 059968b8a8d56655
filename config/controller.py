"""Configuration controller for YAML-based settings."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from core.logging import logger as LOGGER


CONCURRENCY_RANGE = (1, 32)
NODE_TIMEOUT_RANGE_S = (60.0, 3600.0)


@dataclass(frozen=True)
class ConfigPaths:
    """Filesystem paths for configuration files."""

    config_dir: Path
    config_file: Path
    override_file: Path


class ConfigController:
    """Singleton controller for loading and updating configuration."""

    _instance: "ConfigController | None" = None

    def __init__(self, config_file: str = "default.yaml", config_dir: Path | None = None) -> None:
        if ConfigController._instance is not None:
            raise RuntimeError("You cannot create another ConfigController class")

        config_dir = Path(config_dir) if config_dir is not None else Path("config")
        self.paths = ConfigPaths(
            config_dir=config_dir,
            config_file=config_dir / config_file,
            override_file=config_dir / "override.yaml",
        )
        self.config: dict[str, Any] = {}
        self.load_config()
        ConfigController._instance = self

    @classmethod
    def get_instance(cls) -> "ConfigController":
        """Return the singleton instance of the controller."""

        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def load_config(self) -> None:
        """Load configuration from default and override YAML files."""

        config: dict[str, Any] = {}
        if self.paths.config_file.exists():
            with self.paths.config_file.open("r", encoding="utf-8") as file:
                config = yaml.safe_load(file) or {}
        else:
            LOGGER.warning("[Config] %s not found; using built-in defaults.", self.paths.config_file)

        if self.paths.override_file.exists():
            with self.paths.override_file.open("r", encoding="utf-8") as file:
                override_config = yaml.safe_load(file) or {}
            if override_config:
                config = self._deep_merge(config, override_config)

        self.config = self._normalize_config(config)

    def save_config(self, config: dict[str, Any]) -> None:
        """Persist configuration to override.yaml, archiving previous overrides."""

        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        if self.paths.override_file.exists():
            archive_index = 1
            archive_file = self._archive_path(archive_index)
            while archive_file.exists():
                archive_index += 1
                archive_file = self._archive_path(archive_index)
            self.paths.override_file.rename(archive_file)

        with self.paths.override_file.open("w", encoding="utf-8") as file:
            yaml.safe_dump(config, file)

    def get_config(self) -> dict[str, Any]:
        """Return the currently loaded configuration."""

        return dict(self.config)

    def set_config(self, config: dict[str, Any]) -> None:
        """Set and persist configuration values."""

        self.config = self._normalize_config(dict(config))
        self.save_config(self.config)

    def _archive_path(self, index: int) -> Path:
        """Return the archive path for a given override index."""

        filename = f"override_{index:04d}.yaml"
        return self.paths.config_dir / filename

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge dictionaries, overriding base values with override values."""

        merged = dict(base)
        for key, value in override.items():
            if (
                key in merged
                and isinstance(merged[key], dict)
                and isinstance(value, dict)
            ):
                merged[key] = self._deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        """Normalize config, clamp ranges and map legacy flat keys."""

        normalized = dict(config)
        collection_cfg = dict(normalized.get("collection") or {})
        cache_cfg = dict(normalized.get("cache") or {})

        concurrency = int(
            collection_cfg.get("max_parallel", normalized.get("max_parallel", 8))
        )
        collection_cfg["max_parallel"] = _clamp(
            "collection.max_parallel", concurrency, *CONCURRENCY_RANGE
        )
        timeout_s = float(
            collection_cfg.get("node_timeout_s", normalized.get("timeout_s", 300.0))
        )
        collection_cfg["node_timeout_s"] = _clamp(
            "collection.node_timeout_s", timeout_s, *NODE_TIMEOUT_RANGE_S
        )
        collection_cfg["parallel"] = bool(collection_cfg.get("parallel", True))

        if "max_age_hours" not in cache_cfg and "cache_max_age_hours" in normalized:
            cache_cfg["max_age_hours"] = normalized["cache_max_age_hours"]
        cache_cfg["max_age_hours"] = max(0.0, float(cache_cfg.get("max_age_hours", 24.0)))
        cache_cfg["enabled"] = bool(cache_cfg.get("enabled", True))

        normalized["collection"] = collection_cfg
        normalized["cache"] = cache_cfg
        return normalized


def _clamp(name: str, value: float, low: float, high: float) -> Any:
    if value < low or value > high:
        clamped = min(max(value, low), high)
        LOGGER.warning("[Config] %s=%s outside [%s, %s]; using %s.", name, value, low, high, clamped)
        return type(value)(clamped)
    return value
