"""Tests for configuration loading, normalization and typed settings."""

from __future__ import annotations

from pathlib import Path

from config.controller import ConfigController
from config.settings import OrchestratorSettings


def _reset_singletons() -> None:
    ConfigController._instance = None


def _write_default(tmp_path: Path, lines: list[str]) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "default.yaml").write_text("\n".join(lines), encoding="utf-8")
    return config_dir


def test_collection_bounds_are_clamped(tmp_path: Path, monkeypatch) -> None:
    _write_default(
        tmp_path,
        [
            "collection:",
            "  max_parallel: 100",
            "  node_timeout_s: 5",
        ],
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    cfg = ConfigController.get_instance().get_config()["collection"]

    assert cfg["max_parallel"] == 32
    assert cfg["node_timeout_s"] == 60.0
    assert cfg["parallel"] is True


def test_legacy_flat_keys_are_mapped(tmp_path: Path, monkeypatch) -> None:
    _write_default(
        tmp_path,
        [
            "max_parallel: 4",
            "timeout_s: 600",
            "cache_max_age_hours: 12",
        ],
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    config = ConfigController.get_instance().get_config()

    assert config["collection"]["max_parallel"] == 4
    assert config["collection"]["node_timeout_s"] == 600.0
    assert config["cache"]["max_age_hours"] == 12.0


def test_override_is_deep_merged_and_archived(tmp_path: Path, monkeypatch) -> None:
    config_dir = _write_default(
        tmp_path,
        [
            "healing:",
            "  policy: conservative",
            "classifier:",
            "  staleness_hours: 24",
        ],
    )
    (config_dir / "override.yaml").write_text("classifier:\n  staleness_hours: 6\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    controller = ConfigController.get_instance()
    config = controller.get_config()
    assert config["classifier"]["staleness_hours"] == 6
    assert config["healing"]["policy"] == "conservative"

    config["healing"] = {"policy": "moderate"}
    controller.set_config(config)

    assert (config_dir / "override_0001.yaml").exists()
    _reset_singletons()
    reloaded = ConfigController.get_instance().get_config()
    assert reloaded["healing"]["policy"] == "moderate"


def test_missing_default_uses_builtin_settings(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    settings = OrchestratorSettings.from_config(ConfigController.get_instance().get_config())

    assert settings.collection.max_parallel == 8
    assert settings.policy_name == "conservative"
    assert settings.verification.healthy_ratio == 0.6
    assert settings.storage.audit_file.name == "audit.jsonl"


def test_repository_default_config_parses() -> None:
    _reset_singletons()
    config_dir = Path(__file__).resolve().parents[1] / "config"

    controller = ConfigController(config_dir=config_dir)
    settings = OrchestratorSettings.from_config(controller.get_config())
    _reset_singletons()

    assert settings.retry.max_attempts == 3
    assert settings.verification.weights["sync_status"] == 0.4
    assert settings.verification.diagnostic_enabled is False
    assert settings.cache.max_age_s == 24 * 3600.0
