"""Typed views over the normalized configuration mapping."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from config.controller import CONCURRENCY_RANGE, NODE_TIMEOUT_RANGE_S
from core.retry import BackoffStrategy, RetryPolicy


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) if isinstance(config, Mapping) else None
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class CollectionSettings:
    max_parallel: int = 8
    node_timeout_s: float = 300.0
    parallel: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CollectionSettings":
        cfg = _section(config, "collection")
        low, high = CONCURRENCY_RANGE
        t_low, t_high = NODE_TIMEOUT_RANGE_S
        return cls(
            max_parallel=min(max(int(cfg.get("max_parallel", 8)), low), high),
            node_timeout_s=min(max(float(cfg.get("node_timeout_s", 300.0)), t_low), t_high),
            parallel=bool(cfg.get("parallel", True)),
        )


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    initial_delay_s: float = 2.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0
    jitter_factor: float = 0.1

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetrySettings":
        cfg = _section(config, "retry")
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", 3))),
            initial_delay_s=float(cfg.get("initial_delay_s", 2.0)),
            max_delay_s=float(cfg.get("max_delay_s", 30.0)),
            multiplier=float(cfg.get("multiplier", 2.0)),
            jitter_factor=float(cfg.get("jitter_factor", 0.1)),
        )

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff=BackoffStrategy(
                initial_delay_s=self.initial_delay_s,
                max_delay_s=self.max_delay_s,
                multiplier=self.multiplier,
                jitter_factor=self.jitter_factor,
            ),
        )


@dataclass(frozen=True)
class ClassifierSettings:
    staleness_hours: float = 24.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ClassifierSettings":
        cfg = _section(config, "classifier")
        return cls(staleness_hours=float(cfg.get("staleness_hours", 24.0)))


@dataclass(frozen=True)
class VerificationSettings:
    """Convergence wait, signal weights and verdict thresholds."""

    convergence_wait_s: float = 120.0
    healthy_ratio: float = 0.6
    improved_ratio: float = 0.3
    stale_after_days: float = 7.0
    event_window_hours: float = 1.0
    weights: Mapping[str, float] = field(
        default_factory=lambda: {
            "sync_status": 0.4,
            "active_failures": 0.3,
            "event_log": 0.3,
            "diagnostic": 0.2,
        }
    )
    diagnostic_enabled: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "VerificationSettings":
        cfg = _section(config, "verification")
        defaults = cls()
        weights = dict(defaults.weights)
        raw_weights = cfg.get("weights")
        if isinstance(raw_weights, Mapping):
            for name, value in raw_weights.items():
                weights[str(name)] = max(0.0, float(value))
        healthy_ratio = float(cfg.get("healthy_ratio", defaults.healthy_ratio))
        improved_ratio = min(float(cfg.get("improved_ratio", defaults.improved_ratio)), healthy_ratio)
        return cls(
            convergence_wait_s=max(0.0, float(cfg.get("convergence_wait_s", defaults.convergence_wait_s))),
            healthy_ratio=healthy_ratio,
            improved_ratio=improved_ratio,
            stale_after_days=float(cfg.get("stale_after_days", defaults.stale_after_days)),
            event_window_hours=float(cfg.get("event_window_hours", defaults.event_window_hours)),
            weights=weights,
            diagnostic_enabled=bool(cfg.get("diagnostic_enabled", defaults.diagnostic_enabled)),
        )


@dataclass(frozen=True)
class StorageSettings:
    state_dir: Path = Path("./var/")
    log_dir: Path = Path("./log/")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "StorageSettings":
        cfg = _section(config, "storage")
        return cls(
            state_dir=Path(str(cfg.get("state_dir", "./var/"))).expanduser(),
            log_dir=Path(str(cfg.get("log_dir", "./log/"))).expanduser(),
        )

    @property
    def audit_file(self) -> Path:
        return self.state_dir / "audit.jsonl"

    @property
    def cache_file(self) -> Path:
        return self.state_dir / "delta_cache.json"

    @property
    def rollback_dir(self) -> Path:
        return self.state_dir / "rollback"


@dataclass(frozen=True)
class CacheSettings:
    enabled: bool = True
    max_age_hours: float = 24.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CacheSettings":
        cfg = _section(config, "cache")
        return cls(
            enabled=bool(cfg.get("enabled", True)),
            max_age_hours=max(0.0, float(cfg.get("max_age_hours", 24.0))),
        )

    @property
    def max_age_s(self) -> float:
        return self.max_age_hours * 3600.0


@dataclass(frozen=True)
class OrchestratorSettings:
    """All typed settings for one orchestrator instance."""

    collection: CollectionSettings = field(default_factory=CollectionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    policy_name: str = "conservative"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "OrchestratorSettings":
        healing_cfg = _section(config, "healing")
        return cls(
            collection=CollectionSettings.from_config(config),
            retry=RetrySettings.from_config(config),
            classifier=ClassifierSettings.from_config(config),
            verification=VerificationSettings.from_config(config),
            storage=StorageSettings.from_config(config),
            cache=CacheSettings.from_config(config),
            policy_name=str(healing_cfg.get("policy", "conservative")).lower(),
        )
