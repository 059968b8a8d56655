"""Tests for delta cache persistence and target selection."""

from __future__ import annotations

import json
from pathlib import Path

from core.models import (
    ActiveFailure,
    CacheRecord,
    Issue,
    IssueCategory,
    NodeRef,
    Severity,
    Snapshot,
    SnapshotStatus,
)
from storage.delta_cache import DELTA, FULL, DeltaCache, build_record


NOW = 1_700_000_000.0
HOUR = 3600.0

SCOPE = (NodeRef("dc1"), NodeRef("dc2"), NodeRef("dc3"), NodeRef("dc4"))


def _record(targets: tuple[str, ...], issue_count: int = 1, timestamp: float = NOW) -> CacheRecord:
    return CacheRecord(
        timestamp=timestamp,
        total_nodes=4,
        issue_nodes=targets,
        targets=targets,
        issue_count=issue_count,
    )


def test_round_trip(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "state" / "delta_cache.json")
    record = CacheRecord(
        timestamp=NOW,
        total_nodes=3,
        degraded=("dc2",),
        unreachable=("dc3",),
        issue_nodes=("dc2", "dc3"),
        targets=("dc2", "dc3"),
        issue_count=2,
        mode=DELTA,
    )

    cache.save(record)

    assert cache.load(NOW + 60) == record
    assert list(cache.path.parent.glob("*.tmp")) == []


def test_missing_corrupt_and_expired_caches_are_absent(tmp_path: Path) -> None:
    path = tmp_path / "delta_cache.json"
    cache = DeltaCache(path, max_age_s=24 * HOUR)
    assert cache.load(NOW) is None

    path.write_text("{not json", encoding="utf-8")
    assert cache.load(NOW) is None

    cache.save(_record(("dc1",), timestamp=NOW - 25 * HOUR))
    assert cache.load(NOW) is None


def test_force_full_ignores_cache(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "delta_cache.json")
    cache.save(_record(("dc2",)))

    decision = cache.resolve_targets(SCOPE, force_full=True, now=NOW)

    assert decision.mode == FULL
    assert decision.targets == SCOPE


def test_previous_clean_run_means_full_scan(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "delta_cache.json")
    cache.save(_record((), issue_count=0))

    assert cache.resolve_targets(SCOPE, now=NOW).mode == FULL


def test_target_outside_scope_means_full_scan(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "delta_cache.json")
    cache.save(_record(("dc2", "dc9")))

    decision = cache.resolve_targets(SCOPE, now=NOW)

    assert decision.mode == FULL
    assert "dc9" in decision.reason


def test_delta_targets_follow_scope_order(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "delta_cache.json")
    cache.save(_record(("DC4", "dc2")))

    decision = cache.resolve_targets(SCOPE, now=NOW)

    assert decision.mode == DELTA
    assert [node.name for node in decision.targets] == ["dc2", "dc4"]


def test_build_record_unions_unhealthy_nodes() -> None:
    snapshots = [
        Snapshot(NodeRef("dc1"), NOW, SnapshotStatus.HEALTHY),
        Snapshot(
            NodeRef("dc2"),
            NOW,
            SnapshotStatus.DEGRADED,
            failures=(ActiveFailure("dc1", "link", 1, NOW, 1722),),
        ),
        Snapshot(NodeRef("dc3"), NOW, SnapshotStatus.UNREACHABLE, error="down"),
        Snapshot(NodeRef("dc4"), NOW, SnapshotStatus.HEALTHY),
    ]
    issues = [
        Issue(NodeRef("dc4"), IssueCategory.STALENESS, Severity.MEDIUM, "stale", partner="dc1"),
    ]

    record = build_record(snapshots, issues, now=NOW, still_unhealthy=["dc1"])

    assert record.degraded == ("dc2",)
    assert record.unreachable == ("dc3",)
    assert record.issue_nodes == ("dc4",)
    assert record.targets == ("dc1", "dc2", "dc3", "dc4")
    assert record.issue_count == 1
    assert record.total_nodes == 4


def test_saved_file_is_plain_json(tmp_path: Path) -> None:
    cache = DeltaCache(tmp_path / "delta_cache.json")
    cache.save(_record(("dc2",)))

    payload = json.loads(cache.path.read_text(encoding="utf-8"))

    assert payload["targets"] == ["dc2"]
    assert payload["issue_count"] == 1
