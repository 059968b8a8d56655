"""Tests for snapshot classification rules."""

from __future__ import annotations

from core.models import (
    ActiveFailure,
    IssueCategory,
    NodeRef,
    PartnerLink,
    Severity,
    Snapshot,
    SnapshotStatus,
)
from services.issue_classifier import classify


NOW = 1_700_000_000.0
HOUR = 3600.0


def _snapshot(status=SnapshotStatus.HEALTHY, partners=(), failures=(), error=None) -> Snapshot:
    return Snapshot(
        node=NodeRef("dc1", "hq"),
        captured_at=NOW,
        status=status,
        partners=tuple(partners),
        failures=tuple(failures),
        error=error,
    )


def _link(partner: str, hours_ago: float | None, partition: str = "DC=corp") -> PartnerLink:
    last_success = None if hours_ago is None else NOW - hours_ago * HOUR
    return PartnerLink(
        partner=partner,
        partition=partition,
        last_attempt=NOW,
        last_success=last_success,
    )


def test_healthy_snapshot_has_no_issues() -> None:
    assert classify([_snapshot(partners=[_link("dc2", 1.0)])], NOW) == []


def test_unreachable_node_yields_one_non_actionable_connectivity_issue() -> None:
    issues = classify([_snapshot(SnapshotStatus.UNREACHABLE, error="RPC server unavailable")], NOW)

    assert len(issues) == 1
    issue = issues[0]
    assert issue.category is IssueCategory.CONNECTIVITY
    assert issue.severity is Severity.HIGH
    assert issue.actionable is False
    assert "RPC server unavailable" in issue.description


def test_each_active_failure_is_its_own_issue() -> None:
    failures = [
        ActiveFailure("dc2", "link", 3, NOW - HOUR, 1722),
        ActiveFailure("dc2", "link", 1, NOW - HOUR, 8606),
    ]
    issues = classify([_snapshot(SnapshotStatus.DEGRADED, failures=failures)], NOW)

    assert [issue.category for issue in issues] == [IssueCategory.ACTIVE_FAILURE] * 2
    assert [issue.error_code for issue in issues] == [1722, 8606]
    assert all(issue.severity is Severity.HIGH and issue.actionable for issue in issues)


def test_staleness_uses_threshold_and_carries_partition() -> None:
    partners = [_link("dc2", 25.0, "DC=corp"), _link("dc3", 23.0), _link("dc4", None, "CN=Schema")]

    issues = classify([_snapshot(partners=partners)], NOW, staleness_hours=24.0)

    assert [(issue.partner, issue.partition) for issue in issues] == [
        ("dc2", "DC=corp"),
        ("dc4", "CN=Schema"),
    ]
    assert all(issue.category is IssueCategory.STALENESS for issue in issues)
    assert all(issue.severity is Severity.MEDIUM for issue in issues)
    assert "never" in issues[1].description


def test_classification_is_pure_and_repeatable() -> None:
    snapshot = _snapshot(
        SnapshotStatus.DEGRADED,
        partners=[_link("dc2", 48.0)],
        failures=[ActiveFailure("dc3", "link", 2, NOW - HOUR, 1256)],
    )

    first = classify([snapshot], NOW)
    second = classify([snapshot], NOW)

    assert set(first) == set(second)
    assert len(first) == 2


def test_issues_are_not_merged_across_snapshots() -> None:
    snapshot = _snapshot(partners=[_link("dc2", 48.0)])

    issues = classify([snapshot, snapshot], NOW)

    assert len(issues) == 2
