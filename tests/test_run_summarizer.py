"""Tests for run summaries and exit status precedence."""

from __future__ import annotations

from core.models import (
    ExitStatus,
    HealingAction,
    HealthVerdict,
    Issue,
    IssueCategory,
    NodeRef,
    RunMode,
    Severity,
    Snapshot,
    SnapshotStatus,
    VerificationResult,
)
from core.run_context import RunContext
from services.run_summarizer import count_nodes, resolved_issues, summarize


NOW = 1_700_000_000.0


def _issue(node: str = "dc1") -> Issue:
    return Issue(NodeRef(node), IssueCategory.STALENESS, Severity.MEDIUM, f"stale on {node}", partner="dc9")


def _action(issue: Issue, success: bool = True, dry_run: bool = False) -> HealingAction:
    return HealingAction(
        action_id=f"id-{issue.node.name}",
        node=issue.node.name,
        category=issue.category,
        severity=issue.severity,
        issue_description=issue.description,
        method="sync_partition",
        success=success,
        message="",
        timestamp=NOW,
        policy="conservative",
        rollback_available=True,
        dry_run=dry_run,
    )


def _verification(node: str, verdict: HealthVerdict) -> VerificationResult:
    return VerificationResult(NodeRef(node), (), 1.0, 1.0, 1.0, verdict)


def _snapshots(*statuses: SnapshotStatus) -> list[Snapshot]:
    return [Snapshot(NodeRef(f"dc{i}"), NOW, status) for i, status in enumerate(statuses)]


def test_count_nodes_treats_failed_as_unreachable() -> None:
    counts = count_nodes(
        _snapshots(SnapshotStatus.HEALTHY, SnapshotStatus.DEGRADED, SnapshotStatus.FAILED, SnapshotStatus.UNREACHABLE)
    )

    assert counts == (1, 1, 2)


def test_resolution_needs_real_success_and_healthy_verification() -> None:
    fixed, failed, previewed, unverified = _issue("dc1"), _issue("dc2"), _issue("dc3"), _issue("dc4")
    actions = [_action(fixed), _action(failed, success=False), _action(previewed, dry_run=True), _action(unverified)]
    verifications = [_verification("dc1", HealthVerdict.HEALTHY), _verification("dc4", HealthVerdict.DEGRADED)]

    resolved = resolved_issues([fixed, failed, previewed, unverified], actions, verifications)

    assert resolved == [fixed]


def test_clean_run_is_success() -> None:
    summary = summarize(RunContext(mode=RunMode.HEAL), scope_description="nodes", snapshots=_snapshots(SnapshotStatus.HEALTHY))

    assert summary.exit_status is ExitStatus.SUCCESS
    assert summary.healthy == 1


def test_unreachable_outranks_issues() -> None:
    summary = summarize(
        RunContext(mode=RunMode.AUDIT),
        scope_description="nodes",
        snapshots=_snapshots(SnapshotStatus.DEGRADED, SnapshotStatus.UNREACHABLE),
        issues=[_issue("dc0")],
    )

    assert summary.exit_status is ExitStatus.UNREACHABLE_DETECTED
    assert summary.unresolved_issue_count == 1


def test_audit_mode_never_resolves_issues() -> None:
    issue = _issue()
    summary = summarize(
        RunContext(mode=RunMode.AUDIT),
        scope_description="nodes",
        issues=[issue],
        actions=[_action(issue)],
    )

    assert summary.exit_status is ExitStatus.ISSUES_REMAIN


def test_fatal_outranks_everything() -> None:
    context = RunContext(mode=RunMode.HEAL)
    context.mark_fatal("backend exploded")

    summary = summarize(context, scope_description="nodes", snapshots=_snapshots(SnapshotStatus.UNREACHABLE))

    assert summary.exit_status is ExitStatus.FATAL_ERROR
    assert summary.fatal_error == "backend exploded"


def test_cancelled_scope() -> None:
    summary = summarize(RunContext(mode=RunMode.HEAL), scope_description="fleet", cancelled=True)

    assert summary.exit_status is ExitStatus.CANCELLED
    assert summary.total_nodes == 0
