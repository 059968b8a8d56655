"""Aggregate one cycle's collections into a RunSummary and exit status."""

from __future__ import annotations

from typing import Iterable, Sequence

from core.logging import logger as LOGGER
from core.models import (
    ExitStatus,
    HealingAction,
    HealthVerdict,
    Issue,
    RunMode,
    RunSummary,
    Snapshot,
    SnapshotStatus,
    VerificationResult,
)
from core.run_context import RunContext


def _issue_token(node: str, category: str, description: str) -> tuple[str, str, str]:
    return node.lower(), category, description


def resolved_issues(
    issues: Iterable[Issue],
    actions: Iterable[HealingAction],
    verifications: Iterable[VerificationResult] = (),
) -> list[Issue]:
    """Issues repaired by a real, successful action on a node that verified healthy."""

    repaired = {
        _issue_token(a.node, a.category.value, a.issue_description)
        for a in actions
        if a.compensates is None and a.success and not a.dry_run
    }
    unhealthy = {
        v.node.name.lower() for v in verifications if v.verdict is not HealthVerdict.HEALTHY
    }
    return [
        issue
        for issue in issues
        if _issue_token(issue.node.name, issue.category.value, issue.description) in repaired
        and issue.node.name.lower() not in unhealthy
    ]


def count_nodes(snapshots: Iterable[Snapshot]) -> tuple[int, int, int]:
    """Return ``(healthy, degraded, unreachable)``; failed collections count as unreachable."""

    healthy = degraded = unreachable = 0
    for snapshot in snapshots:
        if snapshot.status is SnapshotStatus.HEALTHY:
            healthy += 1
        elif snapshot.status is SnapshotStatus.DEGRADED:
            degraded += 1
        else:
            unreachable += 1
    return healthy, degraded, unreachable


def summarize(
    context: RunContext,
    *,
    scope_description: str,
    snapshots: Sequence[Snapshot] = (),
    issues: Sequence[Issue] = (),
    actions: Sequence[HealingAction] = (),
    verifications: Sequence[VerificationResult] = (),
    deferred_count: int = 0,
    delta_mode: str = "full",
    cancelled: bool = False,
) -> RunSummary:
    healthy, degraded, unreachable = count_nodes(snapshots)
    resolved = resolved_issues(issues, actions, verifications) if context.mode is RunMode.HEAL else []
    unresolved = len(issues) - len(resolved)

    if cancelled and context.fatal_error is None:
        exit_status = ExitStatus.CANCELLED
    else:
        if unreachable:
            context.escalate(ExitStatus.UNREACHABLE_DETECTED)
        if unresolved or any(v.verdict is not HealthVerdict.HEALTHY for v in verifications):
            context.escalate(ExitStatus.ISSUES_REMAIN)
        exit_status = context.exit_floor

    summary = RunSummary(
        run_id=context.run_id,
        mode=context.mode,
        scope_description=scope_description,
        total_nodes=len(snapshots),
        healthy=healthy,
        degraded=degraded,
        unreachable=unreachable,
        issue_count=len(issues),
        action_count=len(actions),
        exit_status=exit_status,
        elapsed_s=context.elapsed_s(),
        delta_mode=delta_mode,
        deferred_count=deferred_count,
        unresolved_issue_count=unresolved,
        fatal_error=context.fatal_error,
    )
    LOGGER.info(
        "[Summary] %s run %s: %d node(s) (%d healthy, %d degraded, %d unreachable), "
        "%d issue(s), %d unresolved, %d action(s) -> %s in %.1fs",
        summary.mode.value,
        summary.run_id,
        summary.total_nodes,
        summary.healthy,
        summary.degraded,
        summary.unreachable,
        summary.issue_count,
        summary.unresolved_issue_count,
        summary.action_count,
        summary.exit_status.name,
        summary.elapsed_s,
    )
    return summary
