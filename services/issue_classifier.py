"""Map snapshots to typed, severity-ranked replication issues."""

from __future__ import annotations

import math
from typing import Iterable

from core.models import (
    Issue,
    IssueCategory,
    Severity,
    Snapshot,
    SnapshotStatus,
)


DEFAULT_STALENESS_HOURS = 24.0


def classify_snapshot(
    snapshot: Snapshot,
    now: float,
    staleness_hours: float = DEFAULT_STALENESS_HOURS,
) -> list[Issue]:
    issues: list[Issue] = []
    node = snapshot.node

    if snapshot.status in (SnapshotStatus.FAILED, SnapshotStatus.UNREACHABLE):
        reason = snapshot.error or snapshot.status.value
        issues.append(
            Issue(
                node=node,
                category=IssueCategory.CONNECTIVITY,
                severity=Severity.HIGH,
                description=f"{node.name} {snapshot.status.value}: {reason}",
                actionable=False,
            )
        )

    for failure in snapshot.failures:
        issues.append(
            Issue(
                node=node,
                category=IssueCategory.ACTIVE_FAILURE,
                severity=Severity.HIGH,
                description=(
                    f"{failure.failure_type} failure from {failure.partner} "
                    f"({failure.failure_count}x, error {failure.last_error})"
                ),
                partner=failure.partner,
                error_code=failure.last_error,
            )
        )

    for link in snapshot.partners:
        hours = link.hours_since_success(now)
        if hours <= staleness_hours:
            continue
        age = "never" if math.isinf(hours) else f"{hours:.1f}h ago"
        issues.append(
            Issue(
                node=node,
                category=IssueCategory.STALENESS,
                severity=Severity.MEDIUM,
                description=f"{link.partition} from {link.partner} last succeeded {age}",
                partner=link.partner,
                error_code=link.last_result or None,
                partition=link.partition,
            )
        )

    return issues


def classify(
    snapshots: Iterable[Snapshot],
    now: float,
    staleness_hours: float = DEFAULT_STALENESS_HOURS,
) -> list[Issue]:
    """Classify every snapshot; issues are never merged or deduplicated."""

    issues: list[Issue] = []
    for snapshot in snapshots:
        issues.extend(classify_snapshot(snapshot, now, staleness_hours))
    return issues
