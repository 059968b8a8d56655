"""Delta cache: remember unhealthy nodes so the next run can skip healthy ones."""

from __future__ import annotations

from dataclasses import dataclass, asdict
import json
from pathlib import Path
import time
from typing import Iterable, Sequence

from core.logging import logger as LOGGER
from core.models import CacheRecord, Issue, NodeRef, Snapshot, SnapshotStatus
from storage.rollback_store import atomic_write_json


FULL = "full"
DELTA = "delta"


@dataclass(frozen=True)
class DeltaDecision:
    """Target set chosen for a run and why."""

    targets: tuple[NodeRef, ...]
    mode: str
    reason: str


class DeltaCache:
    """Single JSON record, atomically replaced after every completed run."""

    def __init__(self, path: Path, max_age_s: float = 24 * 3600.0) -> None:
        self._path = Path(path)
        self._max_age_s = float(max_age_s)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, now: float | None = None) -> CacheRecord | None:
        """Return the cached record, or None when missing, unreadable or expired."""

        if not self._path.exists():
            return None
        now = time.time() if now is None else now
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            record = CacheRecord(
                timestamp=float(payload["timestamp"]),
                total_nodes=int(payload.get("total_nodes", 0)),
                degraded=tuple(payload.get("degraded") or ()),
                unreachable=tuple(payload.get("unreachable") or ()),
                issue_nodes=tuple(payload.get("issue_nodes") or ()),
                targets=tuple(payload.get("targets") or ()),
                issue_count=int(payload.get("issue_count", 0)),
                mode=str(payload.get("mode", FULL)),
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("[Delta] Ignoring unreadable cache %s: %s", self._path, exc)
            return None
        age_s = now - record.timestamp
        if age_s > self._max_age_s:
            LOGGER.info(
                "[Delta] Cache is %.1fh old (limit %.1fh); treating as absent",
                age_s / 3600.0,
                self._max_age_s / 3600.0,
            )
            return None
        return record

    def save(self, record: CacheRecord) -> None:
        payload = asdict(record)
        for key in ("degraded", "unreachable", "issue_nodes", "targets"):
            payload[key] = list(payload[key])
        atomic_write_json(self._path, payload)
        LOGGER.info("[Delta] Saved cache with %d target(s) to %s", len(record.targets), self._path)

    def resolve_targets(
        self,
        scope_nodes: Sequence[NodeRef],
        *,
        force_full: bool = False,
        now: float | None = None,
    ) -> DeltaDecision:
        full_scope = tuple(scope_nodes)
        if force_full:
            return DeltaDecision(full_scope, FULL, "full scan forced")

        record = self.load(now)
        if record is None:
            return DeltaDecision(full_scope, FULL, "no valid cache")
        if record.issue_count == 0:
            return DeltaDecision(full_scope, FULL, "previous run found no issues")

        by_key = {node.name.lower(): node for node in full_scope}
        missing = [name for name in record.targets if name.lower() not in by_key]
        if missing:
            return DeltaDecision(
                full_scope,
                FULL,
                f"cached node(s) outside current scope: {', '.join(missing)}",
            )

        wanted = {name.lower() for name in record.targets}
        targets = tuple(node for node in full_scope if node.name.lower() in wanted)
        if not targets:
            return DeltaDecision(full_scope, FULL, "cache has no targets")
        return DeltaDecision(targets, DELTA, f"{len(targets)} node(s) flagged by previous run")


def build_record(
    snapshots: Iterable[Snapshot],
    issues: Iterable[Issue],
    *,
    now: float,
    mode: str = FULL,
    still_unhealthy: Iterable[str] = (),
) -> CacheRecord:
    """Compute the next-run target set from this run's results.

    ``still_unhealthy`` adds nodes whose post-repair verification did not
    come back healthy.
    """

    snapshots = list(snapshots)
    issues = list(issues)
    degraded = sorted({s.node.name for s in snapshots if s.status is SnapshotStatus.DEGRADED})
    unreachable = sorted(
        {
            s.node.name
            for s in snapshots
            if s.status in (SnapshotStatus.UNREACHABLE, SnapshotStatus.FAILED)
        }
    )
    issue_nodes = sorted({issue.node.name for issue in issues})
    targets = sorted(set(degraded) | set(unreachable) | set(issue_nodes) | set(still_unhealthy))
    return CacheRecord(
        timestamp=now,
        total_nodes=len(snapshots),
        degraded=tuple(degraded),
        unreachable=tuple(unreachable),
        issue_nodes=tuple(issue_nodes),
        targets=tuple(targets),
        issue_count=len(issues),
        mode=mode,
    )
