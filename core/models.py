"""Models for replication health collection, healing and verification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
import math
from typing import Mapping


SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class NodeRef:
    """Resolved replication node identity."""

    name: str
    site: str | None = None

    def __str__(self) -> str:
        return self.name


class SnapshotStatus(str, Enum):
    """Collection outcome for a single node."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


@dataclass(frozen=True)
class PartnerLink:
    """Inbound replication link reported by a node."""

    partner: str
    partition: str
    last_attempt: float | None
    last_success: float | None
    last_result: int = 0
    consecutive_failures: int = 0

    def hours_since_success(self, now: float) -> float:
        if self.last_success is None:
            return math.inf
        return max(0.0, (now - self.last_success) / SECONDS_PER_HOUR)


@dataclass(frozen=True)
class ActiveFailure:
    """Outstanding replication failure record."""

    partner: str
    failure_type: str
    failure_count: int
    first_failure: float | None
    last_error: int


@dataclass(frozen=True)
class Snapshot:
    """Replication state captured for one node in one cycle."""

    node: NodeRef
    captured_at: float
    status: SnapshotStatus
    partners: tuple[PartnerLink, ...] = ()
    failures: tuple[ActiveFailure, ...] = ()
    error: str | None = None
    attempts: int = 1


class IssueCategory(str, Enum):
    """Closed taxonomy of replication issues."""

    CONNECTIVITY = "connectivity"
    ACTIVE_FAILURE = "active_failure"
    STALENESS = "staleness"


class Severity(str, Enum):
    """Issue severity, ordered from least to most severe."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class Issue:
    """Typed replication issue produced fresh every cycle."""

    node: NodeRef
    category: IssueCategory
    severity: Severity
    description: str
    partner: str | None = None
    error_code: int | None = None
    partition: str | None = None
    actionable: bool = True

    def __post_init__(self) -> None:
        # Connectivity problems are never repaired unattended.
        if self.category is IssueCategory.CONNECTIVITY and self.actionable:
            object.__setattr__(self, "actionable", False)

    @property
    def key(self) -> str:
        return ":".join(
            [
                self.node.name,
                self.category.value,
                self.partner or "-",
                self.partition or "-",
            ]
        )


@dataclass(frozen=True)
class HealingAction:
    """Append-only audit record for one attempted remediation."""

    action_id: str
    node: str
    category: IssueCategory
    severity: Severity
    issue_description: str
    method: str
    success: bool
    message: str
    timestamp: float
    policy: str
    rollback_available: bool
    dry_run: bool = False
    compensates: str | None = None

    def to_record(self) -> dict[str, object]:
        return {
            "action_id": self.action_id,
            "node": self.node,
            "category": self.category.value,
            "severity": self.severity.value,
            "issue_description": self.issue_description,
            "method": self.method,
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp,
            "policy": self.policy,
            "rollback_available": self.rollback_available,
            "dry_run": self.dry_run,
            "compensates": self.compensates,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, object]) -> "HealingAction":
        compensates = record.get("compensates")
        return cls(
            action_id=str(record["action_id"]),
            node=str(record["node"]),
            category=IssueCategory(str(record["category"])),
            severity=Severity(str(record["severity"])),
            issue_description=str(record.get("issue_description", "")),
            method=str(record.get("method", "")),
            success=bool(record.get("success", False)),
            message=str(record.get("message", "")),
            timestamp=float(record.get("timestamp", 0.0)),
            policy=str(record.get("policy", "")),
            rollback_available=bool(record.get("rollback_available", False)),
            dry_run=bool(record.get("dry_run", False)),
            compensates=str(compensates) if compensates else None,
        )


@dataclass(frozen=True)
class HealingPolicy:
    """Named risk tier governing unattended remediation."""

    name: str
    allowed_categories: frozenset[IssueCategory]
    allowed_severities: frozenset[Severity]
    manual_approval_categories: frozenset[IssueCategory] = frozenset()
    max_actions: int = 5
    cooldown_s: float = 3600.0
    rollback_on_failure: bool = True


class VerificationOutcome(str, Enum):
    """Outcome of a single verification signal."""

    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"
    SKIPPED = "skipped"


class HealthVerdict(str, Enum):
    """Overall post-remediation verdict for a node."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"
    FAILED = "failed"


@dataclass(frozen=True)
class MethodResult:
    """Result of one weighted verification signal."""

    method: str
    outcome: VerificationOutcome
    weight: float
    counters: Mapping[str, int] = field(default_factory=dict)
    notes: tuple[str, ...] = ()

    @property
    def available(self) -> bool:
        return self.outcome is not VerificationOutcome.SKIPPED

    @property
    def achieved(self) -> float:
        return self.weight if self.outcome is VerificationOutcome.PASS else 0.0


@dataclass(frozen=True)
class VerificationResult:
    """Weighted verification verdict for one node."""

    node: NodeRef
    methods: tuple[MethodResult, ...]
    achieved_weight: float
    total_weight: float
    ratio: float
    verdict: HealthVerdict
    had_issues: bool = False
    improved: bool = False


@dataclass(frozen=True)
class CacheRecord:
    """Persisted outcome of the previous run, used to narrow the next one."""

    timestamp: float
    total_nodes: int
    degraded: tuple[str, ...] = ()
    unreachable: tuple[str, ...] = ()
    issue_nodes: tuple[str, ...] = ()
    targets: tuple[str, ...] = ()
    issue_count: int = 0
    mode: str = "full"


class RunMode(str, Enum):
    """What a single orchestration cycle is allowed to do."""

    AUDIT = "audit"
    HEAL = "heal"
    VERIFY = "verify"


class ExitStatus(IntEnum):
    """Bounded exit status reported to collaborators."""

    SUCCESS = 0
    ISSUES_REMAIN = 1
    UNREACHABLE_DETECTED = 2
    FATAL_ERROR = 3
    CANCELLED = 4


@dataclass(frozen=True)
class RunSummary:
    """Immutable summary of one orchestration cycle."""

    run_id: str
    mode: RunMode
    scope_description: str
    total_nodes: int
    healthy: int
    degraded: int
    unreachable: int
    issue_count: int
    action_count: int
    exit_status: ExitStatus
    elapsed_s: float
    delta_mode: str = "full"
    deferred_count: int = 0
    unresolved_issue_count: int = 0
    fatal_error: str | None = None


@dataclass(frozen=True)
class RunResult:
    """Summary plus the full collections produced by a cycle."""

    summary: RunSummary
    snapshots: tuple[Snapshot, ...] = ()
    issues: tuple[Issue, ...] = ()
    actions: tuple[HealingAction, ...] = ()
    verifications: tuple[VerificationResult, ...] = ()
    events: tuple["RunEvent", ...] = ()


@dataclass(frozen=True)
class RunEvent:
    """Event recorded during a cycle."""

    timestamp: float
    event_type: str
    message: str
    metadata: Mapping[str, str | float | int] = field(default_factory=dict)
