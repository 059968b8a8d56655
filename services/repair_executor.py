"""Maps eligible issues to synchronization commands and runs them."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from core.errors import CommandError, ReplicationError
from core.logging import logger as LOGGER
from core.models import Issue, IssueCategory
from core.retry import RetryPolicy, retry_call
from replication.interfaces import CommandResult, ReplicationCommandClient


@dataclass(frozen=True)
class RepairOutcome:
    method: str
    success: bool
    message: str
    rollback_available: bool = False


class RepairExecutor:
    """Issues replication syncs for eligible issues.

    Success is decided by the command's exit status alone; the output text is
    only kept as the action message.
    """

    SYNC_PARTITION = "sync_partition"
    SYNC_FROM_PARTNER = "sync_from_partner"
    COMPENSATION_METHOD = "sync_all"
    NO_METHOD = "none"

    _METHODS = {
        IssueCategory.STALENESS: SYNC_PARTITION,
        IssueCategory.ACTIVE_FAILURE: SYNC_FROM_PARTNER,
    }

    class UnsupportedIssue(Exception):
        """No remediation method exists for this issue."""

    def __init__(
        self,
        client: ReplicationCommandClient,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def method_for(self, issue: Issue) -> str:
        return self._METHODS.get(issue.category, self.NO_METHOD)

    def repair(self, issue: Issue, *, dry_run: bool = False) -> RepairOutcome:
        try:
            method, partner, partition = self._plan(issue)
        except self.UnsupportedIssue as exc:
            LOGGER.warning("[Repair] %s: %s", issue.key, exc)
            return RepairOutcome(self.NO_METHOD, False, str(exc))

        if dry_run:
            LOGGER.info("[Repair] [dry-run] Would run %s on %s", method, issue.node.name)
            return RepairOutcome(
                method,
                True,
                f"[dry-run] {method} on {issue.node.name} skipped",
                rollback_available=True,
            )
        return self._invoke(method, issue.node.name, partner, partition)

    def compensate(self, node: str, *, dry_run: bool = False) -> RepairOutcome:
        """Re-drive full convergence on ``node``; safe to repeat."""

        if dry_run:
            return RepairOutcome(
                self.COMPENSATION_METHOD,
                True,
                f"[dry-run] {self.COMPENSATION_METHOD} on {node} skipped",
            )
        outcome = self._invoke(self.COMPENSATION_METHOD, node, None, None)
        return RepairOutcome(outcome.method, outcome.success, outcome.message)

    def _plan(self, issue: Issue) -> tuple[str, str | None, str | None]:
        method = self.method_for(issue)
        if method == self.SYNC_PARTITION:
            if not issue.partner:
                raise self.UnsupportedIssue("staleness issue has no partner link")
            return method, issue.partner, issue.partition
        if method == self.SYNC_FROM_PARTNER:
            if not issue.partner:
                raise self.UnsupportedIssue("active failure has no partner")
            return method, issue.partner, None
        raise self.UnsupportedIssue(f"no repair method for {issue.category.value} issues")

    def _invoke(
        self,
        method: str,
        node: str,
        partner: str | None,
        partition: str | None,
    ) -> RepairOutcome:
        target = partner or "all partners"
        if partition:
            target = f"{target} ({partition})"
        LOGGER.info("[Repair] %s on %s from %s", method, node, target)
        try:
            result, attempts = retry_call(
                lambda: self._client.invoke_sync(node, partner, partition),
                self._retry_policy,
                describe=f"{method} {node}",
                sleep=self._sleep,
            )
        except (ReplicationError, CommandError) as exc:
            LOGGER.error("[Repair] %s on %s failed: %s", method, node, exc)
            return RepairOutcome(method, False, str(exc), rollback_available=True)
        return self._outcome(method, node, result, attempts)

    def _outcome(self, method: str, node: str, result: CommandResult, attempts: int) -> RepairOutcome:
        detail = result.first_line()
        if result.succeeded:
            message = detail or f"{method} completed"
            LOGGER.info("[Repair] %s on %s succeeded after %d attempt(s)", method, node, attempts)
            return RepairOutcome(method, True, message, rollback_available=True)
        message = detail or f"{method} exited with status {result.exit_code}"
        LOGGER.warning("[Repair] %s on %s exited %d: %s", method, node, result.exit_code, message)
        return RepairOutcome(method, False, message, rollback_available=True)
