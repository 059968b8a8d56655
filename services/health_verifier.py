"""Weighted multi-signal verification of node health after remediation."""

from __future__ import annotations

import time
from typing import Callable, Collection, Iterable, Sequence

from config.settings import VerificationSettings
from core.logging import logger as LOGGER
from core.models import (
    HealthVerdict,
    MethodResult,
    NodeRef,
    VerificationOutcome,
    VerificationResult,
)
from replication.interfaces import ReplicationCommandClient, ReplicationQueryClient


SYNC_STATUS = "sync_status"
ACTIVE_FAILURES = "active_failures"
EVENT_LOG = "event_log"
DIAGNOSTIC = "diagnostic"

ERROR_MARKERS = ("error", "fail", "denied")
SUCCESS_MARKERS = ("was successful", "succeeded")

SECONDS_PER_DAY = 86400.0


def count_markers(text: str) -> tuple[int, int]:
    """Return ``(successes, errors)`` counted per line of verification output.

    A line carrying a success marker counts as a success even if it also
    mentions failures (e.g. "0 consecutive failure(s)").
    """

    successes = 0
    errors = 0
    for line in text.lower().splitlines():
        if any(marker in line for marker in SUCCESS_MARKERS):
            successes += 1
        elif any(marker in line for marker in ERROR_MARKERS):
            errors += 1
    return successes, errors


def score(
    methods: Sequence[MethodResult],
    *,
    healthy_ratio: float = 0.6,
    improved_ratio: float = 0.3,
    had_issues: bool = False,
) -> tuple[float, float, float, HealthVerdict, bool]:
    """Combine signal results into ``(achieved, total, ratio, verdict, improved)``."""

    available = [m for m in methods if m.available]
    total = sum(m.weight for m in available)
    achieved = sum(m.achieved for m in available)
    if not available or total <= 0:
        return 0.0, 0.0, 0.0, HealthVerdict.UNKNOWN, False
    # Rounded so summed float weights compare cleanly against the thresholds.
    ratio = round(min(max(achieved / total, 0.0), 1.0), 6)
    if ratio >= healthy_ratio:
        return achieved, total, ratio, HealthVerdict.HEALTHY, False
    if ratio >= improved_ratio:
        return achieved, total, ratio, HealthVerdict.DEGRADED, had_issues
    return achieved, total, ratio, HealthVerdict.FAILED, False


class HealthVerifier:
    """Re-checks nodes after a convergence wait using weighted signals."""

    def __init__(
        self,
        query_client: ReplicationQueryClient,
        command_client: ReplicationCommandClient,
        settings: VerificationSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._query = query_client
        self._command = command_client
        self._settings = settings or VerificationSettings()
        self._clock = clock
        self._sleep = sleep

    @property
    def settings(self) -> VerificationSettings:
        return self._settings

    def verify(
        self,
        nodes: Iterable[NodeRef],
        had_issues: Collection[str] = (),
        *,
        wait: bool = True,
    ) -> list[VerificationResult]:
        nodes = list(nodes)
        if not nodes:
            return []
        wait_s = self._settings.convergence_wait_s
        if wait and wait_s > 0:
            LOGGER.info("[Verify] Waiting %.0fs for replication to converge", wait_s)
            self._sleep(wait_s)
        flagged = {name.lower() for name in had_issues}
        return [self.verify_node(node, node.name.lower() in flagged) for node in nodes]

    def verify_node(self, node: NodeRef, had_issues: bool = False) -> VerificationResult:
        now = self._clock()
        methods = (
            self._run_signal(SYNC_STATUS, node, lambda: self._check_sync_status(node)),
            self._run_signal(ACTIVE_FAILURES, node, lambda: self._check_active_failures(node, now)),
            self._run_signal(EVENT_LOG, node, lambda: self._check_event_log(node, now)),
            self._run_signal(DIAGNOSTIC, node, lambda: self._check_diagnostic(node)),
        )
        achieved, total, ratio, verdict, improved = score(
            methods,
            healthy_ratio=self._settings.healthy_ratio,
            improved_ratio=self._settings.improved_ratio,
            had_issues=had_issues,
        )
        LOGGER.info(
            "[Verify] %s: %s (%.2f = %.2f/%.2f)%s",
            node.name,
            verdict.value,
            ratio,
            achieved,
            total,
            " improved" if improved else "",
        )
        return VerificationResult(
            node=node,
            methods=methods,
            achieved_weight=achieved,
            total_weight=total,
            ratio=ratio,
            verdict=verdict,
            had_issues=had_issues,
            improved=improved,
        )

    def _weight(self, method: str) -> float:
        return float(self._settings.weights.get(method, 0.0))

    def _run_signal(
        self,
        method: str,
        node: NodeRef,
        check: Callable[[], tuple[VerificationOutcome, dict[str, int], tuple[str, ...]]],
    ) -> MethodResult:
        weight = self._weight(method)
        try:
            outcome, counters, notes = check()
        except Exception as exc:  # noqa: BLE001 - a broken signal is skipped, not fatal
            LOGGER.warning("[Verify] %s signal %s unavailable: %s", node.name, method, exc)
            return MethodResult(method, VerificationOutcome.SKIPPED, weight, notes=(f"unavailable: {exc}",))
        LOGGER.debug("[Verify] %s %s -> %s %s", node.name, method, outcome.value, counters)
        return MethodResult(method, outcome, weight, counters=counters, notes=notes)

    def _check_sync_status(self, node: NodeRef):
        text = self._command.invoke_verification_query(node.name)
        if text is None:
            return VerificationOutcome.SKIPPED, {}, ("no verification output",)
        successes, errors = count_markers(text)
        counters = {"successes": successes, "errors": errors}
        if errors:
            return VerificationOutcome.FAIL, counters, ()
        if successes:
            return VerificationOutcome.PASS, counters, ()
        return VerificationOutcome.INCONCLUSIVE, counters, ("no success or error markers",)

    def _check_active_failures(self, node: NodeRef, now: float):
        failures = self._query.query_active_failures(node.name)
        stale_before = now - self._settings.stale_after_days * SECONDS_PER_DAY
        current = 0
        notes: list[str] = []
        for failure in failures:
            if failure.first_failure is not None and failure.first_failure < stale_before:
                notes.append(f"stale failure from {failure.partner} ({failure.failure_type})")
                continue
            current += 1
        counters = {"current": current, "stale": len(notes)}
        outcome = VerificationOutcome.FAIL if current else VerificationOutcome.PASS
        return outcome, counters, tuple(notes)

    def _check_event_log(self, node: NodeRef, now: float):
        since = now - self._settings.event_window_hours * 3600.0
        events = self._command.scan_event_log(node.name, since)
        if events is None:
            return VerificationOutcome.SKIPPED, {}, ("event log not available",)
        stale_before = now - self._settings.stale_after_days * SECONDS_PER_DAY
        current = 0
        notes: list[str] = []
        for event in events:
            if not event.is_error:
                continue
            if event.timestamp < stale_before:
                notes.append(f"stale event {event.event_id}")
                continue
            current += 1
        counters = {"errors": current, "stale": len(notes)}
        outcome = VerificationOutcome.FAIL if current else VerificationOutcome.PASS
        return outcome, counters, tuple(notes)

    def _check_diagnostic(self, node: NodeRef):
        if not self._settings.diagnostic_enabled:
            return VerificationOutcome.SKIPPED, {}, ("diagnostic disabled",)
        result = self._command.run_diagnostic(node.name)
        if result is None:
            return VerificationOutcome.SKIPPED, {}, ("diagnostic not available",)
        counters = {"exit_code": result.exit_code}
        if result.succeeded:
            return VerificationOutcome.PASS, counters, ()
        return VerificationOutcome.FAIL, counters, (result.first_line(),)
