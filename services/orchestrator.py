"""Health orchestration cycle and its periodic background loop."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import threading
import time
from typing import Any, Callable, Mapping, Sequence

from config.settings import OrchestratorSettings
from core.errors import ConfigurationError
from core.gate import ConfirmationGate
from core.logging import logger as LOGGER
from core.models import (
    HealingAction,
    HealingPolicy,
    HealthVerdict,
    Issue,
    NodeRef,
    RunMode,
    RunResult,
    Snapshot,
    SnapshotStatus,
    VerificationResult,
)
from core.run_context import EventSink, RunContext
from replication.command_client import CommandReplicationClient
from replication.interfaces import (
    DirectoryContext,
    ReplicationCommandClient,
    ReplicationQueryClient,
)
from replication.static_backend import StaticReplicationBackend
from services.healing_policy import HealingPolicyEngine, policies_from_config, select_policy
from services.health_verifier import HealthVerifier
from services.issue_classifier import classify
from services.repair_executor import RepairExecutor
from services.run_summarizer import summarize
from services.scope_resolver import ScopeSpec, resolve_scope
from services.snapshot_collector import SnapshotCollector, build_backend
from storage.audit_trail import AuditTrail
from storage.delta_cache import FULL, DeltaCache, DeltaDecision, build_record
from storage.rollback_store import RollbackStore


class HealthOrchestrator:
    """Runs scope → collect → classify → heal → verify → summarize cycles."""

    def __init__(
        self,
        *,
        directory: DirectoryContext,
        query_client: ReplicationQueryClient,
        command_client: ReplicationCommandClient,
        settings: OrchestratorSettings | None = None,
        policies: Mapping[str, HealingPolicy] | None = None,
        gate: ConfirmationGate | None = None,
        audit: AuditTrail | None = None,
        rollback_store: RollbackStore | None = None,
        delta_cache: DeltaCache | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or OrchestratorSettings()
        self._directory = directory
        self._policies = dict(policies) if policies is not None else None
        self._gate = gate or ConfirmationGate()
        storage = self._settings.storage
        self._audit = audit or AuditTrail(storage.audit_file)
        self._rollback_store = rollback_store or RollbackStore(storage.rollback_dir)
        self._delta_cache = delta_cache or DeltaCache(storage.cache_file, self._settings.cache.max_age_s)
        self._clock = clock
        retry_policy = self._settings.retry.to_policy()
        self._collector = SnapshotCollector(
            query_client,
            node_timeout_s=self._settings.collection.node_timeout_s,
            retry_policy=retry_policy,
            backend=build_backend(self._settings.collection.parallel),
            clock=clock,
            sleep=sleep,
        )
        self._executor = RepairExecutor(command_client, retry_policy=retry_policy, sleep=sleep)
        self._verifier = HealthVerifier(
            query_client,
            command_client,
            self._settings.verification,
            clock=clock,
            sleep=sleep,
        )

        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_result: RunResult | None = None
        self._loop_error: ConfigurationError | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        gate: ConfirmationGate | None = None,
        inventory: Path | None = None,
    ) -> "HealthOrchestrator":
        """Build an orchestrator and its backend from the normalized config."""

        settings = OrchestratorSettings.from_config(config)
        policies = policies_from_config(config)
        replication_cfg = config.get("replication") or {}
        backend_name = str(replication_cfg.get("backend", "command")).lower()
        if inventory is None and backend_name == "static":
            inventory_path = replication_cfg.get("inventory")
            if not inventory_path:
                raise ConfigurationError("replication.inventory is required for the static backend")
            inventory = Path(str(inventory_path))

        if inventory is not None:
            LOGGER.info("[Orchestrator] Using static inventory %s", inventory)
            backend = StaticReplicationBackend.from_file(inventory)
        elif backend_name == "command":
            backend = CommandReplicationClient.from_config(config)
        else:
            raise ConfigurationError(f"Unknown replication backend {backend_name!r}")
        return cls(
            directory=backend,
            query_client=backend,
            command_client=backend,
            settings=settings,
            policies=policies,
            gate=gate,
        )

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    @property
    def delta_cache(self) -> DeltaCache:
        return self._delta_cache

    def get_last_result(self) -> RunResult | None:
        with self._lock:
            return self._last_result

    def get_loop_error(self) -> ConfigurationError | None:
        """Configuration error that stopped the background loop, if any."""

        with self._lock:
            return self._loop_error

    def run_once(
        self,
        scope: ScopeSpec,
        mode: RunMode | str = RunMode.HEAL,
        *,
        force_full: bool = False,
        dry_run: bool = False,
        policy_name: str | None = None,
    ) -> RunResult:
        """Run one cycle.

        Raises:
            ConfigurationError: invalid scope, mode or policy; raised before
                any node is contacted.
        """

        mode = self._coerce_mode(mode)
        policy = select_policy(policy_name or self._settings.policy_name, self._policies)
        gate = replace(self._gate, dry_run=self._gate.dry_run or dry_run)
        context = RunContext(mode=mode, dry_run=gate.dry_run)
        LOGGER.info(
            "[Orchestrator] Run %s: mode=%s policy=%s%s",
            context.run_id,
            mode.value,
            policy.name,
            " (dry-run)" if gate.dry_run else "",
        )

        resolution = resolve_scope(scope, self._directory, gate)
        if resolution.cancelled:
            context.record("cancelled", "fleet confirmation declined")
            summary = summarize(context, scope_description=resolution.description, cancelled=True)
            return self._finish(RunResult(summary=summary, events=tuple(context.events)))

        decision = DeltaDecision(resolution.nodes, FULL, "cache disabled")
        snapshots: list[Snapshot] = []
        issues: list[Issue] = []
        actions: list[HealingAction] = []
        verifications: list[VerificationResult] = []
        deferred = 0
        try:
            now = self._clock()
            if self._settings.cache.enabled:
                decision = self._delta_cache.resolve_targets(resolution.nodes, force_full=force_full, now=now)
            LOGGER.info(
                "[Orchestrator] %s run over %d of %d node(s): %s",
                decision.mode,
                len(decision.targets),
                len(resolution.nodes),
                decision.reason,
            )
            context.record("delta", decision.reason, {"mode": decision.mode, "targets": len(decision.targets)})

            sink = EventSink()
            snapshots = self._collector.collect(decision.targets, self._settings.collection.max_parallel, sink)
            context.merge(sink)

            issues = classify(snapshots, self._clock(), self._settings.classifier.staleness_hours)
            LOGGER.info("[Orchestrator] Classified %d issue(s)", len(issues))
            had_issues = {issue.node.name for issue in issues}

            if mode is RunMode.HEAL:
                engine = HealingPolicyEngine(policy, self._audit, self._rollback_store, clock=self._clock)
                plan = engine.plan(issues, self._clock())
                deferred = len(plan.deferred)
                actions = engine.execute(plan, self._executor, gate, dry_run=gate.dry_run, context=context)
                touched = self._nodes_with_actions(decision.targets, actions)
                real_actions = any(not action.dry_run for action in actions)
                verifications = self._verifier.verify(touched, had_issues, wait=real_actions)
            elif mode is RunMode.VERIFY:
                reachable = [
                    s.node
                    for s in snapshots
                    if s.status in (SnapshotStatus.HEALTHY, SnapshotStatus.DEGRADED)
                ]
                verifications = self._verifier.verify(reachable, had_issues, wait=False)
        except Exception as exc:  # noqa: BLE001 - run boundary; reported as a fatal exit
            LOGGER.exception("[Orchestrator] Run %s failed: %s", context.run_id, exc)
            context.mark_fatal(exc)

        summary = summarize(
            context,
            scope_description=resolution.description,
            snapshots=snapshots,
            issues=issues,
            actions=actions,
            verifications=verifications,
            deferred_count=deferred,
            delta_mode=decision.mode,
        )
        if context.fatal_error is None and self._settings.cache.enabled:
            self._update_cache(snapshots, issues, verifications, decision)
        return self._finish(
            RunResult(
                summary=summary,
                snapshots=tuple(snapshots),
                issues=tuple(issues),
                actions=tuple(actions),
                verifications=tuple(verifications),
                events=tuple(context.events),
            )
        )

    def start_loop(
        self,
        scope: ScopeSpec,
        mode: RunMode | str = RunMode.HEAL,
        interval_s: float = 3600.0,
        *,
        force_full: bool = False,
        dry_run: bool = False,
        policy_name: str | None = None,
    ) -> None:
        if self._loop_thread is None or not self._loop_thread.is_alive():
            interval_s = max(float(interval_s), 1.0)
            self._stop_event.clear()
            with self._lock:
                self._loop_error = None
            self._loop_thread = threading.Thread(
                target=self._loop,
                args=(scope, mode, interval_s, force_full, dry_run, policy_name),
                daemon=True,
            )
            self._loop_thread.start()

    def stop_loop(self, timeout_s: float = 5.0) -> None:
        if self._loop_thread is not None:
            self._stop_event.set()
            self._loop_thread.join(timeout=timeout_s)
            if self._loop_thread.is_alive():
                LOGGER.warning(
                    "[Orchestrator] Loop thread did not exit within %.2fs; continuing shutdown.",
                    timeout_s,
                )
                return
            self._loop_thread = None

    def is_loop_alive(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    def _loop(
        self,
        scope: ScopeSpec,
        mode: RunMode | str,
        interval_s: float,
        force_full: bool,
        dry_run: bool,
        policy_name: str | None,
    ) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once(scope, mode, force_full=force_full, dry_run=dry_run, policy_name=policy_name)
            except ConfigurationError as exc:
                LOGGER.error("[Orchestrator] Stopping loop on configuration error: %s", exc)
                with self._lock:
                    self._loop_error = exc
                return
            except Exception as exc:  # noqa: BLE001 - keep the loop alive between cycles
                LOGGER.exception("[Orchestrator] Cycle failed (retrying next interval): %s", exc)
            self._stop_event.wait(timeout=interval_s)

    def _finish(self, result: RunResult) -> RunResult:
        with self._lock:
            self._last_result = result
        return result

    def _update_cache(
        self,
        snapshots: Sequence[Snapshot],
        issues: Sequence[Issue],
        verifications: Sequence[VerificationResult],
        decision: DeltaDecision,
    ) -> None:
        still_unhealthy = [v.node.name for v in verifications if v.verdict is not HealthVerdict.HEALTHY]
        record = build_record(
            snapshots,
            issues,
            now=self._clock(),
            mode=decision.mode,
            still_unhealthy=still_unhealthy,
        )
        try:
            self._delta_cache.save(record)
        except OSError as exc:
            LOGGER.error("[Orchestrator] Could not save delta cache: %s", exc)

    @staticmethod
    def _nodes_with_actions(targets: Sequence[NodeRef], actions: Sequence[HealingAction]) -> list[NodeRef]:
        acted = {action.node.lower() for action in actions}
        return [node for node in targets if node.name.lower() in acted]

    @staticmethod
    def _coerce_mode(mode: RunMode | str) -> RunMode:
        if isinstance(mode, RunMode):
            return mode
        try:
            return RunMode(str(mode).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown run mode {mode!r}") from exc
