"""Policy-gated auto-remediation with cooldown, action cap and rollback audit."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Callable, Iterable, Mapping
import uuid

from core.errors import ConfigurationError
from core.gate import ConfirmationGate, GateDecision
from core.logging import logger as LOGGER
from core.models import HealingAction, HealingPolicy, Issue, IssueCategory, Severity
from core.run_context import RunContext
from services.repair_executor import RepairExecutor, RepairOutcome
from storage.audit_trail import AuditTrail
from storage.rollback_store import RollbackStore


CONSERVATIVE = "conservative"
MODERATE = "moderate"
AGGRESSIVE = "aggressive"
TIER_ORDER = (CONSERVATIVE, MODERATE, AGGRESSIVE)

DEFAULT_POLICIES: dict[str, HealingPolicy] = {
    CONSERVATIVE: HealingPolicy(
        name=CONSERVATIVE,
        allowed_categories=frozenset({IssueCategory.STALENESS}),
        allowed_severities=frozenset({Severity.LOW, Severity.MEDIUM}),
        manual_approval_categories=frozenset({IssueCategory.CONNECTIVITY}),
        max_actions=5,
        cooldown_s=60 * 60.0,
        rollback_on_failure=True,
    ),
    MODERATE: HealingPolicy(
        name=MODERATE,
        allowed_categories=frozenset({IssueCategory.STALENESS, IssueCategory.ACTIVE_FAILURE}),
        allowed_severities=frozenset({Severity.LOW, Severity.MEDIUM, Severity.HIGH}),
        manual_approval_categories=frozenset({IssueCategory.CONNECTIVITY}),
        max_actions=10,
        cooldown_s=30 * 60.0,
        rollback_on_failure=True,
    ),
    AGGRESSIVE: HealingPolicy(
        name=AGGRESSIVE,
        allowed_categories=frozenset(IssueCategory),
        allowed_severities=frozenset(Severity),
        manual_approval_categories=frozenset(),
        max_actions=25,
        cooldown_s=15 * 60.0,
        rollback_on_failure=False,
    ),
}


def _enum_set(values: Any, enum_cls: type, field_name: str) -> frozenset:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    resolved = set()
    for value in values:
        try:
            resolved.add(enum_cls(str(value).strip().lower()))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown value {value!r} in {field_name}") from exc
    return frozenset(resolved)


def policy_from_mapping(name: str, raw: Mapping[str, Any], base: HealingPolicy) -> HealingPolicy:
    """Overlay configuration values on a built-in tier."""

    categories = base.allowed_categories
    if "categories" in raw:
        categories = _enum_set(raw["categories"], IssueCategory, f"{name}.categories")
    severities = base.allowed_severities
    if "severities" in raw:
        severities = _enum_set(raw["severities"], Severity, f"{name}.severities")
    manual = base.manual_approval_categories
    if "manual_approval" in raw:
        manual = _enum_set(raw["manual_approval"], IssueCategory, f"{name}.manual_approval")
    cooldown_s = base.cooldown_s
    if "cooldown_minutes" in raw:
        cooldown_s = max(0.0, float(raw["cooldown_minutes"]) * 60.0)
    return HealingPolicy(
        name=name,
        allowed_categories=categories,
        allowed_severities=severities,
        manual_approval_categories=manual,
        max_actions=max(0, int(raw.get("max_actions", base.max_actions))),
        cooldown_s=cooldown_s,
        rollback_on_failure=bool(raw.get("rollback_on_failure", base.rollback_on_failure)),
    )


def validate_monotonic(policies: Mapping[str, HealingPolicy]) -> None:
    """Each tier must be at least as permissive as the one below it.

    A higher tier allows every category and severity the lower tier allows,
    needs manual approval for no extra category and cools down no longer.
    """

    for lower_name, higher_name in zip(TIER_ORDER, TIER_ORDER[1:]):
        lower = policies[lower_name]
        higher = policies[higher_name]
        if not lower.allowed_categories <= higher.allowed_categories:
            raise ConfigurationError(
                f"Policy {higher_name} must allow every category {lower_name} allows"
            )
        if not lower.allowed_severities <= higher.allowed_severities:
            raise ConfigurationError(
                f"Policy {higher_name} must allow every severity {lower_name} allows"
            )
        if not higher.manual_approval_categories <= lower.manual_approval_categories:
            raise ConfigurationError(
                f"Policy {higher_name} cannot require manual approval for categories {lower_name} heals"
            )
        if higher.cooldown_s > lower.cooldown_s:
            raise ConfigurationError(
                f"Policy {higher_name} cooldown must not exceed {lower_name} cooldown"
            )


def policies_from_config(config: Mapping[str, Any]) -> dict[str, HealingPolicy]:
    healing_cfg = config.get("healing") if isinstance(config, Mapping) else None
    raw_policies = healing_cfg.get("policies") if isinstance(healing_cfg, Mapping) else None
    policies = dict(DEFAULT_POLICIES)
    if isinstance(raw_policies, Mapping):
        for name, raw in raw_policies.items():
            key = str(name).lower()
            if key not in DEFAULT_POLICIES:
                raise ConfigurationError(f"Unknown healing policy tier {name!r}")
            if isinstance(raw, Mapping):
                policies[key] = policy_from_mapping(key, raw, DEFAULT_POLICIES[key])
    validate_monotonic(policies)
    return policies


def select_policy(name: str, policies: Mapping[str, HealingPolicy] | None = None) -> HealingPolicy:
    policies = policies or DEFAULT_POLICIES
    try:
        return policies[name.lower()]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown healing policy {name!r}; expected one of {', '.join(TIER_ORDER)}"
        ) from exc


@dataclass(frozen=True)
class EligibilityDecision:
    issue: Issue
    eligible: bool
    reason: str


@dataclass(frozen=True)
class HealingPlan:
    """Issues split into eligible (within cap), deferred and ineligible."""

    eligible: tuple[EligibilityDecision, ...] = ()
    deferred: tuple[EligibilityDecision, ...] = ()
    ineligible: tuple[EligibilityDecision, ...] = ()


class HealingPolicyEngine:
    """Decides which issues may be repaired unattended and audits every attempt."""

    def __init__(
        self,
        policy: HealingPolicy,
        audit: AuditTrail,
        rollback_store: RollbackStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._policy = policy
        self._audit = audit
        self._rollback_store = rollback_store
        self._clock = clock

    @property
    def policy(self) -> HealingPolicy:
        return self._policy

    def evaluate(self, issue: Issue, now: float | None = None) -> EligibilityDecision:
        now = self._clock() if now is None else now
        policy = self._policy
        if issue.category not in policy.allowed_categories:
            return EligibilityDecision(issue, False, f"category {issue.category.value} not allowed by {policy.name}")
        if issue.severity not in policy.allowed_severities:
            return EligibilityDecision(issue, False, f"severity {issue.severity.value} not allowed by {policy.name}")
        if issue.category in policy.manual_approval_categories:
            return EligibilityDecision(issue, False, f"category {issue.category.value} requires manual approval")
        last = self._audit.latest_for(issue.node.name, issue.category)
        if last is not None and not last.dry_run and now - last.timestamp < policy.cooldown_s:
            remaining = policy.cooldown_s - (now - last.timestamp)
            return EligibilityDecision(
                issue,
                False,
                f"cooldown active ({remaining / 60.0:.0f} min left after action {last.action_id})",
            )
        if not issue.actionable:
            return EligibilityDecision(issue, False, "issue is not actionable")
        return EligibilityDecision(issue, True, "eligible")

    def plan(self, issues: Iterable[Issue], now: float | None = None) -> HealingPlan:
        now = self._clock() if now is None else now
        eligible: list[EligibilityDecision] = []
        deferred: list[EligibilityDecision] = []
        ineligible: list[EligibilityDecision] = []
        for issue in issues:
            decision = self.evaluate(issue, now)
            if not decision.eligible:
                LOGGER.info("[Policy] Skip %s: %s", issue.key, decision.reason)
                ineligible.append(decision)
            elif len(eligible) >= self._policy.max_actions:
                LOGGER.info(
                    "[Policy] Defer %s: action cap %d reached",
                    issue.key,
                    self._policy.max_actions,
                )
                deferred.append(EligibilityDecision(issue, False, "deferred: action cap reached"))
            else:
                eligible.append(decision)
        LOGGER.info(
            "[Policy] %s: %d eligible, %d deferred, %d ineligible",
            self._policy.name,
            len(eligible),
            len(deferred),
            len(ineligible),
        )
        return HealingPlan(tuple(eligible), tuple(deferred), tuple(ineligible))

    def execute(
        self,
        plan: HealingPlan,
        executor: RepairExecutor,
        gate: ConfirmationGate,
        *,
        dry_run: bool = False,
        context: RunContext | None = None,
    ) -> list[HealingAction]:
        """Run eligible repairs one at a time, recording each before the next."""

        actions: list[HealingAction] = []
        for decision in plan.eligible:
            issue = decision.issue
            method = executor.method_for(issue)
            gate_decision = gate.confirm_action(issue.node.name, method, issue.description)
            if gate_decision is GateDecision.CANCEL:
                LOGGER.info("[Policy] %s on %s declined at confirmation", method, issue.node.name)
                if context is not None:
                    context.counters.gate_cancellations += 1
                    context.record("action_declined", f"{method} on {issue.node.name}", {"node": issue.node.name})
                continue
            preview = dry_run or gate_decision is GateDecision.PREVIEW
            try:
                outcome = executor.repair(issue, dry_run=preview)
            except Exception as exc:
                # The attempt reaches the audit trail before the run turns fatal.
                LOGGER.exception("[Policy] %s on %s raised: %s", method, issue.node.name, exc)
                failed = RepairOutcome(method, False, f"unexpected error: {exc}", rollback_available=True)
                self._record(issue, failed, dry_run=preview)
                raise
            action = self._record(issue, outcome, dry_run=preview)
            actions.append(action)
            if context is not None:
                context.record(
                    "action",
                    f"{action.method} on {action.node}: {'ok' if action.success else 'failed'}",
                    {"action_id": action.action_id, "node": action.node},
                )

            if action.success or preview:
                continue
            if self._policy.rollback_on_failure and action.rollback_available:
                actions.append(self._compensate(action, issue, executor, context))
        return actions

    def _record(
        self,
        issue: Issue,
        outcome: RepairOutcome,
        *,
        dry_run: bool,
        compensates: str | None = None,
    ) -> HealingAction:
        action = HealingAction(
            action_id=uuid.uuid4().hex,
            node=issue.node.name,
            category=issue.category,
            severity=issue.severity,
            issue_description=issue.description,
            method=outcome.method,
            success=outcome.success,
            message=outcome.message,
            timestamp=self._clock(),
            policy=self._policy.name,
            rollback_available=outcome.rollback_available and compensates is None,
            dry_run=dry_run,
            compensates=compensates,
        )
        level = LOGGER.info if action.success else LOGGER.warning
        level(
            "[Policy] %s%s on %s -> %s: %s",
            "[dry-run] " if dry_run else "",
            action.method,
            action.node,
            "success" if action.success else "failure",
            action.message,
        )
        if dry_run:
            return action
        self._audit.append(action)
        if self._rollback_store is not None and compensates is None:
            self._rollback_store.save(
                action.action_id,
                {
                    "node": action.node,
                    "category": action.category.value,
                    "method": action.method,
                    "partner": issue.partner,
                    "partition": issue.partition,
                    "policy": action.policy,
                    "timestamp": action.timestamp,
                    "compensation": RepairExecutor.COMPENSATION_METHOD,
                    "rollback_available": action.rollback_available,
                },
            )
        return action

    def _compensate(
        self,
        action: HealingAction,
        issue: Issue,
        executor: RepairExecutor,
        context: RunContext | None,
    ) -> HealingAction:
        LOGGER.warning("[Policy] Rolling back %s on %s (action %s)", action.method, action.node, action.action_id)
        outcome = executor.compensate(action.node)
        compensation = self._record(issue, outcome, dry_run=False, compensates=action.action_id)
        if context is not None:
            context.record(
                "rollback",
                f"compensated {action.action_id}: {'ok' if compensation.success else 'failed'}",
                {"action_id": compensation.action_id, "compensates": action.action_id},
            )
        return compensation
