"""Tests for backoff retries and the confirmation gate."""

from __future__ import annotations

import pytest

from core.errors import AccessDeniedError, NodeUnreachableError
from core.gate import ConfirmationGate, GateDecision
from core.models import ExitStatus, RunMode
from core.retry import BackoffStrategy, RetryPolicy, retry_call
from core.run_context import RunContext


def test_backoff_grows_and_caps() -> None:
    backoff = BackoffStrategy(initial_delay_s=1.0, max_delay_s=5.0, multiplier=2.0, jitter_factor=0.0)

    assert backoff.get_all_delays(5) == [1.0, 2.0, 4.0, 5.0]


def test_backoff_jitter_stays_in_band() -> None:
    backoff = BackoffStrategy(initial_delay_s=10.0, max_delay_s=10.0, jitter_factor=0.1)

    assert all(9.0 <= backoff.get_delay(0) <= 11.0 for _ in range(50))


def test_retry_call_retries_transient_then_returns() -> None:
    calls = []
    sleeps: list[float] = []

    def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise NodeUnreachableError("rpc unavailable")
        return "ok"

    policy = RetryPolicy(max_attempts=3, backoff=BackoffStrategy(1.0, 10.0, jitter_factor=0.0))
    result, attempts = retry_call(flaky, policy, describe="flaky", sleep=sleeps.append)

    assert (result, attempts) == ("ok", 3)
    assert sleeps == [1.0, 2.0]


def test_retry_call_gives_up_after_max_attempts() -> None:
    calls = []

    def down() -> None:
        calls.append(1)
        raise NodeUnreachableError("rpc unavailable")

    with pytest.raises(NodeUnreachableError):
        retry_call(down, RetryPolicy(max_attempts=2), describe="down", sleep=lambda _s: None)
    assert len(calls) == 2


def test_retry_call_never_retries_permanent_errors() -> None:
    calls = []

    def denied() -> None:
        calls.append(1)
        raise AccessDeniedError("access is denied")

    with pytest.raises(AccessDeniedError):
        retry_call(denied, RetryPolicy(max_attempts=5), describe="denied", sleep=lambda _s: None)
    assert len(calls) == 1


def test_gate_paths() -> None:
    asked: list[str] = []

    def yes(question: str) -> bool:
        asked.append(question)
        return True

    assert ConfirmationGate(prompt=yes).confirm_fleet(12) is GateDecision.PROCEED
    assert "12 nodes" in asked[0]
    assert ConfirmationGate(prompt=lambda _q: False).confirm_action("dc1", "sync_all", "x") is GateDecision.CANCEL
    assert ConfirmationGate(unattended=True).confirm_fleet() is GateDecision.PROCEED
    assert ConfirmationGate(unattended=True, dry_run=True).confirm_fleet() is GateDecision.PREVIEW
    assert GateDecision.PREVIEW.proceeds and not GateDecision.CANCEL.proceeds


def test_default_gate_refuses_without_prompting() -> None:
    assert ConfirmationGate().confirm_fleet() is GateDecision.CANCEL


def test_exit_precedence() -> None:
    context = RunContext(mode=RunMode.AUDIT)
    context.escalate(ExitStatus.ISSUES_REMAIN)
    context.escalate(ExitStatus.UNREACHABLE_DETECTED)
    context.escalate(ExitStatus.ISSUES_REMAIN)
    assert context.exit_floor is ExitStatus.UNREACHABLE_DETECTED

    context.mark_fatal(RuntimeError("boom"))
    context.escalate(ExitStatus.UNREACHABLE_DETECTED)
    assert context.exit_floor is ExitStatus.FATAL_ERROR
    assert context.fatal_error == "boom"
