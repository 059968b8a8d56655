"""Tests for bounded, isolated snapshot collection."""

from __future__ import annotations

import threading
import time

from core.errors import AccessDeniedError, NodeUnreachableError, QueryTimeoutError
from core.models import ActiveFailure, NodeRef, PartnerLink, RunMode, SnapshotStatus
from core.retry import BackoffStrategy, RetryPolicy
from core.run_context import EventSink, RunContext
from services.snapshot_collector import (
    PooledCollectorBackend,
    SequentialCollectorBackend,
    SnapshotCollector,
    build_backend,
)


NOW = 1_700_000_000.0


class _FakeQueryClient:
    def __init__(self, behaviours: dict[str, list] | None = None, release: threading.Event | None = None) -> None:
        self._behaviours = behaviours or {}
        self._release = release
        self._lock = threading.Lock()
        self.calls: dict[str, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def query_partner_metadata(self, node: str) -> list[PartnerLink]:
        with self._lock:
            self.calls[node] = self.calls.get(node, 0) + 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            script = self._behaviours.get(node) or []
            step = script.pop(0) if script else None
        try:
            if step == "hang" and self._release is not None:
                self._release.wait(5.0)
            elif step == "slow":
                time.sleep(0.05)
            elif isinstance(step, Exception):
                raise step
            return [PartnerLink("dc0", "DC=corp", NOW, NOW)]
        finally:
            with self._lock:
                self.in_flight -= 1

    def query_active_failures(self, node: str) -> list[ActiveFailure]:
        if node.startswith("bad"):
            return [ActiveFailure("dc0", "link", 2, NOW, 1722)]
        return []


def _policy(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, backoff=BackoffStrategy(0.0, 0.0, jitter_factor=0.0))


def _collector(client, backend=None, timeout_s: float = 5.0, attempts: int = 3) -> SnapshotCollector:
    return SnapshotCollector(
        client,
        node_timeout_s=timeout_s,
        retry_policy=_policy(attempts),
        backend=backend or PooledCollectorBackend(),
        clock=lambda: NOW,
        sleep=lambda _s: None,
    )


def _nodes(*names: str) -> list[NodeRef]:
    return [NodeRef(name) for name in names]


def test_statuses_and_input_order() -> None:
    client = _FakeQueryClient(
        {
            "down": [NodeUnreachableError("rpc unavailable")] * 3,
            "denied": [AccessDeniedError("nope")],
            "weird": [ValueError("boom")],
        }
    )

    snapshots = _collector(client).collect(_nodes("ok", "bad1", "down", "denied", "weird"), 4)

    assert [s.node.name for s in snapshots] == ["ok", "bad1", "down", "denied", "weird"]
    assert [s.status for s in snapshots] == [
        SnapshotStatus.HEALTHY,
        SnapshotStatus.DEGRADED,
        SnapshotStatus.UNREACHABLE,
        SnapshotStatus.FAILED,
        SnapshotStatus.FAILED,
    ]
    assert "boom" in snapshots[4].error


def test_transient_errors_retry_then_succeed() -> None:
    client = _FakeQueryClient({"flaky": [QueryTimeoutError("slow"), NodeUnreachableError("blip")]})
    sink = EventSink()

    [snapshot] = _collector(client).collect(_nodes("flaky"), 1, sink)

    assert snapshot.status is SnapshotStatus.HEALTHY
    assert snapshot.attempts == 3
    context = RunContext(mode=RunMode.AUDIT)
    context.merge(sink)
    assert context.counters.retries == 2


def test_unreachable_gives_up_after_max_attempts() -> None:
    client = _FakeQueryClient({"down": [NodeUnreachableError("rpc unavailable")] * 5})

    [snapshot] = _collector(client, attempts=2).collect(_nodes("down"), 1)

    assert snapshot.status is SnapshotStatus.UNREACHABLE
    assert client.calls["down"] == 2


def test_permanent_errors_are_not_retried() -> None:
    client = _FakeQueryClient({"denied": [AccessDeniedError("nope")]})

    [snapshot] = _collector(client).collect(_nodes("denied"), 1)

    assert snapshot.status is SnapshotStatus.FAILED
    assert client.calls["denied"] == 1


def test_stuck_node_times_out_without_blocking_others() -> None:
    release = threading.Event()
    client = _FakeQueryClient({"stuck": ["hang"]}, release=release)
    sink = EventSink()
    try:
        started = time.monotonic()
        snapshots = _collector(client, timeout_s=0.2).collect(_nodes("stuck", "ok1", "ok2"), 2, sink)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 3.0
    assert snapshots[0].status is SnapshotStatus.FAILED
    assert "timed out" in snapshots[0].error
    assert [s.status for s in snapshots[1:]] == [SnapshotStatus.HEALTHY] * 2
    assert any(event.event_type == "timeout" for event in sink.drain())


def test_concurrency_limit_is_respected() -> None:
    names = [f"dc{i}" for i in range(12)]
    client = _FakeQueryClient({name: ["slow"] for name in names})

    _collector(client).collect(_nodes(*names), 3)

    assert 1 <= client.max_in_flight <= 3


def test_limit_is_clamped_to_valid_range() -> None:
    client = _FakeQueryClient()

    snapshots = _collector(client).collect(_nodes("dc1", "dc2"), 0)

    assert len(snapshots) == 2


def test_sequential_and_pooled_backends_agree() -> None:
    def run(backend):
        client = _FakeQueryClient({"down": [NodeUnreachableError("x")] * 3})
        return _collector(client, backend=backend).collect(_nodes("ok", "bad2", "down"), 4)

    pooled = run(PooledCollectorBackend())
    sequential = run(SequentialCollectorBackend())

    assert [(s.node, s.status, s.partners, s.failures) for s in pooled] == [
        (s.node, s.status, s.partners, s.failures) for s in sequential
    ]


def test_build_backend_honours_parallel_flag() -> None:
    assert isinstance(build_backend(False), SequentialCollectorBackend)
    assert isinstance(build_backend(True), PooledCollectorBackend)
