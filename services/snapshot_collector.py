"""Bounded, per-node isolated collection of replication snapshots."""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
import sys
import threading
import time
from typing import Callable, Sequence

from core.errors import (
    NodeUnreachableError,
    PermanentReplicationError,
    ReplicationError,
)
from core.logging import logger as LOGGER
from core.models import ActiveFailure, NodeRef, PartnerLink, Snapshot, SnapshotStatus
from core.retry import RetryPolicy, retry_call
from core.run_context import EventSink
from replication.interfaces import ReplicationQueryClient


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 32

CollectFn = Callable[[NodeRef], Snapshot]


class _DeadlineExceeded(Exception):
    pass


def threads_available() -> bool:
    """Return False on runtimes that cannot start OS threads."""

    return sys.platform not in {"emscripten", "wasi"}


def parallel_supported(enabled: bool = True) -> bool:
    return enabled and threads_available()


class CollectorBackend(ABC):
    """Strategy that runs ``collect_one`` over a node list."""

    name = "abstract"

    @abstractmethod
    def run(self, nodes: Sequence[NodeRef], concurrency_limit: int, collect_one: CollectFn) -> list[Snapshot]:
        """Return one snapshot per node, in input order."""


class SequentialCollectorBackend(CollectorBackend):
    """One node at a time; the fallback when parallel execution is unavailable."""

    name = "sequential"

    def run(self, nodes: Sequence[NodeRef], concurrency_limit: int, collect_one: CollectFn) -> list[Snapshot]:
        return [collect_one(node) for node in nodes]


class PooledCollectorBackend(CollectorBackend):
    """Bounded worker pool; at most ``concurrency_limit`` nodes in flight."""

    name = "pooled"

    def run(self, nodes: Sequence[NodeRef], concurrency_limit: int, collect_one: CollectFn) -> list[Snapshot]:
        if not nodes:
            return []
        workers = max(1, min(concurrency_limit, len(nodes)))
        results: list[Snapshot | None] = [None] * len(nodes)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="collect") as executor:
            futures = {executor.submit(collect_one, node): index for index, node in enumerate(nodes)}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as exc:  # noqa: BLE001 - isolation boundary per node
                    node = nodes[index]
                    LOGGER.exception("[Collect] Worker for %s raised: %s", node.name, exc)
                    results[index] = Snapshot(
                        node=node,
                        captured_at=time.time(),
                        status=SnapshotStatus.FAILED,
                        error=f"collector error: {exc}",
                    )
        return [snapshot for snapshot in results if snapshot is not None]


def build_backend(parallel: bool) -> CollectorBackend:
    """Pick the backend once, at start-up."""

    if parallel_supported(parallel):
        return PooledCollectorBackend()
    LOGGER.info("[Collect] Parallel collection unavailable; using sequential backend.")
    return SequentialCollectorBackend()


class SnapshotCollector:
    """Gathers partner metadata and active failures for each node."""

    def __init__(
        self,
        client: ReplicationQueryClient,
        *,
        node_timeout_s: float = 300.0,
        retry_policy: RetryPolicy | None = None,
        backend: CollectorBackend | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._node_timeout_s = float(node_timeout_s)
        self._retry_policy = retry_policy or RetryPolicy()
        self._backend = backend or build_backend(True)
        self._clock = clock
        self._sleep = sleep
        self._timeout_threads = threads_available()

    @property
    def backend(self) -> CollectorBackend:
        return self._backend

    def collect(
        self,
        nodes: Sequence[NodeRef],
        concurrency_limit: int,
        sink: EventSink | None = None,
    ) -> list[Snapshot]:
        limit = min(max(int(concurrency_limit), MIN_CONCURRENCY), MAX_CONCURRENCY)
        sink = sink if sink is not None else EventSink()
        LOGGER.info(
            "[Collect] Collecting %d node(s) via %s backend (limit=%d, timeout=%.0fs)",
            len(nodes),
            self._backend.name,
            limit,
            self._node_timeout_s,
        )
        started = time.monotonic()
        snapshots = self._backend.run(nodes, limit, lambda node: self.collect_node(node, sink))
        LOGGER.info(
            "[Collect] Collected %d snapshot(s) in %.1fs",
            len(snapshots),
            time.monotonic() - started,
        )
        return snapshots

    def collect_node(self, node: NodeRef, sink: EventSink) -> Snapshot:
        """Collect one node; never raises."""

        deadline = time.monotonic() + self._node_timeout_s
        attempts = [0]

        def query_once() -> tuple[list[PartnerLink], list[ActiveFailure]]:
            attempts[0] += 1
            partners = self._client.query_partner_metadata(node.name)
            failures = self._client.query_active_failures(node.name)
            return partners, failures

        def on_retry(attempt: int, exc: Exception, delay: float) -> None:
            sink.emit(
                "retry",
                f"{node.name}: retry {attempt + 1} after {exc}",
                {"node": node.name, "attempt": attempt, "delay_s": round(delay, 2)},
            )

        def query() -> tuple[list[PartnerLink], list[ActiveFailure]]:
            result, _ = retry_call(
                query_once,
                self._retry_policy,
                describe=f"collect {node.name}",
                on_retry=on_retry,
                sleep=self._sleep,
                deadline=deadline,
            )
            return result

        try:
            partners, failures = self._run_with_deadline(node, query)
        except _DeadlineExceeded:
            message = f"timed out after {self._node_timeout_s:.0f}s"
            LOGGER.warning("[Collect] %s %s", node.name, message)
            sink.emit("timeout", f"{node.name}: {message}", {"node": node.name})
            return self._snapshot(node, SnapshotStatus.FAILED, error=message, attempts=attempts[0])
        except NodeUnreachableError as exc:
            LOGGER.warning("[Collect] %s unreachable: %s", node.name, exc.message)
            sink.emit("unreachable", f"{node.name}: {exc.message}", {"node": node.name})
            return self._snapshot(node, SnapshotStatus.UNREACHABLE, error=exc.message, attempts=attempts[0])
        except PermanentReplicationError as exc:
            LOGGER.error("[Collect] %s permanent error (not retried): %s", node.name, exc)
            sink.emit("node_error", f"{node.name}: {exc}", {"node": node.name, "code": exc.code})
            return self._snapshot(node, SnapshotStatus.FAILED, error=str(exc), attempts=attempts[0])
        except ReplicationError as exc:
            LOGGER.error("[Collect] %s replication error: %s", node.name, exc)
            sink.emit("node_error", f"{node.name}: {exc}", {"node": node.name, "code": exc.code})
            return self._snapshot(node, SnapshotStatus.FAILED, error=str(exc), attempts=attempts[0])
        except Exception as exc:  # noqa: BLE001 - one node must not abort the batch
            LOGGER.exception("[Collect] %s unexpected error: %s", node.name, exc)
            sink.emit("node_error", f"{node.name}: {exc}", {"node": node.name, "code": "UNEXPECTED"})
            return self._snapshot(node, SnapshotStatus.FAILED, error=f"unexpected error: {exc}", attempts=attempts[0])

        status = SnapshotStatus.DEGRADED if failures else SnapshotStatus.HEALTHY
        LOGGER.debug(
            "[Collect] %s %s: %d partner(s), %d failure(s)",
            node.name,
            status.value,
            len(partners),
            len(failures),
        )
        return self._snapshot(
            node,
            status,
            partners=tuple(partners),
            failures=tuple(failures),
            attempts=attempts[0],
        )

    def _run_with_deadline(
        self,
        node: NodeRef,
        fn: Callable[[], tuple[list[PartnerLink], list[ActiveFailure]]],
    ) -> tuple[list[PartnerLink], list[ActiveFailure]]:
        if not self._timeout_threads:
            started = time.monotonic()
            result = fn()
            if time.monotonic() - started > self._node_timeout_s:
                raise _DeadlineExceeded()
            return result

        box: dict[str, object] = {}

        def target() -> None:
            try:
                box["value"] = fn()
            except BaseException as exc:  # noqa: BLE001 - re-raised on the caller's thread
                box["error"] = exc

        # Daemon thread so a stuck remote call cannot hold the worker slot.
        thread = threading.Thread(target=target, name=f"query-{node.name}", daemon=True)
        thread.start()
        thread.join(self._node_timeout_s)
        if thread.is_alive():
            raise _DeadlineExceeded()
        if "error" in box:
            raise box["error"]  # type: ignore[misc]
        return box["value"]  # type: ignore[return-value]

    def _snapshot(
        self,
        node: NodeRef,
        status: SnapshotStatus,
        *,
        partners: tuple[PartnerLink, ...] = (),
        failures: tuple[ActiveFailure, ...] = (),
        error: str | None = None,
        attempts: int = 1,
    ) -> Snapshot:
        return Snapshot(
            node=node,
            captured_at=self._clock(),
            status=status,
            partners=partners,
            failures=failures,
            error=error,
            attempts=max(1, attempts),
        )
