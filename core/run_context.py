"""Per-run state threaded through every orchestration component."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
import uuid
from typing import Mapping

from core.models import ExitStatus, RunEvent, RunMode


class EventSink:
    """Thread-safe event collector used during concurrent collection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[RunEvent] = []

    def emit(
        self,
        event_type: str,
        message: str,
        metadata: Mapping[str, str | float | int] | None = None,
    ) -> None:
        event = RunEvent(
            timestamp=time.time(),
            event_type=event_type,
            message=message,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._events.append(event)

    def drain(self) -> list[RunEvent]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass
class RunCounters:
    """Mutable counters for a single run."""

    retries: int = 0
    timeouts: int = 0
    errors: int = 0
    gate_cancellations: int = 0


@dataclass
class RunContext:
    """Explicit run state: events, counters and the exit status accumulator."""

    mode: RunMode
    dry_run: bool = False
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    started_monotonic: float = field(default_factory=time.monotonic)
    events: list[RunEvent] = field(default_factory=list)
    counters: RunCounters = field(default_factory=RunCounters)
    exit_floor: ExitStatus = ExitStatus.SUCCESS
    fatal_error: str | None = None

    def record(
        self,
        event_type: str,
        message: str,
        metadata: Mapping[str, str | float | int] | None = None,
    ) -> None:
        self.events.append(
            RunEvent(
                timestamp=time.time(),
                event_type=event_type,
                message=message,
                metadata=dict(metadata or {}),
            )
        )

    def merge(self, sink: EventSink) -> int:
        """Fold events collected concurrently into the run, in emit order."""

        drained = sink.drain()
        self.events.extend(drained)
        for event in drained:
            if event.event_type == "retry":
                self.counters.retries += 1
            elif event.event_type == "timeout":
                self.counters.timeouts += 1
            elif event.event_type == "node_error":
                self.counters.errors += 1
        return len(drained)

    def escalate(self, status: ExitStatus) -> None:
        """Raise the exit status floor following fatal > unreachable > issues."""

        if _EXIT_PRECEDENCE[status] > _EXIT_PRECEDENCE[self.exit_floor]:
            self.exit_floor = status

    def mark_fatal(self, error: BaseException | str) -> None:
        self.fatal_error = str(error)
        self.escalate(ExitStatus.FATAL_ERROR)
        self.record("fatal", self.fatal_error)

    def elapsed_s(self) -> float:
        return max(0.0, time.monotonic() - self.started_monotonic)


_EXIT_PRECEDENCE = {
    ExitStatus.SUCCESS: 0,
    ExitStatus.CANCELLED: 0,
    ExitStatus.ISSUES_REMAIN: 1,
    ExitStatus.UNREACHABLE_DETECTED: 2,
    ExitStatus.FATAL_ERROR: 3,
}
