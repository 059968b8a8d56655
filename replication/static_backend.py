"""In-memory replication backend loaded from a YAML inventory.

Used for offline runs (``--offline``) and as the fake backend in tests. A
successful sync marks the node as converged so a subsequent verification pass
reflects the repair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import threading
import time
from typing import Any, Callable, Mapping

import yaml

from core.errors import (
    AccessDeniedError,
    NodeUnreachableError,
    ObjectNotFoundError,
    QueryTimeoutError,
    ReplicationError,
)
from core.models import ActiveFailure, PartnerLink
from replication.command_client import parse_timestamp
from replication.interfaces import (
    CommandResult,
    DirectoryContext,
    ReplicationCommandClient,
    ReplicationEvent,
    ReplicationQueryClient,
)


HEALTHY_SYNC_TEXT = "Last attempt was successful.\n"

_RAISE_MAP: dict[str, type[ReplicationError]] = {
    "unreachable": NodeUnreachableError,
    "timeout": QueryTimeoutError,
    "access_denied": AccessDeniedError,
    "not_found": ObjectNotFoundError,
    "error": ReplicationError,
}


@dataclass
class _NodeState:
    name: str
    site: str | None
    partners: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    raise_on_query: str | None = None
    query_delay_s: float = 0.0
    verification: str = HEALTHY_SYNC_TEXT
    verification_after_sync: str = HEALTHY_SYNC_TEXT
    sync_exit_code: int = 0
    sync_output: str = ""
    diagnostic_exit_code: int | None = None


class StaticReplicationBackend(ReplicationQueryClient, ReplicationCommandClient, DirectoryContext):
    """Serves replication state from a mapping instead of remote calls."""

    def __init__(
        self,
        inventory: Mapping[str, Any],
        *,
        clock: Callable[[], float] = time.time,
        converge_on_sync: bool = True,
    ) -> None:
        self._clock = clock
        self._converge_on_sync = converge_on_sync
        self._lock = threading.Lock()
        self._nodes: dict[str, _NodeState] = {}
        self.sync_calls: list[tuple[str, str | None, str | None]] = []
        self.query_calls: list[str] = []
        for raw in inventory.get("nodes") or []:
            state = self._load_node(raw)
            self._nodes[state.name.lower()] = state

    @classmethod
    def from_file(cls, path: Path, **kwargs: Any) -> "StaticReplicationBackend":
        with Path(path).open("r", encoding="utf-8") as file:
            inventory = yaml.safe_load(file) or {}
        return cls(inventory, **kwargs)

    def list_nodes(self) -> list[tuple[str, str | None]]:
        return [(state.name, state.site) for state in self._nodes.values()]

    def list_site_nodes(self, site: str) -> list[str]:
        wanted = site.lower()
        return [
            state.name
            for state in self._nodes.values()
            if state.site is not None and state.site.lower() == wanted
        ]

    def query_partner_metadata(self, node: str) -> list[PartnerLink]:
        state = self._query(node)
        now = self._clock()
        return [self._partner(item, now) for item in state.partners]

    def query_active_failures(self, node: str) -> list[ActiveFailure]:
        state = self._query(node)
        now = self._clock()
        return [self._failure(item, now) for item in state.failures]

    def invoke_sync(
        self,
        node: str,
        partner: str | None = None,
        partition: str | None = None,
    ) -> CommandResult:
        state = self._state(node)
        with self._lock:
            self.sync_calls.append((state.name, partner, partition))
            exit_code = state.sync_exit_code
            if exit_code == 0 and self._converge_on_sync:
                self._converge(state, partner)
        output = state.sync_output or ("Sync completed." if exit_code == 0 else f"Sync failed ({exit_code}).")
        return CommandResult(exit_code=exit_code, output=output)

    def invoke_verification_query(self, node: str) -> str:
        state = self._query(node)
        return state.verification

    def scan_event_log(self, node: str, since: float) -> list[ReplicationEvent] | None:
        state = self._query(node)
        now = self._clock()
        events = []
        for item in state.events:
            timestamp = self._resolve_time(item, "timestamp", now) or now
            if timestamp < since and not item.get("ignore_window"):
                continue
            events.append(
                ReplicationEvent(
                    timestamp=timestamp,
                    event_id=int(item.get("event_id", 0)),
                    level=str(item.get("level", "error")),
                    message=str(item.get("message", "")),
                )
            )
        return events

    def run_diagnostic(self, node: str) -> CommandResult | None:
        state = self._query(node)
        if state.diagnostic_exit_code is None:
            return None
        return CommandResult(exit_code=state.diagnostic_exit_code, output="diagnostic complete")

    def _load_node(self, raw: Mapping[str, Any]) -> _NodeState:
        return _NodeState(
            name=str(raw["name"]),
            site=str(raw["site"]) if raw.get("site") else None,
            partners=[dict(item) for item in raw.get("partners") or []],
            failures=[dict(item) for item in raw.get("failures") or []],
            events=[dict(item) for item in raw.get("events") or []],
            raise_on_query=str(raw["raise"]) if raw.get("raise") else None,
            query_delay_s=float(raw.get("query_delay_s", 0.0)),
            verification=str(raw.get("verification", HEALTHY_SYNC_TEXT)),
            verification_after_sync=str(raw.get("verification_after_sync", HEALTHY_SYNC_TEXT)),
            sync_exit_code=int(raw.get("sync_exit_code", 0)),
            sync_output=str(raw.get("sync_output", "")),
            diagnostic_exit_code=(
                int(raw["diagnostic_exit_code"]) if raw.get("diagnostic_exit_code") is not None else None
            ),
        )

    def _state(self, node: str) -> _NodeState:
        state = self._nodes.get(node.lower())
        if state is None:
            raise ObjectNotFoundError(f"Unknown node {node}", context={"node": node})
        return state

    def _query(self, node: str) -> _NodeState:
        state = self._state(node)
        with self._lock:
            self.query_calls.append(state.name)
        if state.query_delay_s > 0:
            time.sleep(state.query_delay_s)
        if state.raise_on_query:
            error_cls = _RAISE_MAP.get(state.raise_on_query, ReplicationError)
            raise error_cls(f"{state.raise_on_query} while querying {state.name}", context={"node": state.name})
        return state

    def _converge(self, state: _NodeState, partner: str | None) -> None:
        now = self._clock()
        for item in state.partners:
            if partner is None or str(item.get("partner", "")).lower() == partner.lower():
                item.pop("last_success_hours_ago", None)
                item["last_success"] = now
                item["last_attempt"] = now
                item["last_result"] = 0
                item["consecutive_failures"] = 0
        state.failures = [
            item
            for item in state.failures
            if partner is not None and str(item.get("partner", "")).lower() != partner.lower()
        ]
        state.events = []
        state.verification = state.verification_after_sync

    def _resolve_time(self, item: Mapping[str, Any], key: str, now: float) -> float | None:
        hours_key = f"{key}_hours_ago"
        if item.get(hours_key) is not None:
            return now - float(item[hours_key]) * 3600.0
        days_key = f"{key}_days_ago"
        if item.get(days_key) is not None:
            return now - float(item[days_key]) * 86400.0
        return parse_timestamp(item.get(key))

    def _partner(self, item: Mapping[str, Any], now: float) -> PartnerLink:
        return PartnerLink(
            partner=str(item["partner"]),
            partition=str(item.get("partition", "")),
            last_attempt=self._resolve_time(item, "last_attempt", now),
            last_success=self._resolve_time(item, "last_success", now),
            last_result=int(item.get("last_result", 0)),
            consecutive_failures=int(item.get("consecutive_failures", 0)),
        )

    def _failure(self, item: Mapping[str, Any], now: float) -> ActiveFailure:
        return ActiveFailure(
            partner=str(item["partner"]),
            failure_type=str(item.get("failure_type", "link")),
            failure_count=int(item.get("failure_count", 1)),
            first_failure=self._resolve_time(item, "first_failure", now),
            last_error=int(item.get("last_error", 0)),
        )
