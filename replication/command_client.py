"""Subprocess-backed replication client driven by configured command templates."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import subprocess
from typing import Any, Callable, Mapping, Sequence

from core.errors import (
    AccessDeniedError,
    CommandError,
    ConfigurationError,
    NodeUnreachableError,
    ObjectNotFoundError,
    QueryTimeoutError,
    ReplicationError,
)
from core.logging import logger as LOGGER
from core.models import ActiveFailure, PartnerLink
from replication.interfaces import (
    CommandResult,
    DirectoryContext,
    ReplicationCommandClient,
    ReplicationEvent,
    ReplicationQueryClient,
)


UNREACHABLE_MARKERS = (
    "rpc server is unavailable",
    "could not be contacted",
    "no such host",
    "host unreachable",
    "network path was not found",
)
ACCESS_DENIED_MARKERS = ("access is denied", "access denied", "permission denied")
NOT_FOUND_MARKERS = ("object not found", "naming context not found", "does not exist")

UNREACHABLE_CODES = {1722, 1753, 53}
ACCESS_DENIED_CODES = {5}
NOT_FOUND_CODES = {8440, 8329}


Runner = Callable[..., subprocess.CompletedProcess]


def parse_timestamp(value: Any) -> float | None:
    """Accept epoch seconds or ISO-8601 text; naive ISO values are UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise CommandError(f"Unparseable timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def classify_failure(node: str, exit_code: int, output: str) -> ReplicationError:
    """Map a failed query to the error taxonomy."""

    lowered = output.lower()
    context = {"node": node, "exit_code": exit_code}
    summary = output.strip().splitlines()[0] if output.strip() else f"exit code {exit_code}"
    if exit_code in UNREACHABLE_CODES or any(marker in lowered for marker in UNREACHABLE_MARKERS):
        return NodeUnreachableError(summary, context=context)
    if exit_code in ACCESS_DENIED_CODES or any(marker in lowered for marker in ACCESS_DENIED_MARKERS):
        return AccessDeniedError(summary, context=context)
    if exit_code in NOT_FOUND_CODES or any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return ObjectNotFoundError(summary, context=context)
    return ReplicationError(summary, context=context)


def _partner_from_payload(item: Mapping[str, Any]) -> PartnerLink:
    return PartnerLink(
        partner=str(item["partner"]),
        partition=str(item.get("partition", "")),
        last_attempt=parse_timestamp(item.get("last_attempt")),
        last_success=parse_timestamp(item.get("last_success")),
        last_result=int(item.get("last_result", 0) or 0),
        consecutive_failures=int(item.get("consecutive_failures", 0) or 0),
    )


def _failure_from_payload(item: Mapping[str, Any]) -> ActiveFailure:
    return ActiveFailure(
        partner=str(item["partner"]),
        failure_type=str(item.get("failure_type", "unknown")),
        failure_count=int(item.get("failure_count", 1) or 0),
        first_failure=parse_timestamp(item.get("first_failure")),
        last_error=int(item.get("last_error", 0) or 0),
    )


def _event_from_payload(item: Mapping[str, Any]) -> ReplicationEvent:
    return ReplicationEvent(
        timestamp=parse_timestamp(item.get("timestamp")) or 0.0,
        event_id=int(item.get("event_id", 0) or 0),
        level=str(item.get("level", "information")),
        message=str(item.get("message", "")),
    )


class CommandReplicationClient(ReplicationQueryClient, ReplicationCommandClient, DirectoryContext):
    """Runs external tools for every replication query and command.

    Each command is an argv template; ``{node}``, ``{partner}``,
    ``{partition}``, ``{site}`` and ``{since}`` are substituted per call.
    Metadata queries must print JSON.
    """

    def __init__(
        self,
        commands: Mapping[str, Sequence[str]],
        *,
        timeout_s: float = 120.0,
        runner: Runner = subprocess.run,
    ) -> None:
        self._commands = {name: list(argv) for name, argv in commands.items()}
        self._timeout_s = float(timeout_s)
        self._runner = runner

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CommandReplicationClient":
        replication_cfg = config.get("replication") if isinstance(config, Mapping) else None
        if not isinstance(replication_cfg, Mapping):
            raise ConfigurationError("replication section missing from configuration")
        commands = replication_cfg.get("commands")
        if not isinstance(commands, Mapping) or not commands:
            raise ConfigurationError("replication.commands must map command names to argv lists")
        return cls(
            {str(name): [str(arg) for arg in argv] for name, argv in commands.items()},
            timeout_s=float(replication_cfg.get("command_timeout_s", 120.0)),
        )

    def query_partner_metadata(self, node: str) -> list[PartnerLink]:
        payload = self._run_json("partner_metadata", node=node)
        return [_partner_from_payload(item) for item in self._as_list(payload, "partner_metadata")]

    def query_active_failures(self, node: str) -> list[ActiveFailure]:
        payload = self._run_json("active_failures", node=node)
        return [_failure_from_payload(item) for item in self._as_list(payload, "active_failures")]

    def invoke_sync(
        self,
        node: str,
        partner: str | None = None,
        partition: str | None = None,
    ) -> CommandResult:
        if partner is None:
            return self._run("sync_all", node=node)
        return self._run("sync", node=node, partner=partner, partition=partition or "")

    def invoke_verification_query(self, node: str) -> str:
        result = self._run("verify", node=node)
        if not result.succeeded:
            raise classify_failure(node, result.exit_code, result.output)
        return result.output

    def scan_event_log(self, node: str, since: float) -> list[ReplicationEvent] | None:
        if "event_log" not in self._commands:
            return None
        since_text = datetime.fromtimestamp(since, tz=timezone.utc).isoformat()
        payload = self._run_json("event_log", node=node, since=since_text)
        return [_event_from_payload(item) for item in self._as_list(payload, "event_log")]

    def run_diagnostic(self, node: str) -> CommandResult | None:
        if "diagnostic" not in self._commands:
            return None
        return self._run("diagnostic", node=node)

    def list_nodes(self) -> list[tuple[str, str | None]]:
        payload = self._run_json("list_nodes", node="")
        nodes: list[tuple[str, str | None]] = []
        for item in self._as_list(payload, "list_nodes"):
            if isinstance(item, Mapping):
                site = item.get("site")
                nodes.append((str(item["name"]), str(site) if site else None))
            else:
                nodes.append((str(item), None))
        return nodes

    def list_site_nodes(self, site: str) -> list[str]:
        payload = self._run_json("list_site_nodes", node="", site=site)
        names: list[str] = []
        for item in self._as_list(payload, "list_site_nodes"):
            names.append(str(item["name"]) if isinstance(item, Mapping) else str(item))
        return names

    def _argv(self, name: str, **values: str) -> list[str]:
        template = self._commands.get(name)
        if not template:
            raise ConfigurationError(f"No command configured for {name!r}")
        try:
            return [arg.format(**values) for arg in template]
        except KeyError as exc:
            raise ConfigurationError(f"Command {name!r} uses unknown placeholder {exc}") from exc

    def _run(self, name: str, **values: str) -> CommandResult:
        completed = self._complete(name, **values)
        output = (completed.stdout or "") + (completed.stderr or "")
        return CommandResult(exit_code=int(completed.returncode), output=output)

    def _complete(self, name: str, **values: str) -> subprocess.CompletedProcess:
        argv = self._argv(name, **values)
        node = values.get("node", "")
        LOGGER.debug("[Replication] %s: %s", name, " ".join(argv))
        try:
            completed = self._runner(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise QueryTimeoutError(
                f"{name} timed out after {self._timeout_s:.0f}s",
                context={"node": node},
            ) from exc
        except OSError as exc:
            raise CommandError(f"Could not run {argv[0]}: {exc}", context={"node": node}) from exc
        return completed

    def _run_json(self, name: str, **values: str) -> Any:
        completed = self._complete(name, **values)
        node = values.get("node", "")
        if completed.returncode != 0:
            output = (completed.stdout or "") + (completed.stderr or "")
            raise classify_failure(node, int(completed.returncode), output)
        try:
            return json.loads(completed.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise CommandError(f"{name} returned invalid JSON: {exc}", context={"node": node}) from exc

    def _as_list(self, payload: Any, name: str) -> list[Any]:
        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        raise CommandError(f"{name} returned {type(payload).__name__}, expected a list")
