"""Narrow interfaces to the external directory-replication subsystem."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from core.models import ActiveFailure, PartnerLink


@dataclass(frozen=True)
class CommandResult:
    """Exit status and raw text of an external command."""

    exit_code: int
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def first_line(self, max_len: int = 160) -> str:
        lines = [line.strip() for line in self.output.splitlines() if line.strip()]
        if not lines:
            return ""
        line = lines[0]
        return line if len(line) <= max_len else line[: max_len - 1] + "…"


@dataclass(frozen=True)
class ReplicationEvent:
    """Replication-related entry from a node's event log."""

    timestamp: float
    event_id: int
    level: str
    message: str = ""

    @property
    def is_error(self) -> bool:
        return self.level.lower() in {"error", "critical"}


class DirectoryContext(ABC):
    """Source of node membership for scope resolution."""

    @abstractmethod
    def list_nodes(self) -> list[tuple[str, str | None]]:
        """Return every node in the fleet as ``(name, site)`` pairs."""

    @abstractmethod
    def list_site_nodes(self, site: str) -> list[str]:
        """Return node names in the given site."""


class ReplicationQueryClient(ABC):
    """Read-only replication queries.

    Implementations raise ``NodeUnreachableError`` when the transport cannot
    contact the node, and other ``ReplicationError`` subclasses otherwise.
    """

    @abstractmethod
    def query_partner_metadata(self, node: str) -> list[PartnerLink]:
        """Return inbound partner links for ``node``."""

    @abstractmethod
    def query_active_failures(self, node: str) -> list[ActiveFailure]:
        """Return outstanding failures for ``node``; may be empty."""


class ReplicationCommandClient(ABC):
    """Mutating and verification commands against the replication subsystem."""

    @abstractmethod
    def invoke_sync(
        self,
        node: str,
        partner: str | None = None,
        partition: str | None = None,
    ) -> CommandResult:
        """Trigger synchronization; ``partner=None`` re-drives every link."""

    @abstractmethod
    def invoke_verification_query(self, node: str) -> str:
        """Return raw sync-status text for marker parsing."""

    def scan_event_log(self, node: str, since: float) -> list[ReplicationEvent] | None:
        """Return replication events since ``since``, or ``None`` if unsupported."""

        return None

    def run_diagnostic(self, node: str) -> CommandResult | None:
        """Run the third-party diagnostic, or ``None`` if unsupported."""

        return None
