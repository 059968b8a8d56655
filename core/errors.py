"""Error hierarchy for replica health orchestration.

Transient errors are retried with backoff, permanent errors are surfaced
immediately for the affected node only, and configuration errors abort the
whole run before any node is touched.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AccessDeniedError",
    "CommandError",
    "ConfigurationError",
    "EmptyScopeError",
    "NodeUnreachableError",
    "ObjectNotFoundError",
    "PermanentReplicationError",
    "QueryTimeoutError",
    "ReplicaHealthError",
    "ReplicationError",
    "TransientReplicationError",
]


class ReplicaHealthError(Exception):
    """Base exception for all orchestrator errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """

    code: str = "REPLICA_HEALTH_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ReplicationError(ReplicaHealthError):
    """Error raised by the external replication subsystem."""

    code: str = "REPLICATION_ERROR"
    retryable: bool = False


class TransientReplicationError(ReplicationError):
    """Remote error that may succeed on a later attempt."""

    code: str = "REPLICATION_TRANSIENT"
    retryable: bool = True


class NodeUnreachableError(TransientReplicationError):
    """Transport reported that the node could not be contacted."""

    code: str = "NODE_UNREACHABLE"


class QueryTimeoutError(TransientReplicationError):
    """A single remote call exceeded its own timeout."""

    code: str = "QUERY_TIMEOUT"


class PermanentReplicationError(ReplicationError):
    """Remote error that will not improve by retrying."""

    code: str = "REPLICATION_PERMANENT"


class AccessDeniedError(PermanentReplicationError):
    code: str = "ACCESS_DENIED"


class ObjectNotFoundError(PermanentReplicationError):
    code: str = "OBJECT_NOT_FOUND"


class CommandError(ReplicaHealthError):
    """External command produced output that could not be interpreted."""

    code: str = "COMMAND_ERROR"


class ConfigurationError(ReplicaHealthError):
    """Invalid scope or configuration; fails the run before touching nodes."""

    code: str = "CONFIGURATION_ERROR"


class EmptyScopeError(ConfigurationError):
    """Scope resolved to zero nodes."""

    code: str = "EMPTY_SCOPE"
