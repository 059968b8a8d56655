"""Clients for the external replication subsystem."""

from replication.interfaces import (
    CommandResult,
    DirectoryContext,
    ReplicationCommandClient,
    ReplicationEvent,
    ReplicationQueryClient,
)

__all__ = [
    "CommandResult",
    "DirectoryContext",
    "ReplicationCommandClient",
    "ReplicationEvent",
    "ReplicationQueryClient",
]
