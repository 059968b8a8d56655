"""Resolve operator-supplied scope into a concrete, ordered node list."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Iterable, Sequence

from core.errors import ConfigurationError, EmptyScopeError
from core.gate import ConfirmationGate, GateDecision
from core.logging import logger as LOGGER
from core.models import NodeRef
from replication.interfaces import DirectoryContext


_SPLIT_PATTERN = re.compile(r"[,;\s]+")


class ScopeMode(str, Enum):
    EXPLICIT = "explicit"
    SITE = "site"
    FLEET = "fleet"


@dataclass(frozen=True)
class ScopeSpec:
    """Operator-supplied scope: explicit nodes, one site, or the whole fleet."""

    mode: ScopeMode | str
    nodes: Sequence[str] | str | None = None
    site: str | None = None

    @classmethod
    def explicit(cls, nodes: Sequence[str] | str) -> "ScopeSpec":
        return cls(mode=ScopeMode.EXPLICIT, nodes=nodes)

    @classmethod
    def for_site(cls, site: str) -> "ScopeSpec":
        return cls(mode=ScopeMode.SITE, site=site)

    @classmethod
    def fleet(cls) -> "ScopeSpec":
        return cls(mode=ScopeMode.FLEET)


@dataclass(frozen=True)
class ScopeResolution:
    nodes: tuple[NodeRef, ...] = field(default_factory=tuple)
    description: str = ""
    cancelled: bool = False


def normalize_node_list(nodes: Sequence[str] | str | None) -> list[str]:
    """Split, trim and de-duplicate node names, keeping first-seen order."""

    if nodes is None:
        return []
    if isinstance(nodes, str):
        raw: Iterable[str] = _SPLIT_PATTERN.split(nodes)
    else:
        raw = [part for entry in nodes for part in _SPLIT_PATTERN.split(str(entry))]
    seen: set[str] = set()
    ordered: list[str] = []
    for entry in raw:
        name = entry.strip()
        if not name:
            continue
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        ordered.append(name)
    return ordered


def _coerce_mode(mode: ScopeMode | str) -> ScopeMode:
    if isinstance(mode, ScopeMode):
        return mode
    try:
        return ScopeMode(str(mode).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unknown scope mode {mode!r}", context={"mode": mode}) from exc


def _refs(pairs: Iterable[tuple[str, str | None]]) -> tuple[NodeRef, ...]:
    seen: set[str] = set()
    refs: list[NodeRef] = []
    for name, site in pairs:
        name = name.strip()
        key = name.lower()
        if not name or key in seen:
            continue
        seen.add(key)
        refs.append(NodeRef(name=name, site=site))
    return tuple(refs)


def resolve_scope(
    spec: ScopeSpec,
    directory: DirectoryContext,
    gate: ConfirmationGate,
) -> ScopeResolution:
    """Turn ``spec`` into the node set every later stage works on.

    Raises:
        ConfigurationError: empty explicit list, missing site name, or an
            unknown mode.
        EmptyScopeError: site or fleet resolved to zero nodes.
    """

    mode = _coerce_mode(spec.mode)

    if mode is ScopeMode.EXPLICIT:
        names = normalize_node_list(spec.nodes)
        if not names:
            raise ConfigurationError("Explicit scope requires at least one node")
        nodes = _refs((name, None) for name in names)
        LOGGER.info("[Scope] Explicit scope: %d node(s)", len(nodes))
        return ScopeResolution(nodes=nodes, description=f"nodes: {', '.join(n.name for n in nodes)}")

    if mode is ScopeMode.SITE:
        site = (spec.site or "").strip()
        if not site:
            raise ConfigurationError("Site scope requires a site name")
        names = directory.list_site_nodes(site)
        nodes = _refs((name, site) for name in names)
        if not nodes:
            raise EmptyScopeError(f"Site {site} has no replication nodes", context={"site": site})
        LOGGER.info("[Scope] Site %s: %d node(s)", site, len(nodes))
        return ScopeResolution(nodes=nodes, description=f"site: {site}")

    decision = gate.confirm_fleet()
    if decision is GateDecision.CANCEL:
        LOGGER.info("[Scope] Fleet-wide run cancelled at confirmation")
        return ScopeResolution(description="fleet", cancelled=True)
    nodes = _refs(directory.list_nodes())
    if not nodes:
        raise EmptyScopeError("Fleet has no replication nodes")
    LOGGER.info("[Scope] Fleet: %d node(s)", len(nodes))
    return ScopeResolution(nodes=nodes, description="fleet")
