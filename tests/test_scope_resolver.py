"""Tests for scope resolution and node list normalization."""

from __future__ import annotations

import pytest

from core.errors import ConfigurationError, EmptyScopeError
from core.gate import ConfirmationGate
from services.scope_resolver import ScopeSpec, normalize_node_list, resolve_scope


class _FakeDirectory:
    def __init__(self, nodes: list[tuple[str, str | None]] | None = None) -> None:
        self._nodes = nodes or []
        self.calls: list[str] = []

    def list_nodes(self) -> list[tuple[str, str | None]]:
        self.calls.append("list_nodes")
        return list(self._nodes)

    def list_site_nodes(self, site: str) -> list[str]:
        self.calls.append(f"list_site_nodes:{site}")
        return [name for name, node_site in self._nodes if node_site == site]


def _gate(answer: bool = True, **kwargs) -> ConfirmationGate:
    return ConfirmationGate(prompt=lambda _question: answer, **kwargs)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("dc1,dc2;dc3 dc4", ["dc1", "dc2", "dc3", "dc4"]),
        (" dc1 ,, dc2 ;", ["dc1", "dc2"]),
        (["dc2", "DC1", "dc2", "dc1"], ["dc2", "DC1"]),
        (["dc1, dc3", "dc2"], ["dc1", "dc3", "dc2"]),
        ("", []),
        (None, []),
    ],
)
def test_normalize_node_list(raw, expected) -> None:
    assert normalize_node_list(raw) == expected


def test_explicit_scope_preserves_order_and_first_spelling() -> None:
    directory = _FakeDirectory()
    resolution = resolve_scope(ScopeSpec.explicit("DC-B, dc-a; dc-b"), directory, _gate())

    assert [node.name for node in resolution.nodes] == ["DC-B", "dc-a"]
    assert resolution.cancelled is False
    assert directory.calls == []


def test_empty_explicit_scope_fails_before_directory_is_called() -> None:
    directory = _FakeDirectory([("dc1", "hq")])

    with pytest.raises(ConfigurationError):
        resolve_scope(ScopeSpec.explicit(" ,; "), directory, _gate())

    assert directory.calls == []


def test_site_scope_returns_site_members() -> None:
    directory = _FakeDirectory([("dc1", "hq"), ("dc2", "branch"), ("dc3", "hq")])

    resolution = resolve_scope(ScopeSpec.for_site("hq"), directory, _gate())

    assert [node.name for node in resolution.nodes] == ["dc1", "dc3"]
    assert all(node.site == "hq" for node in resolution.nodes)
    assert resolution.description == "site: hq"


def test_empty_site_raises_empty_scope() -> None:
    with pytest.raises(EmptyScopeError):
        resolve_scope(ScopeSpec.for_site("nowhere"), _FakeDirectory([("dc1", "hq")]), _gate())


def test_blank_site_name_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        resolve_scope(ScopeSpec.for_site("  "), _FakeDirectory(), _gate())


def test_fleet_scope_cancelled_at_gate_does_not_query_directory() -> None:
    directory = _FakeDirectory([("dc1", "hq")])

    resolution = resolve_scope(ScopeSpec.fleet(), directory, _gate(answer=False))

    assert resolution.cancelled is True
    assert resolution.nodes == ()
    assert directory.calls == []


def test_fleet_scope_deduplicates_directory_results() -> None:
    directory = _FakeDirectory([("dc1", "hq"), ("DC1", "hq"), ("dc2", None)])

    resolution = resolve_scope(ScopeSpec.fleet(), directory, _gate(unattended=True))

    assert [node.name for node in resolution.nodes] == ["dc1", "dc2"]


def test_fleet_scope_in_dry_run_still_resolves() -> None:
    directory = _FakeDirectory([("dc1", "hq")])

    resolution = resolve_scope(ScopeSpec.fleet(), directory, _gate(answer=False, dry_run=True))

    assert [node.name for node in resolution.nodes] == ["dc1"]


def test_unknown_scope_mode_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        resolve_scope(ScopeSpec(mode="galaxy"), _FakeDirectory(), _gate())
