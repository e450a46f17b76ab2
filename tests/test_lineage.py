"""Tests for lineage queries over recorded parents."""

from __future__ import annotations

import logging
import math

import pytest

from artifact_ledger.errors import CycleDetectedError, PolicyError
from artifact_ledger.lineage import LineageRow, find_cycle_nodes, validate_depth
from artifact_ledger.store import SaveResult, Store
from artifact_ledger.version_store import ParentDescriptor


def _pin(result: SaveResult) -> ParentDescriptor:
    return ParentDescriptor(path=result.path, version_id=result.version_id)


def _edges(rows: list[LineageRow]) -> list[tuple[int, str, str]]:
    return [(r.level, r.parent_path.rsplit("/", 1)[-1], r.child_path.rsplit("/", 1)[-1]) for r in rows]


class TestValidateDepth:
    """Tests for depth validation."""

    def test_accepts_positive_int_and_inf(self) -> None:
        assert validate_depth(1) == 1
        assert validate_depth(math.inf) == math.inf

    @pytest.mark.parametrize("depth", [0, -1, 1.5, True, -math.inf])
    def test_rejects_other_values(self, depth: object) -> None:
        with pytest.raises(PolicyError):
            validate_depth(depth)


class TestChildrenOf:
    """Tests for downstream queries."""

    def test_immediate_children(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert _edges(store.children_of("a.pkl")) == [(1, "a.pkl", "b.pkl")]

    def test_unbounded_depth(self, store: Store, chain: dict[str, SaveResult]) -> None:
        rows = store.children_of("a.pkl", depth=math.inf)
        assert _edges(rows) == [
            (1, "a.pkl", "b.pkl"),
            (2, "b.pkl", "c.pkl"),
            (2, "b.pkl", "d.pkl"),
        ]
        assert rows[0].child_version_id == chain["b"].version_id
        assert rows[0].parent_version_id == chain["a"].version_id

    def test_version_filter_applies_to_first_level(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 10}, "a.pkl")
        assert store.children_of("a.pkl", version_id=chain["a"].version_id) != []
        assert store.children_of("a.pkl", version_id=store.latest("a.pkl")) == []

    def test_all_versions_includes_history(self, store: Store) -> None:
        a = store.save({"value": 1}, "a.pkl")
        other = store.save({"value": 1}, "other.pkl")
        store.save({"value": 2}, "b.pkl", parents=[_pin(a)])
        store.save({"value": 3}, "b.pkl", parents=[_pin(other)])

        assert store.children_of("a.pkl") == []
        history = store.lineage.children_of(store.resolve("a.pkl"), all_versions=True)
        assert _edges(history) == [(1, "a.pkl", "b.pkl")]

    def test_leaf_has_no_children(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert store.children_of("c.pkl", depth=math.inf) == []


class TestLineageOf:
    """Tests for upstream queries."""

    def test_walks_up_to_roots(self, store: Store, chain: dict[str, SaveResult]) -> None:
        rows = store.lineage_of("c.pkl", depth=math.inf)
        assert _edges(rows) == [(1, "b.pkl", "c.pkl"), (2, "a.pkl", "b.pkl")]

    def test_depth_limits_walk(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert _edges(store.lineage_of("c.pkl")) == [(1, "b.pkl", "c.pkl")]

    def test_root_has_no_lineage(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert store.lineage_of("a.pkl", depth=math.inf) == []


class TestCycles:
    """Tests for cycle detection in recorded lineage."""

    @pytest.fixture
    def cyclic(self, store: Store) -> Store:
        a = store.save({"value": 1}, "a.pkl")
        b = store.save({"value": 2}, "b.pkl", parents=[_pin(a)])
        store.save({"value": 3}, "a.pkl", parents=[_pin(b)])
        return store

    def test_walk_terminates_and_warns(self, cyclic: Store, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="artifact_ledger.lineage"):
            rows = cyclic.children_of("a.pkl", depth=math.inf)
        assert _edges(rows) == [(1, "a.pkl", "b.pkl"), (2, "b.pkl", "a.pkl")]
        assert "Cycle detected" in caplog.text

    def test_raise_on_cycle(self, cyclic: Store) -> None:
        with pytest.raises(CycleDetectedError) as excinfo:
            cyclic.lineage.children_of(cyclic.resolve("a.pkl"), depth=math.inf, raise_on_cycle=True)
        assert excinfo.value.nodes == sorted([cyclic.resolve("a.pkl"), cyclic.resolve("b.pkl")])

    def test_find_cycle_nodes_acyclic(self) -> None:
        rows = [LineageRow(1, "/b", "vb", "/a", "va"), LineageRow(2, "/c", "vc", "/b", "vb")]
        assert find_cycle_nodes(rows) == set()
