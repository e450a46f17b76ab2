"""Tests for rebuild planning."""

from __future__ import annotations

import math

import pytest

from artifact_ledger.errors import PolicyError
from artifact_ledger.planner import PlanEntry
from artifact_ledger.store import SaveResult, Store
from artifact_ledger.version_store import ParentDescriptor


def _pin(result: SaveResult) -> ParentDescriptor:
    return ParentDescriptor(path=result.path, version_id=result.version_id)


def _levels(entries: list[PlanEntry]) -> list[tuple[int, str]]:
    return [(e.level, e.path.rsplit("/", 1)[-1]) for e in entries]


class TestPropagateMode:
    """Tests for the default propagating planner."""

    def test_schedules_all_descendants_by_level(self, store: Store, chain: dict[str, SaveResult]) -> None:
        entries = store.plan_rebuild("a.pkl")

        assert _levels(entries) == [(1, "b.pkl"), (2, "c.pkl"), (2, "d.pkl")]
        assert all(e.reason == "upstream_changed" for e in entries)
        assert entries[0].latest_version_before == chain["b"].version_id

    def test_depth_limits_levels(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert _levels(store.plan_rebuild("a.pkl", depth=1)) == [(1, "b.pkl")]

    def test_targets_never_appear_below_level_zero(self, store: Store, chain: dict[str, SaveResult]) -> None:
        entries = store.plan_rebuild(["a.pkl", "b.pkl"])
        assert _levels(entries) == [(1, "c.pkl"), (1, "d.pkl")]

    def test_diamond_keeps_lowest_level_once(self, store: Store) -> None:
        a = store.save({"v": "a"}, "a.pkl")
        b = store.save({"v": "b"}, "b.pkl", parents=[_pin(a)])
        c = store.save({"v": "c"}, "c.pkl", parents=[_pin(a)])
        store.save({"v": "d"}, "d.pkl", parents=[_pin(b), _pin(c)])
        store.save({"v": "e"}, "e.pkl", parents=[_pin(a), _pin(b)])

        assert _levels(store.plan_rebuild("a.pkl")) == [
            (1, "b.pkl"),
            (1, "c.pkl"),
            (1, "e.pkl"),
            (2, "d.pkl"),
        ]

    def test_leaf_target_gives_empty_plan(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert store.plan_rebuild("c.pkl") == []

    def test_cycle_terminates(self, store: Store) -> None:
        a = store.save({"value": 1}, "a.pkl")
        b = store.save({"value": 2}, "b.pkl", parents=[_pin(a)])
        store.save({"value": 3}, "a.pkl", parents=[_pin(b)])

        assert _levels(store.plan_rebuild("a.pkl", depth=math.inf)) == [(1, "b.pkl")]


class TestStrictMode:
    """Tests for the strict (already-stale only) planner."""

    def test_only_stale_children(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")

        entries = store.plan_rebuild("a.pkl", mode="strict")

        assert _levels(entries) == [(1, "b.pkl")]
        assert entries[0].reason == "parent_changed"

    def test_nothing_stale_gives_empty_plan(self, store: Store, chain: dict[str, SaveResult]) -> None:
        assert store.plan_rebuild("a.pkl", mode="strict") == []


class TestIncludeTargets:
    """Tests for level-zero target inclusion."""

    def test_stale_target_included(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")

        entries = store.plan_rebuild("b.pkl", include_targets=True)

        assert _levels(entries) == [(0, "b.pkl"), (1, "c.pkl"), (1, "d.pkl")]

    def test_current_target_not_included(self, store: Store, chain: dict[str, SaveResult]) -> None:
        entries = store.plan_rebuild("a.pkl", include_targets=True, depth=1)
        assert _levels(entries) == [(1, "b.pkl")]


class TestPlanValidation:
    """Tests for argument validation."""

    def test_unknown_mode(self, store: Store) -> None:
        with pytest.raises(PolicyError, match="mode"):
            store.plan_rebuild("a.pkl", mode="eager")

    def test_invalid_depth(self, store: Store) -> None:
        with pytest.raises(PolicyError, match="depth"):
            store.plan_rebuild("a.pkl", depth=0)

    def test_empty_targets(self, store: Store) -> None:
        with pytest.raises(PolicyError, match="target"):
            store.plan_rebuild([])


class TestEndToEndScenario:
    """Save A, build B from A@v1, change A: B is stale and is the only rebuild."""

    def test_scenario(self, store: Store) -> None:
        v1 = store.save({"rows": [1, 2]}, "a.pkl")
        w1 = store.save({"total": 3}, "b.pkl", parents=[_pin(v1)])
        v2 = store.save({"rows": [1, 2, 3]}, "a.pkl")

        assert v2.version_id != v1.version_id
        assert store.is_stale("b.pkl")

        rows = store.children_of("a.pkl")
        assert [(r.child_path, r.child_version_id, r.parent_path, r.parent_version_id) for r in rows] == [
            (w1.path, w1.version_id, v1.path, v1.version_id)
        ]

        plan = store.plan_rebuild(["a.pkl"])
        assert [(e.level, e.path) for e in plan] == [(1, w1.path)]

        store.save({"total": 6}, "b.pkl", parents=[_pin(v2)])
        assert not store.is_stale("b.pkl")
