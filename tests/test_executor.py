"""Tests for level-ordered rebuild execution."""

from __future__ import annotations

import threading

import pytest

from artifact_ledger.errors import BuilderFailureError
from artifact_ledger.executor import BuildOutput
from artifact_ledger.store import SaveResult, Store
from artifact_ledger.version_store import ParentDescriptor


def _name(path: str) -> str:
    return path.rsplit("/", 1)[-1]


class TestBuildOutput:
    """Tests for coercing builder return values."""

    def test_mapping_bundle(self) -> None:
        output = BuildOutput.coerce("/a", {"obj": 1, "metadata": {"k": "v"}})
        assert output.obj == 1
        assert output.metadata == {"k": "v"}

    def test_missing_obj(self) -> None:
        with pytest.raises(BuilderFailureError, match="obj"):
            BuildOutput.coerce("/a", {"metadata": {}})

    def test_unknown_keys(self) -> None:
        with pytest.raises(BuilderFailureError, match="unknown bundle keys"):
            BuildOutput.coerce("/a", {"obj": 1, "colour": "red"})

    def test_wrong_type(self) -> None:
        with pytest.raises(BuilderFailureError, match="expected BuildOutput"):
            BuildOutput.coerce("/a", 42)


class TestRebuildExecutor:
    """Tests for executing rebuild plans."""

    def _builder(self, store: Store, calls: list[str]):
        def build(path: str, parents: list[ParentDescriptor]) -> BuildOutput:
            calls.append(_name(path))
            total = sum(store.load(p.path)["value"] for p in parents)
            return BuildOutput(obj={"value": total + 1}, metadata={"rebuilt": True})

        return build

    def test_rebuild_clears_staleness(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")
        calls: list[str] = []

        results = store.rebuild(store.plan_rebuild("a.pkl"), self._builder(store, calls))

        assert calls == ["b.pkl", "c.pkl", "d.pkl"]
        assert [(r.level, _name(r.path), r.status) for r in results] == [
            (1, "b.pkl", "built"),
            (2, "c.pkl", "built"),
            (2, "d.pkl", "built"),
        ]
        assert store.load("b.pkl") == {"value": 101}
        assert store.load("c.pkl") == {"value": 102}
        for name in ("b.pkl", "c.pkl", "d.pkl"):
            assert not store.is_stale(name)
        assert store.info("b.pkl").parents == [
            ParentDescriptor(path=store.resolve("a.pkl"), version_id=store.latest("a.pkl"))
        ]

    def test_identical_output_still_repins_parents(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")

        results = store.rebuild(
            store.plan_rebuild("a.pkl", depth=1),
            lambda path, parents: {"obj": {"value": 2}},
        )

        assert results[0].status == "built"
        assert not store.is_stale("b.pkl")

    def test_failure_is_isolated(self, store: Store) -> None:
        a = store.save({"value": 1}, "a.pkl")
        pin_a = ParentDescriptor(a.path, a.version_id)
        b = store.save({"value": 2}, "b.pkl", parents=[pin_a])
        store.save({"value": 3}, "c.pkl", parents=[ParentDescriptor(b.path, b.version_id)])
        store.save({"value": 4}, "e.pkl", parents=[pin_a])
        store.save({"value": 10}, "a.pkl")

        def build(path: str, parents: list[ParentDescriptor]) -> dict:
            if path.endswith("b.pkl"):
                raise RuntimeError("disk on fire")
            return {"obj": {"value": 0}}

        results = {_name(r.path): r for r in store.rebuild(store.plan_rebuild("a.pkl"), build)}

        assert results["b.pkl"].status == "failed"
        assert "disk on fire" in results["b.pkl"].message
        assert results["e.pkl"].status == "built"
        assert results["c.pkl"].status == "failed"
        assert "upstream failed" in results["c.pkl"].message

    def test_dry_run_calls_nothing(self, store: Store, chain: dict[str, SaveResult]) -> None:
        before = store.latest("b.pkl")
        calls: list[str] = []

        results = store.rebuild(store.plan_rebuild("a.pkl"), self._builder(store, calls), dry_run=True)

        assert calls == []
        assert {r.status for r in results} == {"skipped"}
        assert store.latest("b.pkl") == before

    def test_cancel_skips_remaining_levels(self, store: Store, chain: dict[str, SaveResult]) -> None:
        cancel = threading.Event()
        cancel.set()

        results = store.rebuild(store.plan_rebuild("a.pkl"), lambda p, ps: {"obj": 0}, cancel_event=cancel)

        assert {r.status for r in results} == {"skipped"}
        assert {r.message for r in results} == {"cancelled"}

    def test_mapping_builders_resolve_relative_keys(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")
        builders = {"b.pkl": lambda path, parents: {"obj": {"value": 7}}}

        results = store.rebuild(store.plan_rebuild("a.pkl"), builders)
        by_name = {_name(r.path): r for r in results}

        assert by_name["b.pkl"].status == "built"
        assert by_name["c.pkl"].status == "failed"
        assert "no builder registered" in by_name["c.pkl"].message

    def test_malformed_bundle_fails_entry(self, store: Store, chain: dict[str, SaveResult]) -> None:
        results = store.rebuild(store.plan_rebuild("a.pkl", depth=1), lambda path, parents: "not a bundle")
        assert results[0].status == "failed"
        assert "expected BuildOutput" in results[0].message

    def test_empty_plan(self, store: Store) -> None:
        assert store.rebuild([], lambda p, ps: {"obj": 0}) == []
