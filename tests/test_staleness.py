"""Tests for staleness detection."""

from __future__ import annotations

import shutil

from artifact_ledger.retention import RetentionPolicy
from artifact_ledger.store import SaveResult, Store


class TestStalenessDetector:
    """Tests for current/stale/unknown classification."""

    def test_fresh_chain_is_current(self, store: Store, chain: dict[str, SaveResult]) -> None:
        for name in ("a.pkl", "b.pkl", "c.pkl", "d.pkl"):
            assert not store.is_stale(name)

        assert store.staleness_report("a.pkl").reason == "no_parents"
        assert store.staleness_report("b.pkl").reason == "parents_current"

    def test_parent_update_makes_child_stale(self, store: Store, chain: dict[str, SaveResult]) -> None:
        new_a = store.save({"value": 100}, "a.pkl")

        report = store.staleness_report("b.pkl")
        assert report.status == "stale"
        assert report.reason == "parent_changed"
        assert [p.to_dict() for p in report.stale_parents] == [
            {
                "path": store.resolve("a.pkl"),
                "pinned_version_id": chain["a"].version_id,
                "latest_version_id": new_a.version_id,
            }
        ]

    def test_staleness_is_not_transitive(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")
        assert store.is_stale("b.pkl")
        assert not store.is_stale("c.pkl")

    def test_unchanged_resave_keeps_children_current(self, store: Store, chain: dict[str, SaveResult]) -> None:
        result = store.save({"value": 1}, "a.pkl")
        assert not result.saved
        assert not store.is_stale("b.pkl")

    def test_unknown_artifact(self, store: Store) -> None:
        report = store.staleness_report("never-saved.pkl")
        assert report.status == "unknown"
        assert report.reason == "no_versions"
        assert store.is_stale("never-saved.pkl")

    def test_parent_without_versions(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.prune(["a.pkl"], RetentionPolicy(keep_n=0))

        report = store.staleness_report("b.pkl")
        assert report.status == "stale"
        assert report.reason == "parent_missing"
        assert report.stale_parents[0].latest_version_id is None

    def test_unreadable_parents_document(self, store: Store, chain: dict[str, SaveResult]) -> None:
        snapshot = store.snapshots.version_dir(chain["b"].path, chain["b"].version_id)
        (snapshot / "parents.json").write_text("not json")

        report = store.staleness_report("b.pkl")
        assert report.status == "unknown"
        assert report.reason.startswith("unreadable_parents")

    def test_missing_snapshot_is_unknown(self, store: Store, chain: dict[str, SaveResult]) -> None:
        store.save({"value": 100}, "a.pkl")
        assert store.is_stale("b.pkl")

        shutil.rmtree(store.snapshots.version_dir(chain["b"].path, chain["b"].version_id))

        report = store.staleness_report("b.pkl")
        assert report.status == "unknown"
        assert report.reason == "missing_snapshot"
        assert store.is_stale("b.pkl")
