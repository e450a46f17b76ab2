"""Staleness detection against upstream latest versions.

An artifact is stale when any parent pinned by its latest version is no
longer that parent's current latest version. Artifacts without recorded
parents are never stale. An artifact whose own latest version cannot be
resolved is reported as ``unknown``, which counts as stale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from artifact_ledger.catalog import Catalog
from artifact_ledger.errors import CorruptStateError
from artifact_ledger.hashing import normalize_path
from artifact_ledger.version_store import VersionStore

StalenessStatus = Literal["current", "stale", "unknown"]


@dataclass
class StaleParent:
    """A parent whose pinned version differs from its current latest."""

    path: str
    pinned_version_id: str
    latest_version_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "pinned_version_id": self.pinned_version_id,
            "latest_version_id": self.latest_version_id,
        }


@dataclass
class StalenessReport:
    """Outcome of a staleness check for one artifact."""

    path: str
    status: StalenessStatus
    reason: str
    stale_parents: list[StaleParent] = field(default_factory=list)

    @property
    def is_stale(self) -> bool:
        """Stale or unknown both need attention."""
        return self.status != "current"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "path": self.path,
            "status": self.status,
            "reason": self.reason,
            "stale_parents": [p.to_dict() for p in self.stale_parents],
        }


class StalenessDetector:
    """Compares pinned parent versions with each parent's current latest."""

    def __init__(self, catalog: Catalog, versions: VersionStore) -> None:
        self.catalog = catalog
        self.versions = versions

    def check(self, path: str) -> StalenessReport:
        """Classify ``path`` as current, stale, or unknown."""
        normalized = normalize_path(path)
        state = self.catalog.load()
        latest = {row.path: row.latest_version_id for row in state.artifacts.values()}

        own_latest = latest.get(normalized)
        if own_latest is None:
            return StalenessReport(path=normalized, status="unknown", reason="no_versions")

        version_dir = self.versions.version_dir(normalized, own_latest)
        if not version_dir.exists():
            return StalenessReport(path=normalized, status="unknown", reason="missing_snapshot")
        try:
            parents = self.versions.parents(version_dir)
        except CorruptStateError as exc:
            return StalenessReport(path=normalized, status="unknown", reason=f"unreadable_parents: {exc}")

        if not parents:
            return StalenessReport(path=normalized, status="current", reason="no_parents")

        stale = [
            StaleParent(
                path=parent.path,
                pinned_version_id=parent.version_id,
                latest_version_id=latest.get(parent.path),
            )
            for parent in parents
            if latest.get(parent.path) != parent.version_id
        ]
        if not stale:
            return StalenessReport(path=normalized, status="current", reason="parents_current")
        if any(p.latest_version_id is None for p in stale):
            reason = "parent_missing"
        else:
            reason = "parent_changed"
        return StalenessReport(path=normalized, status="stale", reason=reason, stale_parents=stale)

    def is_stale(self, path: str) -> bool:
        """True if ``path`` is stale or its state cannot be resolved."""
        return self.check(path).is_stale
