"""Lineage index over recorded parent descriptors.

The dependency graph is the union of the parent descriptors stored in
version snapshots: by default those of each artifact's latest version, or of
every committed version when ``all_versions=True``. Queries walk it
breadth-first:

- children_of: downstream artifacts whose parents reference a path
- lineage_of: upstream artifacts through the parents of successive latest
  versions

A visited set bounds every walk. After the walk the discovered edges are
topologically sorted (Kahn's algorithm); nodes left over sit on, or
downstream of, a cycle. A cycle is a data anomaly: it is logged, or raised as
CycleDetectedError on request, and never causes a hang.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from typing import Any

from artifact_ledger.catalog import Catalog, CatalogState
from artifact_ledger.errors import CorruptStateError, CycleDetectedError, PolicyError
from artifact_ledger.hashing import normalize_path
from artifact_ledger.version_store import ParentDescriptor, VersionStore

logger = logging.getLogger(__name__)

Depth = int | float


@dataclass(frozen=True)
class LineageRow:
    """One parent-to-child edge found by a lineage query.

    Attributes:
        level: Distance from the query's starting artifact (1 = immediate).
        child_path: Path of the downstream artifact.
        child_version_id: Version of the child that recorded the parent.
        parent_path: Path of the upstream artifact.
        parent_version_id: Parent version pinned by the child.
    """

    level: int
    child_path: str
    child_version_id: str
    parent_path: str
    parent_version_id: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "level": self.level,
            "child_path": self.child_path,
            "child_version_id": self.child_version_id,
            "parent_path": self.parent_path,
            "parent_version_id": self.parent_version_id,
        }


def validate_depth(depth: Depth) -> Depth:
    """Accept an int >= 1 or math.inf.

    Raises:
        PolicyError: For any other value.
    """
    if isinstance(depth, bool):
        raise PolicyError(f"depth must be an integer >= 1 or math.inf, got {depth!r}")
    if isinstance(depth, float) and math.isinf(depth) and depth > 0:
        return depth
    if isinstance(depth, int) and depth >= 1:
        return depth
    raise PolicyError(f"depth must be an integer >= 1 or math.inf, got {depth!r}")


def find_cycle_nodes(rows: Iterable[LineageRow]) -> set[str]:
    """Return nodes that cannot be topologically ordered (empty if acyclic)."""
    successors: dict[str, set[str]] = defaultdict(set)
    in_degree: dict[str, int] = defaultdict(int)
    nodes: set[str] = set()

    for row in rows:
        nodes.add(row.parent_path)
        nodes.add(row.child_path)
        if row.child_path not in successors[row.parent_path]:
            successors[row.parent_path].add(row.child_path)
            in_degree[row.child_path] += 1

    queue = deque(node for node in nodes if in_degree[node] == 0)
    ordered: set[str] = set()
    while queue:
        node = queue.popleft()
        ordered.add(node)
        for succ in successors[node]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                queue.append(succ)

    return nodes - ordered


class LineageIndex:
    """Answers parent/child queries over committed snapshots.

    Example usage:
        index = LineageIndex(catalog, version_store)
        index.children_of("/data/raw.parquet", depth=math.inf)
        index.lineage_of("/data/model.pkl", depth=2)
    """

    def __init__(self, catalog: Catalog, versions: VersionStore) -> None:
        self.catalog = catalog
        self.versions = versions

    def _read_parents(self, path: str, version_id: str) -> list[ParentDescriptor]:
        version_dir = self.versions.version_dir(path, version_id)
        try:
            return self.versions.parents(version_dir)
        except CorruptStateError as exc:
            logger.warning("Ignoring unreadable parents for %s @ %s: %s", path, version_id, exc)
            return []

    def parents_of(self, path: str, version_id: str | None = None) -> list[ParentDescriptor]:
        """Parents recorded by ``version_id`` (default: the latest version)."""
        normalized = normalize_path(path)
        vid = version_id or self.catalog.latest(normalized)
        if vid is None:
            return []
        return self._read_parents(normalized, vid)

    def _iter_edges(self, state: CatalogState, all_versions: bool) -> Iterator[LineageRow]:
        for artifact in state.artifacts.values():
            if all_versions:
                version_ids = [row.version_id for row in state.versions_for(artifact.artifact_id)]
            elif artifact.latest_version_id is not None:
                version_ids = [artifact.latest_version_id]
            else:
                version_ids = []
            for vid in version_ids:
                for parent in self._read_parents(artifact.path, vid):
                    yield LineageRow(
                        level=0,
                        child_path=artifact.path,
                        child_version_id=vid,
                        parent_path=parent.path,
                        parent_version_id=parent.version_id,
                    )

    def edges(self, all_versions: bool = False) -> list[LineageRow]:
        """Every recorded parent-to-child edge (level 0), sorted by child."""
        rows = list(self._iter_edges(self.catalog.load(), all_versions))
        rows.sort(key=lambda r: (r.child_path, r.child_version_id, r.parent_path))
        return rows

    def _report_cycles(self, rows: list[LineageRow], raise_on_cycle: bool) -> None:
        cycle_nodes = find_cycle_nodes(rows)
        if not cycle_nodes:
            return
        if raise_on_cycle:
            raise CycleDetectedError(cycle_nodes)
        logger.warning("Cycle detected in lineage among: %s", ", ".join(sorted(cycle_nodes)))

    def children_of(
        self,
        path: str,
        version_id: str | None = None,
        depth: Depth = 1,
        all_versions: bool = False,
        raise_on_cycle: bool = False,
    ) -> list[LineageRow]:
        """Find artifacts that depend on ``path``.

        Args:
            path: Artifact path to start from.
            version_id: If given, only children pinning this exact version of
                ``path`` are returned at level 1.
            depth: Levels to expand (int >= 1 or math.inf).
            all_versions: Consider parents recorded by every committed version,
                not only the latest version of each artifact.
            raise_on_cycle: Raise CycleDetectedError instead of logging.

        Returns:
            Lineage rows in breadth-first order.
        """
        depth = validate_depth(depth)
        start = normalize_path(path)

        by_parent: dict[str, list[LineageRow]] = defaultdict(list)
        for edge in self.edges(all_versions):
            by_parent[edge.parent_path].append(edge)

        rows: list[LineageRow] = []
        visited: set[str] = {start}
        queue: deque[tuple[str, str | None, int]] = deque([(start, version_id, 0)])

        while queue:
            current, pinned, level = queue.popleft()
            if level >= depth:
                continue
            for edge in sorted(by_parent.get(current, []), key=lambda e: (e.child_path, e.child_version_id)):
                if pinned is not None and edge.parent_version_id != pinned:
                    continue
                rows.append(replace(edge, level=level + 1))
                if edge.child_path not in visited:
                    visited.add(edge.child_path)
                    queue.append((edge.child_path, None, level + 1))

        self._report_cycles(rows, raise_on_cycle)
        return rows

    def lineage_of(self, path: str, depth: Depth = 1, raise_on_cycle: bool = False) -> list[LineageRow]:
        """Walk upward through the parents of successive latest versions.

        Args:
            path: Artifact path to start from.
            depth: Levels to expand (int >= 1 or math.inf).
            raise_on_cycle: Raise CycleDetectedError instead of logging.

        Returns:
            Lineage rows in breadth-first order; ``child_path`` is the artifact
            whose latest version recorded the parent.
        """
        depth = validate_depth(depth)
        start = normalize_path(path)
        state = self.catalog.load()
        latest = {row.path: row.latest_version_id for row in state.artifacts.values()}

        rows: list[LineageRow] = []
        visited: set[str] = {start}
        queue: deque[tuple[str, int]] = deque([(start, 0)])

        while queue:
            current, level = queue.popleft()
            if level >= depth:
                continue
            vid = latest.get(current)
            if vid is None:
                continue
            for parent in self._read_parents(current, vid):
                rows.append(
                    LineageRow(
                        level=level + 1,
                        child_path=current,
                        child_version_id=vid,
                        parent_path=parent.path,
                        parent_version_id=parent.version_id,
                    )
                )
                if parent.path not in visited:
                    visited.add(parent.path)
                    queue.append((parent.path, level + 1))

        self._report_cycles(rows, raise_on_cycle)
        return rows
