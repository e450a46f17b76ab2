"""Rebuild planning over the lineage graph.

Two modes:

- propagate (default): targets are treated as "will change". Each level
  schedules the children whose immediate parents intersect the will-change
  set, and the newly scheduled children join that set, so effects flow
  transitively through artifacts that have not been rebuilt yet.
- strict: only children that are already stale against their parents'
  present latest versions are scheduled; nothing propagates.

An artifact reachable along several paths keeps the lowest level at which it
was first found, which keeps the plan topologically ordered for execution.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

from artifact_ledger.catalog import Catalog
from artifact_ledger.errors import PolicyError
from artifact_ledger.hashing import normalize_path
from artifact_ledger.lineage import Depth, LineageIndex, validate_depth
from artifact_ledger.staleness import StalenessDetector

logger = logging.getLogger(__name__)

PlanMode = Literal["propagate", "strict"]
PLAN_MODES: tuple[str, ...] = ("propagate", "strict")

REASON_UPSTREAM_CHANGED = "upstream_changed"
REASON_PARENT_CHANGED = "parent_changed"


@dataclass(frozen=True)
class PlanEntry:
    """One artifact scheduled for rebuild.

    Attributes:
        level: Breadth-first distance from the nearest target (0 = a target).
        path: Normalized artifact path.
        reason: ``upstream_changed`` (propagate) or ``parent_changed`` (strict).
        latest_version_before: Latest version id at planning time.
    """

    level: int
    path: str
    reason: str
    latest_version_before: str | None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "level": self.level,
            "path": self.path,
            "reason": self.reason,
            "latest_version_before": self.latest_version_before,
        }


class RebuildPlanner:
    """Computes leveled rebuild plans for changed artifacts.

    Example usage:
        planner = RebuildPlanner(catalog, lineage, staleness)
        for entry in planner.plan(["/data/raw.parquet"]):
            print(entry.level, entry.path)
    """

    def __init__(self, catalog: Catalog, lineage: LineageIndex, staleness: StalenessDetector) -> None:
        self.catalog = catalog
        self.lineage = lineage
        self.staleness = staleness

    def plan(
        self,
        targets: str | Iterable[str],
        depth: Depth = math.inf,
        include_targets: bool = False,
        mode: PlanMode = "propagate",
    ) -> list[PlanEntry]:
        """Plan the rebuild of the descendants of ``targets``.

        Args:
            targets: Artifact path or paths that changed (or will change).
            depth: Levels to schedule (int >= 1 or math.inf).
            include_targets: Insert targets that are currently stale at level 0.
            mode: ``propagate`` or ``strict``.

        Returns:
            Plan entries sorted by (level, path), without duplicates.

        Raises:
            PolicyError: For empty targets, an invalid depth, or an unknown mode.
        """
        if isinstance(targets, str):
            targets = [targets]
        target_paths = list(dict.fromkeys(normalize_path(t) for t in targets))
        if not target_paths:
            raise PolicyError("plan() requires at least one target")
        if mode not in PLAN_MODES:
            raise PolicyError(f"mode must be one of {PLAN_MODES}, got {mode!r}")
        depth = validate_depth(depth)

        propagate = mode == "propagate"
        reason = REASON_UPSTREAM_CHANGED if propagate else REASON_PARENT_CHANGED

        state = self.catalog.load()
        latest = {row.path: row.latest_version_id for row in state.artifacts.values()}

        children: dict[str, set[str]] = defaultdict(set)
        parents: dict[str, set[str]] = defaultdict(set)
        for edge in self.lineage.edges():
            children[edge.parent_path].add(edge.child_path)
            parents[edge.child_path].add(edge.parent_path)

        planned: dict[str, PlanEntry] = {}
        if include_targets:
            for target in target_paths:
                if self.staleness.is_stale(target):
                    planned[target] = PlanEntry(0, target, reason, latest.get(target))

        will_change = set(target_paths) if propagate else set()
        expanded = set(target_paths)
        frontier = target_paths
        level = 1

        while frontier and level <= depth:
            candidates = sorted({child for node in frontier for child in children.get(node, ())})
            if not candidates:
                break

            fresh = [c for c in candidates if c not in planned and c not in target_paths]
            if propagate:
                take = [c for c in fresh if parents.get(c, set()) & will_change]
            else:
                take = [c for c in fresh if self.staleness.is_stale(c)]

            for path in take:
                planned[path] = PlanEntry(level, path, reason, latest.get(path))
            if propagate:
                will_change.update(take)

            # Each node is expanded once so cyclic lineage cannot loop forever.
            frontier = [c for c in candidates if c not in expanded]
            expanded.update(frontier)
            level += 1

        entries = sorted(planned.values(), key=lambda e: (e.level, e.path))
        logger.debug("Planned %d rebuild entr%s (%s)", len(entries), "y" if len(entries) == 1 else "ies", mode)
        return entries
