"""Level-ordered rebuild execution.

The executor consumes a plan strictly by ascending level: every entry of a
level finishes (successfully or not) before the next level starts, because
higher levels may read the freshly built output of lower ones.

Each entry is isolated. A failing builder, a malformed bundle, or a failed
save is recorded in that entry's result and the batch continues. Entries
whose parents failed earlier in the same run are reported as failed without
calling their builder.

Builders are injected per call, either one callable for every path or a
mapping from path to callable:

    def build_features(path, parents):
        raw = store.load(parents[0].path)
        return BuildOutput(obj=featurize(raw), code=featurize)

    executor.execute(plan, {"features.parquet": build_features})
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from itertools import groupby
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from artifact_ledger.errors import BuilderFailureError, NotFoundError, StoreError
from artifact_ledger.hashing import normalize_path
from artifact_ledger.planner import PlanEntry
from artifact_ledger.sidecar import read_sidecar
from artifact_ledger.version_store import ParentDescriptor

if TYPE_CHECKING:
    from artifact_ledger.store import Store

logger = logging.getLogger(__name__)

Builder = Callable[[str, list[ParentDescriptor]], Any]
Builders = Builder | Mapping[str, Builder]
RebuildStatus = Literal["built", "failed", "skipped"]


@dataclass
class BuildOutput:
    """Bundle returned by a builder.

    Attributes:
        obj: The object to persist.
        format: Optional format name; defaults to extension or store default.
        metadata: Optional user metadata for the sidecar.
        code: Optional producing code (string or callable) for the code hash.
        code_label: Optional human label for the code.
        primary_key: Optional primary key columns.
    """

    obj: Any
    format: str | None = None
    metadata: dict[str, Any] | None = None
    code: Any = None
    code_label: str | None = None
    primary_key: list[str] | None = None

    @classmethod
    def coerce(cls, path: str, value: Any) -> BuildOutput:
        """Accept a BuildOutput or a mapping with an ``obj`` key.

        Raises:
            BuilderFailureError: If the bundle is malformed.
        """
        if isinstance(value, BuildOutput):
            return value
        if isinstance(value, Mapping):
            if "obj" not in value:
                raise BuilderFailureError(path, "bundle must contain an 'obj' entry")
            allowed = {f.name for f in dataclasses.fields(cls)}
            unknown = sorted(set(value) - allowed)
            if unknown:
                raise BuilderFailureError(path, f"unknown bundle keys: {', '.join(map(str, unknown))}")
            return cls(**value)
        raise BuilderFailureError(path, f"expected BuildOutput or mapping, got {type(value).__name__}")


@dataclass
class RebuildResult:
    """Outcome of one plan entry."""

    level: int
    path: str
    reason: str
    status: RebuildStatus
    version_id: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "level": self.level,
            "path": self.path,
            "reason": self.reason,
            "status": self.status,
            "version_id": self.version_id,
            "message": self.message,
        }


class RebuildExecutor:
    """Runs rebuild plans through a store's save pipeline."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def _resolve_builder(self, builders: Builders, path: str) -> Builder:
        if isinstance(builders, Mapping):
            for key, builder in builders.items():
                if normalize_path(key, self.store.root) == path:
                    return builder
            raise BuilderFailureError(path, "no builder registered for this path")
        if callable(builders):
            return builders
        raise BuilderFailureError(path, f"builders must be a callable or mapping, got {type(builders).__name__}")

    def resolve_parents(self, path: str) -> list[ParentDescriptor]:
        """Committed parents of ``path``, each refreshed to its current latest.

        Falls back to the parents recorded in the sidecar when no version has
        been committed yet.

        Raises:
            NotFoundError: If a parent no longer has any version.
        """
        parents = self.store.lineage.parents_of(path)
        if not parents:
            sidecar = read_sidecar(Path(path))
            if sidecar is not None:
                parents = [ParentDescriptor.from_dict(p) for p in sidecar.parents]

        refreshed = []
        for parent in parents:
            latest = self.store.catalog.latest(parent.path)
            if latest is None:
                raise NotFoundError(f"Parent {parent.path} has no committed versions")
            refreshed.append(ParentDescriptor(path=parent.path, version_id=latest))
        return refreshed

    def execute(
        self,
        plan: Iterable[PlanEntry],
        builders: Builders,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> list[RebuildResult]:
        """Execute ``plan`` level by level.

        Args:
            plan: Plan entries (any order; they are sorted by level, then path).
            builders: One builder for every path, or a mapping path -> builder.
            dry_run: Resolve builders and parents but never call a builder or
                write anything.
            cancel_event: Checked between levels; once set, remaining entries
                are reported as skipped.

        Returns:
            One result per plan entry, in execution order.
        """
        entries = sorted(plan, key=lambda e: (e.level, e.path))
        results: list[RebuildResult] = []
        failed: set[str] = set()
        cancelled = False

        if not entries:
            logger.info("Nothing to rebuild (empty plan)")
            return results

        for level, group in groupby(entries, key=lambda e: e.level):
            batch = list(group)
            if not cancelled and cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.warning("Rebuild cancelled before level %d", level)
            if cancelled:
                results.extend(
                    RebuildResult(e.level, e.path, e.reason, "skipped", message="cancelled") for e in batch
                )
                continue

            logger.info("Rebuild level %d: %d artifact(s)", level, len(batch))
            for entry in batch:
                result = self._run_entry(entry, builders, dry_run, failed)
                if result.status == "failed":
                    failed.add(entry.path)
                results.append(result)

        counts = Counter(r.status for r in results)
        logger.info("Rebuild summary: %s", " | ".join(f"{k} {v}" for k, v in sorted(counts.items())))
        return results

    def _run_entry(
        self,
        entry: PlanEntry,
        builders: Builders,
        dry_run: bool,
        failed: set[str],
    ) -> RebuildResult:
        def fail(message: str) -> RebuildResult:
            logger.warning("Rebuild of %s failed: %s", entry.path, message)
            return RebuildResult(entry.level, entry.path, entry.reason, "failed", message=message)

        try:
            builder = self._resolve_builder(builders, entry.path)
        except BuilderFailureError as exc:
            return fail(str(exc))

        try:
            parents = self.resolve_parents(entry.path)
        except StoreError as exc:
            return fail(f"cannot resolve parents: {exc}")

        upstream_failed = sorted(p.path for p in parents if p.path in failed)
        if upstream_failed:
            return fail(f"upstream failed: {', '.join(upstream_failed)}")

        if dry_run:
            return RebuildResult(entry.level, entry.path, entry.reason, "skipped", message="dry run")

        try:
            raw = builder(entry.path, parents)
        except Exception as exc:  # user-supplied builder
            return fail(str(BuilderFailureError(entry.path, f"{type(exc).__name__}: {exc}")))

        try:
            output = BuildOutput.coerce(entry.path, raw)
        except BuilderFailureError as exc:
            return fail(str(exc))

        try:
            saved = self.store.save(
                output.obj,
                entry.path,
                format=output.format,
                metadata=output.metadata,
                code=output.code,
                code_label=output.code_label,
                parents=parents,
                primary_key=output.primary_key,
            )
        except Exception as exc:
            return fail(f"save failed: {type(exc).__name__}: {exc}")

        if saved.saved:
            logger.info("Rebuilt %s @ version %s", entry.path, saved.version_id)
            return RebuildResult(entry.level, entry.path, entry.reason, "built", saved.version_id)
        return RebuildResult(entry.level, entry.path, entry.reason, "skipped", saved.version_id, message=saved.reason)
