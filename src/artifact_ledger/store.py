"""Store session: the save/load pipeline and entry point to every component.

A Store binds one root directory, one StoreConfig, and one format registry.
Several stores can coexist in a process because nothing is global.

Save pipeline:
    1. Hash the canonicalized object (and the producing code, if given).
    2. Compare with the sidecar of the live file; skip unchanged writes.
    3. Stage the artifact, sidecar encodings, and version snapshot beside
       their final locations.
    4. Commit through a CommitJournal (snapshot dir, live file, sidecars,
       catalog row); any failure rolls back the steps already applied.
    5. Apply ``retain_versions`` if configured.

Example usage:
    store = Store.init("project")
    raw = store.save(table, "data/raw.parquet", code=load_raw)
    store.save(features, "data/features.parquet",
               parents=[ParentDescriptor(raw.path, raw.version_id)])
    store.is_stale("data/features.parquet")
"""

from __future__ import annotations

import logging
import math
import shutil
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pyarrow as pa

from artifact_ledger.atomic_io import CommitJournal, fsync_file, stage_bytes, staged_path
from artifact_ledger.catalog import Catalog, ArtifactRow, VersionRow
from artifact_ledger.config import CONFIG_FILENAME, DEFAULT_STATE_DIR, StoreConfig, load_store_config, save_store_config
from artifact_ledger.errors import AtomicWriteError, NotFoundError, PolicyError, SerializationError
from artifact_ledger.executor import Builders, RebuildExecutor, RebuildResult
from artifact_ledger.formats import FormatRegistry, default_registry
from artifact_ledger.hashing import artifact_id, code_hash, content_hash, file_hash, normalize_path, version_id
from artifact_ledger.lineage import Depth, LineageIndex, LineageRow
from artifact_ledger.locking import LOCKS_DIRNAME, STORE_LOCK_NAME, FileLock
from artifact_ledger.planner import PlanEntry, PlanMode, RebuildPlanner
from artifact_ledger.retention import PruneReport, RetentionEngine, RetentionPolicy
from artifact_ledger.sidecar import (
    SIDECAR_ENCODINGS,
    SidecarRecord,
    decode_sidecar,
    encode_sidecar,
    encodings_for,
    read_sidecar,
    sidecar_path,
)
from artifact_ledger.staleness import StalenessDetector, StalenessReport
from artifact_ledger.version_spec import Chooser, VersionSpec, parse_version_spec, resolve_version
from artifact_ledger.version_store import ParentDescriptor, VersionStore

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "catalog.json"
VERSIONS_DIRNAME = "versions"
STATE_SUBDIRS: tuple[str, ...] = (VERSIONS_DIRNAME, "temp", "logs")
CHANGE_MODES: tuple[str, ...] = ("any", "content", "code", "file")

ParentLike = ParentDescriptor | Mapping[str, str] | tuple[str, str]


def _now_utc_iso() -> str:
    """Get current UTC time in ISO 8601 format with microseconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class SaveResult:
    """Outcome of a save.

    ``version_id`` is the new version when ``saved`` is True, otherwise the
    unchanged latest version (None when versioning is off).
    """

    path: str
    version_id: str | None
    saved: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "version_id": self.version_id, "saved": self.saved, "reason": self.reason}


@dataclass
class SaveDecision:
    """Whether a save would write, and why."""

    save: bool
    reason: str
    latest_version_id: str | None


@dataclass
class ChangeReport:
    """Whether the live artifact differs from a candidate object or code."""

    changed: bool
    reason: str


@dataclass
class ArtifactInfo:
    """Everything the store knows about one artifact."""

    path: str
    sidecar: SidecarRecord | None
    catalog: ArtifactRow | None
    snapshot_dir: Path | None
    parents: list[ParentDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "path": self.path,
            "sidecar": self.sidecar.to_dict() if self.sidecar else None,
            "catalog": self.catalog.to_dict() if self.catalog else None,
            "snapshot_dir": str(self.snapshot_dir) if self.snapshot_dir else None,
            "parents": [p.to_dict() for p in self.parents],
        }


def _table_columns(obj: Any) -> list[str] | None:
    if isinstance(obj, pa.Table):
        return list(obj.column_names)
    if isinstance(obj, Mapping):
        return [str(k) for k in obj]
    return None


class Store:
    """A content-addressed artifact store rooted at one directory."""

    def __init__(
        self,
        root: str | Path,
        config: StoreConfig | None = None,
        formats: FormatRegistry | None = None,
    ) -> None:
        self.root = Path(normalize_path(root))
        self.config = config or StoreConfig()
        self.formats = formats or default_registry()
        self.state_dir = self.root / self.config.state_dir

        self.catalog = Catalog(self.state_dir / CATALOG_FILENAME)
        self.snapshots = VersionStore(self.root, self.state_dir / VERSIONS_DIRNAME)
        self.lineage = LineageIndex(self.catalog, self.snapshots)
        self.staleness = StalenessDetector(self.catalog, self.snapshots)
        self.planner = RebuildPlanner(self.catalog, self.lineage, self.staleness)
        self.executor = RebuildExecutor(self)
        self.retention = RetentionEngine(self.catalog, self.snapshots)

        self._lock = FileLock(self.state_dir / LOCKS_DIRNAME / STORE_LOCK_NAME)
        self._log_handler: logging.Handler | None = None
        if self.config.log_file:
            self._attach_log_file(self.config.log_file)

    # -- lifecycle -----------------------------------------------------------

    @classmethod
    def init(
        cls,
        root: str | Path,
        config: StoreConfig | None = None,
        formats: FormatRegistry | None = None,
    ) -> Store:
        """Create the state directories, config file, and empty catalog."""
        store = cls(root, config, formats)
        for name in STATE_SUBDIRS:
            (store.state_dir / name).mkdir(parents=True, exist_ok=True)
        save_store_config(store.config, store.state_dir / CONFIG_FILENAME)
        store.catalog.initialize()
        logger.info("Initialized store at %s", store.state_dir)
        return store

    @classmethod
    def open(
        cls,
        root: str | Path,
        state_dir: str = DEFAULT_STATE_DIR,
        formats: FormatRegistry | None = None,
    ) -> Store:
        """Open an existing store, reading its persisted config.

        Raises:
            NotFoundError: If no store was initialized under ``root``.
        """
        root_path = Path(normalize_path(root))
        state_path = root_path / state_dir
        if not state_path.is_dir():
            raise NotFoundError(f"No store initialized at {state_path}")
        config = load_store_config(state_path / CONFIG_FILENAME)
        if config.state_dir != state_dir:
            config = config.replace(state_dir=state_dir)
        return cls(root_path, config, formats)

    def close(self) -> None:
        """Detach the log file handler, if one was attached."""
        if self._log_handler is not None:
            logging.getLogger("artifact_ledger").removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def _attach_log_file(self, name: str) -> None:
        log_path = self.state_dir / "logs" / name
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger("artifact_ledger").addHandler(handler)
        self._log_handler = handler

    def resolve(self, path: str | Path) -> str:
        """Normalize ``path``; relative paths resolve against the store root."""
        return normalize_path(path, self.root)

    def _write_lock(self):
        return self._lock.exclusive(timeout=self.config.lock_timeout)

    # -- change detection ----------------------------------------------------

    def _decide(
        self,
        live: Path,
        obj_hash: str,
        obj_code_hash: str | None,
        parents: list[ParentDescriptor] | None = None,
    ) -> SaveDecision:
        latest = self.catalog.latest(str(live))
        if not live.exists():
            return SaveDecision(True, "missing_artifact", latest)
        sidecar = read_sidecar(live)
        if sidecar is None:
            return SaveDecision(True, "missing_meta", latest)

        reasons = []
        if sidecar.content_hash != obj_hash:
            reasons.append("content")
        if obj_code_hash is not None and sidecar.code_hash != obj_code_hash:
            reasons.append("code")
        if reasons:
            return SaveDecision(True, "+".join(reasons), latest)

        # Same bytes rebuilt against new upstream versions must re-pin them.
        if parents is not None:
            recorded = sorted((p["path"], p["version_id"]) for p in sidecar.parents)
            if recorded != sorted((p.path, p.version_id) for p in parents):
                return SaveDecision(True, "parents", latest)
        if sidecar.file_hash is not None and self.config.store_file_hash:
            if file_hash(live) != sidecar.file_hash:
                return SaveDecision(True, "file", latest)
        if latest is None and self.config.versioning != "off":
            return SaveDecision(True, "missing_version", latest)
        return SaveDecision(False, "no_change", latest)

    def _code_hash(self, code: Any) -> str | None:
        return code_hash(code) if self.config.code_hash else None

    def should_save(
        self,
        obj: Any,
        path: str | Path,
        code: Any = None,
        parents: Iterable[ParentLike] | None = None,
    ) -> SaveDecision:
        """Decide whether saving ``obj`` to ``path`` would write a new version."""
        live = Path(self.resolve(path))
        parent_list = None if parents is None else self._normalize_parents(parents)
        decision = self._decide(live, content_hash(obj), self._code_hash(code), parent_list)
        if not decision.save and self.config.versioning == "timestamp":
            return SaveDecision(True, "versioning_timestamp", decision.latest_version_id)
        return decision

    def changed(self, path: str | Path, obj: Any = None, code: Any = None, mode: str = "any") -> ChangeReport:
        """Report whether the live artifact differs from ``obj``/``code`` or its own sidecar.

        Args:
            path: Artifact path.
            obj: Candidate object compared by content hash.
            code: Candidate code compared by code hash.
            mode: ``any``, ``content``, ``code``, or ``file`` (external edits).
        """
        if mode not in CHANGE_MODES:
            raise PolicyError(f"mode must be one of {CHANGE_MODES}, got {mode!r}")
        live = Path(self.resolve(path))
        if not live.exists():
            return ChangeReport(True, "missing_artifact")
        sidecar = read_sidecar(live)
        if sidecar is None:
            return ChangeReport(True, "missing_meta")

        reasons = []
        if mode in ("any", "content") and obj is not None and content_hash(obj) != sidecar.content_hash:
            reasons.append("content")
        if mode in ("any", "code") and code is not None and code_hash(code) != sidecar.code_hash:
            reasons.append("code")
        if mode in ("any", "file") and sidecar.file_hash is not None and file_hash(live) != sidecar.file_hash:
            reasons.append("file")
        return ChangeReport(bool(reasons), "+".join(reasons) or "no_change")

    # -- save ----------------------------------------------------------------

    def _normalize_parents(self, parents: Iterable[ParentLike] | None) -> list[ParentDescriptor]:
        result: list[ParentDescriptor] = []
        for parent in parents or []:
            if isinstance(parent, ParentDescriptor):
                path, vid = parent.path, parent.version_id
            elif isinstance(parent, Mapping):
                path, vid = parent["path"], parent["version_id"]
            else:
                path, vid = parent
            descriptor = ParentDescriptor(path=self.resolve(path), version_id=str(vid))
            row = self.catalog.get_version(descriptor.version_id)
            if row is None or row.artifact_id != artifact_id(descriptor.path):
                raise NotFoundError(f"Parent version {descriptor.version_id} of {descriptor.path} is not in the catalog")
            if descriptor not in result:
                result.append(descriptor)
        return result

    def _new_version_id(self, aid: str, obj_hash: str, obj_code_hash: str | None, created_at: str) -> str:
        taken = {row.version_id for row in self.catalog.all_versions()}
        salt = 0
        while True:
            vid = version_id(aid, obj_hash, obj_code_hash, created_at, salt=salt)
            if vid not in taken:
                return vid
            salt += 1

    def save(
        self,
        obj: Any,
        path: str | Path,
        format: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        code: Any = None,
        code_label: str | None = None,
        parents: Iterable[ParentLike] | None = None,
        primary_key: Iterable[str] | None = None,
    ) -> SaveResult:
        """Persist ``obj`` at ``path`` and record a new version.

        Args:
            obj: Object to serialize.
            path: Artifact path (relative paths resolve against the store root).
            format: Format name; defaults to the extension, then the config.
            metadata: User metadata stored in the sidecar.
            code: Producing code (string or callable) for the code hash.
            code_label: Human label for the code.
            parents: Upstream versions this artifact was built from.
            primary_key: Column names identifying rows of a tabular object.

        Returns:
            SaveResult describing whether a version was written.

        Raises:
            NotFoundError: If a parent version is not in the catalog.
            PolicyError: If ``primary_key`` names missing columns.
            AtomicWriteError: If staging or committing fails; nothing is left
                half-written.
        """
        live = Path(self.resolve(path))
        backend = self.formats.resolve(live, format, self.config.default_format)
        parent_list = self._normalize_parents(parents)
        pk = list(primary_key or [])
        if pk:
            columns = _table_columns(obj)
            if columns is None:
                raise PolicyError(f"primary_key requires a tabular object, got {type(obj).__name__}")
            missing = [c for c in pk if c not in columns]
            if missing:
                raise PolicyError(f"primary_key columns not found in {live.name}: {', '.join(missing)}")

        obj_hash = content_hash(obj)
        obj_code_hash = self._code_hash(code)

        with self._write_lock():
            decision = self._decide(live, obj_hash, obj_code_hash, None if parents is None else parent_list)
            if not decision.save and self.config.versioning != "timestamp":
                logger.debug("Skipping unchanged save of %s", live)
                return SaveResult(str(live), decision.latest_version_id, False, decision.reason)
            reason = decision.reason if decision.save else "versioning_timestamp"

            created_at = _now_utc_iso()
            staged = staged_path(live)
            sidecar_stages: dict[str, Path] = {}
            try:
                try:
                    backend.write(obj, staged)
                    fsync_file(staged)
                except OSError as exc:
                    raise AtomicWriteError(f"Failed to write {live} as {backend.name}: {exc}") from exc
                except Exception as exc:
                    raise SerializationError(f"Cannot encode {type(obj).__name__} as {backend.name}: {exc}") from exc

                vid = None
                if self.config.versioning != "off":
                    vid = self._new_version_id(artifact_id(live), obj_hash, obj_code_hash, created_at)

                size_bytes = staged.stat().st_size
                record = SidecarRecord(
                    path=str(live),
                    format=backend.name,
                    created_at=created_at,
                    size_bytes=size_bytes,
                    content_hash=obj_hash,
                    code_hash=obj_code_hash,
                    code_label=code_label,
                    file_hash=file_hash(staged) if self.config.store_file_hash else None,
                    primary_key=pk,
                    metadata=dict(metadata or {}),
                    parents=[p.to_dict() for p in parent_list],
                )
                encodings = encodings_for(self.config.meta_format)
                for encoding in encodings:
                    sidecar_stages[encoding] = stage_bytes(
                        sidecar_path(live, encoding), encode_sidecar(record, encoding)
                    )

                with CommitJournal() as journal:
                    if vid is not None:
                        staged_dir, final_dir = self.snapshots.stage(
                            str(live), vid, staged, sidecar_stages, parent_list
                        )
                        journal.rename_dir(staged_dir, final_dir)
                    journal.replace_file(staged, live)
                    for encoding, stage in sidecar_stages.items():
                        journal.replace_file(stage, sidecar_path(live, encoding))
                    for encoding in SIDECAR_ENCODINGS:
                        if encoding not in encodings:
                            journal.remove_file(sidecar_path(live, encoding))
                    if vid is not None:
                        before = self.catalog.read_raw()
                        journal.add_undo(lambda: self.catalog.write_raw(before))
                        self.catalog.upsert_version(
                            VersionRow(
                                version_id=vid,
                                artifact_id=artifact_id(live),
                                content_hash=obj_hash,
                                code_hash=obj_code_hash,
                                size_bytes=size_bytes,
                                created_at=created_at,
                                sidecar_format=self.config.meta_format,
                            ),
                            path=str(live),
                            format=backend.name,
                        )
            finally:
                staged.unlink(missing_ok=True)
                for stage in sidecar_stages.values():
                    stage.unlink(missing_ok=True)

            logger.info("Saved %s @ version %s (%s)", live, vid, reason)

            if vid is not None and self.config.retain_versions is not None:
                self.retention.prune([str(live)], RetentionPolicy.keep_latest(self.config.retain_versions))

        return SaveResult(str(live), vid, True, reason)

    # -- load / versions -----------------------------------------------------

    def load(self, path: str | Path, format: str | None = None, version: VersionSpec | int | str | None = None) -> Any:
        """Read the live artifact, or a historical version when ``version`` is given.

        Raises:
            NotFoundError: If the artifact file does not exist.
        """
        if version is not None:
            return self.load_version(path, version, format=format)
        live = Path(self.resolve(path))
        if not live.exists():
            raise NotFoundError(f"Artifact not found: {live}")
        sidecar = read_sidecar(live)
        backend = self.formats.resolve(live, format or (sidecar.format if sidecar else None), self.config.default_format)

        if self.config.verify_on_load and sidecar is not None and sidecar.file_hash is not None:
            if file_hash(live) != sidecar.file_hash:
                logger.warning("File hash mismatch for %s: modified outside the store since last save", live)
        return backend.read(live)

    def versions(self, path: str | Path) -> list[VersionRow]:
        """All versions of ``path``, newest first."""
        return self.catalog.versions_of(self.resolve(path))

    def latest(self, path: str | Path) -> str | None:
        """Latest version id of ``path``, or None."""
        return self.catalog.latest(self.resolve(path))

    def resolve_version(
        self,
        path: str | Path,
        version: VersionSpec | int | str | None,
        chooser: Chooser | None = None,
    ) -> str:
        """Resolve a version spec for ``path`` to a concrete version id."""
        spec = parse_version_spec(version)
        ids = [row.version_id for row in self.versions(path)]
        if not ids:
            raise NotFoundError(f"No versions found for {self.resolve(path)}")
        return resolve_version(spec, ids, chooser)

    def load_version(
        self,
        path: str | Path,
        version: VersionSpec | int | str | None,
        format: str | None = None,
        chooser: Chooser | None = None,
    ) -> Any:
        """Read the artifact stored in one version snapshot."""
        normalized = self.resolve(path)
        vid = self.resolve_version(normalized, version, chooser)
        version_dir = self.snapshots.version_dir(normalized, vid)
        artifact_file = self.snapshots.artifact_file(version_dir)

        if format is None:
            sidecars = self.snapshots.sidecar_files(version_dir)
            if sidecars:
                format = decode_sidecar(next(iter(sidecars.values()))).format
            else:
                row = self.catalog.artifact(normalized)
                format = row.format if row is not None else self.config.default_format
        return self.formats.get(format).read(artifact_file)

    def restore(self, path: str | Path, version: VersionSpec | int | str | None, chooser: Chooser | None = None) -> str:
        """Copy a snapshot back over the live artifact and its sidecars.

        The catalog is unchanged; no new version is recorded.

        Returns:
            The restored version id.

        Raises:
            NotFoundError: If ``path`` has no versions or the selector matches none.
        """
        live = Path(self.resolve(path))
        with self._write_lock():
            vid = self.resolve_version(live, version, chooser)
            version_dir = self.snapshots.version_dir(str(live), vid)
            artifact_file = self.snapshots.artifact_file(version_dir)
            snapshot_sidecars = self.snapshots.sidecar_files(version_dir)

            stages: list[tuple[Path, Path]] = []
            try:
                staged = staged_path(live)
                stages.append((staged, live))
                shutil.copyfile(artifact_file, staged)
                for encoding, source in snapshot_sidecars.items():
                    target = sidecar_path(live, encoding)
                    stage = staged_path(target)
                    stages.append((stage, target))
                    shutil.copyfile(source, stage)

                with CommitJournal() as journal:
                    for stage, target in stages:
                        journal.replace_file(stage, target)
                    for encoding in SIDECAR_ENCODINGS:
                        if encoding not in snapshot_sidecars:
                            journal.remove_file(sidecar_path(live, encoding))
            except OSError as exc:
                raise AtomicWriteError(f"Failed to restore {live} to {vid}: {exc}") from exc
            finally:
                for stage, _target in stages:
                    stage.unlink(missing_ok=True)

        logger.info("Restored %s to version %s", live, vid)
        return vid

    def info(self, path: str | Path) -> ArtifactInfo:
        """Collect sidecar, catalog row, latest snapshot dir, and parents."""
        normalized = self.resolve(path)
        row = self.catalog.artifact(normalized)
        snapshot_dir = None
        if row is not None and row.latest_version_id is not None:
            candidate = self.snapshots.version_dir(normalized, row.latest_version_id)
            snapshot_dir = candidate if candidate.exists() else None
        return ArtifactInfo(
            path=normalized,
            sidecar=read_sidecar(Path(normalized)),
            catalog=row,
            snapshot_dir=snapshot_dir,
            parents=self.lineage.parents_of(normalized),
        )

    # -- lineage, staleness, rebuild, retention -----------------------------

    def children_of(
        self,
        path: str | Path,
        version_id: str | None = None,
        depth: Depth = 1,
        all_versions: bool = False,
    ) -> list[LineageRow]:
        return self.lineage.children_of(self.resolve(path), version_id=version_id, depth=depth, all_versions=all_versions)

    def lineage_of(self, path: str | Path, depth: Depth = 1) -> list[LineageRow]:
        return self.lineage.lineage_of(self.resolve(path), depth=depth)

    def is_stale(self, path: str | Path) -> bool:
        return self.staleness.is_stale(self.resolve(path))

    def staleness_report(self, path: str | Path) -> StalenessReport:
        return self.staleness.check(self.resolve(path))

    def plan_rebuild(
        self,
        targets: str | Path | Iterable[str | Path],
        depth: Depth = math.inf,
        include_targets: bool = False,
        mode: PlanMode = "propagate",
    ) -> list[PlanEntry]:
        if isinstance(targets, (str, Path)):
            targets = [targets]
        return self.planner.plan(
            [self.resolve(t) for t in targets],
            depth=depth,
            include_targets=include_targets,
            mode=mode,
        )

    def rebuild(
        self,
        plan: Iterable[PlanEntry],
        builders: Builders,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> list[RebuildResult]:
        return self.executor.execute(plan, builders, dry_run=dry_run, cancel_event=cancel_event)

    def prune(
        self,
        paths: Iterable[str | Path] | None = None,
        policy: RetentionPolicy | int | Mapping[str, Any] | str | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PruneReport:
        """Apply a retention policy (default: the configured ``retain_versions``)."""
        if policy is None and self.config.retain_versions is not None:
            policy = RetentionPolicy.keep_latest(self.config.retain_versions)
        resolved = None if paths is None else [self.resolve(p) for p in paths]
        if dry_run:
            return self.retention.prune(resolved, policy, dry_run=True, now=now)
        with self._write_lock():
            return self.retention.prune(resolved, policy, dry_run=False, now=now)

    def repair(self, backup: bool = True) -> Path | None:
        """Reset a corrupt catalog to empty (explicit user action)."""
        with self._write_lock():
            return self.catalog.repair(backup=backup)
