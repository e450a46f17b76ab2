"""Version snapshot directories.

Each committed version owns one directory holding a byte copy of the
artifact, copies of its sidecar encodings, and a ``parents.json`` document:

    <state_dir>/versions/<path relative to root>/<version_id>/
        artifact
        sidecar.json | sidecar.yaml
        parents.json

Artifacts outside the store root are nested under
``versions/_external/<artifact_id>/`` instead. The artifact id hashes the full
normalized path, so two out-of-root artifacts never share a directory unless
their ids collide.

A snapshot is populated in a temporary sibling directory and renamed into
place as the final step, so a reader never sees a snapshot with the artifact
but without its parents document.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from artifact_ledger.atomic_io import CommitJournal
from artifact_ledger.errors import AtomicWriteError, CorruptStateError, NotFoundError
from artifact_ledger.hashing import artifact_id, normalize_path

logger = logging.getLogger(__name__)

ARTIFACT_FILENAME = "artifact"
PARENTS_FILENAME = "parents.json"
EXTERNAL_DIRNAME = "_external"


@dataclass(frozen=True)
class ParentDescriptor:
    """A pinned reference to one exact version of an upstream artifact."""

    path: str
    version_id: str

    def to_dict(self) -> dict[str, str]:
        """Convert to JSON-serializable dict."""
        return {"path": self.path, "version_id": self.version_id}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParentDescriptor:
        """Create from a dict, normalizing the path."""
        return cls(path=normalize_path(str(data["path"])), version_id=str(data["version_id"]))


class VersionStore:
    """Reads and writes per-version snapshot directories."""

    def __init__(self, root: Path, versions_dir: Path) -> None:
        self.root = Path(normalize_path(root))
        self.versions_dir = versions_dir

    def version_dir(self, artifact_path: str, version_id: str) -> Path:
        """Return the snapshot directory of one version of ``artifact_path``."""
        path = Path(normalize_path(artifact_path))
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            return self.versions_dir / EXTERNAL_DIRNAME / artifact_id(path) / version_id
        return self.versions_dir / relative / version_id

    def stage(
        self,
        artifact_path: str,
        version_id: str,
        artifact_source: Path,
        sidecar_sources: Mapping[str, Path],
        parents: Iterable[ParentDescriptor],
    ) -> tuple[Path, Path]:
        """Populate a temporary snapshot directory beside its final location.

        Args:
            artifact_path: Normalized artifact path.
            version_id: Id of the version being committed.
            artifact_source: File holding the artifact bytes to copy.
            sidecar_sources: Sidecar files keyed by encoding (``json``/``yaml``).
            parents: Parent descriptors to record.

        Returns:
            Tuple of (staged_dir, final_dir).

        Raises:
            AtomicWriteError: If the final directory already exists or any
                copy fails. Nothing is left behind on failure.
        """
        final_dir = self.version_dir(artifact_path, version_id)
        if final_dir.exists():
            raise AtomicWriteError(f"Version directory already exists: {final_dir}")

        try:
            final_dir.parent.mkdir(parents=True, exist_ok=True)
            staged = Path(tempfile.mkdtemp(prefix=f".{version_id}.", suffix=".tmp", dir=final_dir.parent))
        except OSError as exc:
            raise AtomicWriteError(f"Cannot create snapshot for {artifact_path}: {exc}") from exc

        try:
            shutil.copyfile(artifact_source, staged / ARTIFACT_FILENAME)
            for encoding, source in sorted(sidecar_sources.items()):
                shutil.copyfile(source, staged / f"sidecar.{encoding}")
            payload = json.dumps([p.to_dict() for p in parents], indent=2, sort_keys=True) + "\n"
            (staged / PARENTS_FILENAME).write_text(payload, encoding="utf-8")
        except OSError as exc:
            shutil.rmtree(staged, ignore_errors=True)
            raise AtomicWriteError(f"Cannot stage snapshot for {artifact_path} @ {version_id}: {exc}") from exc
        return staged, final_dir

    def commit(
        self,
        artifact_path: str,
        version_id: str,
        parents: Iterable[ParentDescriptor],
        artifact_source: Path | None = None,
        sidecar_sources: Mapping[str, Path] | None = None,
    ) -> Path:
        """Copy the artifact and sidecars into a new snapshot and publish it.

        ``artifact_source`` defaults to the live artifact file.

        Returns:
            The committed version directory.
        """
        source = artifact_source or Path(normalize_path(artifact_path))
        staged, final_dir = self.stage(artifact_path, version_id, source, sidecar_sources or {}, parents)
        with CommitJournal() as journal:
            journal.rename_dir(staged, final_dir)
        logger.debug("Committed snapshot %s", final_dir)
        return final_dir

    # -- readers -------------------------------------------------------------

    def artifact_file(self, version_dir: Path) -> Path:
        path = version_dir / ARTIFACT_FILENAME
        if not path.exists():
            raise NotFoundError(f"No artifact in snapshot {version_dir}")
        return path

    def read(self, version_dir: Path) -> bytes:
        """Return the artifact bytes stored in a snapshot."""
        return self.artifact_file(version_dir).read_bytes()

    def parents(self, version_dir: Path) -> list[ParentDescriptor]:
        """Return the parents recorded in a snapshot; missing document means none.

        Raises:
            CorruptStateError: If the parents document is malformed.
        """
        path = version_dir / PARENTS_FILENAME
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [ParentDescriptor.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CorruptStateError(f"Malformed parents document {path}: {exc}") from exc

    def sidecar_files(self, version_dir: Path) -> dict[str, Path]:
        """Return the sidecar copies present in a snapshot, keyed by encoding."""
        found = {}
        for encoding in ("json", "yaml"):
            path = version_dir / f"sidecar.{encoding}"
            if path.exists():
                found[encoding] = path
        return found

    def size(self, version_dir: Path) -> int:
        """Total bytes of all files in a snapshot."""
        total = 0
        for dirpath, _dirnames, filenames in os.walk(version_dir):
            for name in filenames:
                total += os.path.getsize(os.path.join(dirpath, name))
        return total

    # -- deletion ------------------------------------------------------------

    def remove(self, version_dir: Path) -> None:
        """Delete a snapshot and prune empty directories up to the versions root."""
        if version_dir.exists():
            shutil.rmtree(version_dir)
        parent = version_dir.parent
        while parent != self.versions_dir and self.versions_dir in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
