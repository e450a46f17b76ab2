"""Catalog: the authoritative index of artifacts and their versions.

The catalog holds two tables, ``artifacts`` (one row per logical artifact) and
``versions`` (one row per committed snapshot), persisted together as a single
JSON document. Every mutation re-reads the file, applies the change, and
atomically replaces the whole document, so a concurrent reader sees either
the previous or the new catalog and never a partial one.

A catalog that cannot be parsed or fails schema validation raises
CorruptStateError. It is never reset implicitly; ``repair()`` is the explicit
path and moves the damaged file aside first.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from artifact_ledger.atomic_io import atomic_write_bytes
from artifact_ledger.errors import CorruptStateError
from artifact_ledger.hashing import artifact_id as derive_artifact_id

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_NULLABLE_STRING = {"type": ["string", "null"]}

CATALOG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["schema_version", "artifacts", "versions"],
    "properties": {
        "schema_version": {"type": "integer", "const": SCHEMA_VERSION},
        "artifacts": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["artifact_id", "path", "format", "latest_version_id", "n_versions"],
                "properties": {
                    "artifact_id": {"type": "string"},
                    "path": {"type": "string"},
                    "format": {"type": "string"},
                    "latest_version_id": _NULLABLE_STRING,
                    "n_versions": {"type": "integer", "minimum": 0},
                },
            },
        },
        "versions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["version_id", "artifact_id", "created_at"],
                "properties": {
                    "version_id": {"type": "string"},
                    "artifact_id": {"type": "string"},
                    "content_hash": _NULLABLE_STRING,
                    "code_hash": _NULLABLE_STRING,
                    "size_bytes": {"type": ["integer", "null"], "minimum": 0},
                    "created_at": {"type": "string"},
                    "sidecar_format": {"enum": ["none", "json", "yaml", "both"]},
                },
            },
        },
    },
}

_VALIDATOR = Draft202012Validator(CATALOG_SCHEMA)


@dataclass
class ArtifactRow:
    """One logical artifact in the catalog."""

    artifact_id: str
    path: str
    format: str
    latest_version_id: str | None
    n_versions: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "artifact_id": self.artifact_id,
            "path": self.path,
            "format": self.format,
            "latest_version_id": self.latest_version_id,
            "n_versions": self.n_versions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactRow:
        return cls(
            artifact_id=data["artifact_id"],
            path=data["path"],
            format=data["format"],
            latest_version_id=data.get("latest_version_id"),
            n_versions=int(data.get("n_versions", 0)),
        )


@dataclass
class VersionRow:
    """One committed, immutable snapshot of an artifact."""

    version_id: str
    artifact_id: str
    content_hash: str | None
    code_hash: str | None
    size_bytes: int | None
    created_at: str
    sidecar_format: str = "none"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "version_id": self.version_id,
            "artifact_id": self.artifact_id,
            "content_hash": self.content_hash,
            "code_hash": self.code_hash,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "sidecar_format": self.sidecar_format,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionRow:
        return cls(
            version_id=data["version_id"],
            artifact_id=data["artifact_id"],
            content_hash=data.get("content_hash"),
            code_hash=data.get("code_hash"),
            size_bytes=data.get("size_bytes"),
            created_at=data["created_at"],
            sidecar_format=data.get("sidecar_format", "none"),
        )


@dataclass
class CatalogState:
    """In-memory copy of both catalog tables.

    ``versions`` keeps insertion order, which breaks ties between versions
    sharing a ``created_at`` value.
    """

    artifacts: dict[str, ArtifactRow] = field(default_factory=dict)
    versions: list[VersionRow] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "artifacts": [row.to_dict() for row in sorted(self.artifacts.values(), key=lambda r: r.path)],
            "versions": [row.to_dict() for row in self.versions],
        }

    def versions_for(self, artifact_id: str) -> list[VersionRow]:
        """Versions of one artifact, newest first."""
        return newest_first(row for row in self.versions if row.artifact_id == artifact_id)

    def refresh_artifact(self, artifact_id: str) -> None:
        """Recompute ``latest_version_id``/``n_versions``, dropping empty artifacts."""
        remaining = self.versions_for(artifact_id)
        if not remaining:
            self.artifacts.pop(artifact_id, None)
            return
        row = self.artifacts.get(artifact_id)
        if row is not None:
            row.latest_version_id = remaining[0].version_id
            row.n_versions = len(remaining)


def newest_first(rows: Iterable[VersionRow]) -> list[VersionRow]:
    """Sort versions by ``created_at`` descending, later insertions first on ties."""
    indexed = list(enumerate(rows))
    indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
    return [row for _, row in indexed]


class Catalog:
    """File-backed catalog of artifacts and versions.

    Example usage:
        catalog = Catalog(state_dir / "catalog.json")
        catalog.upsert_version(row, path="/data/a.pkl", format="pickle")
        catalog.latest("/data/a.pkl")
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    # -- persistence -------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def read_raw(self) -> bytes | None:
        """Return the current file bytes, or None if no catalog file exists."""
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CorruptStateError(f"Unreadable catalog {self.path}: {exc}") from exc

    def write_raw(self, content: bytes | None) -> None:
        """Restore a previously captured file image (None removes the file)."""
        if content is None:
            self.path.unlink(missing_ok=True)
        else:
            atomic_write_bytes(self.path, content)

    def load(self) -> CatalogState:
        """Load both tables.

        Returns:
            The catalog state; empty if the file does not exist yet.

        Raises:
            CorruptStateError: If the file is unreadable, not JSON, or fails
                schema validation.
        """
        raw = self.read_raw()
        if raw is None:
            return CatalogState()
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptStateError(f"Corrupt catalog {self.path}: {exc}") from exc

        errors = []
        for error in _VALIDATOR.iter_errors(data):
            location = ".".join(str(p) for p in error.absolute_path) or "(root)"
            errors.append(f"{location}: {error.message}")
        if errors:
            raise CorruptStateError(f"Corrupt catalog {self.path}: {'; '.join(errors)}")

        artifacts = {row["artifact_id"]: ArtifactRow.from_dict(row) for row in data["artifacts"]}
        versions = [VersionRow.from_dict(row) for row in data["versions"]]
        return CatalogState(artifacts=artifacts, versions=versions)

    def _write(self, state: CatalogState) -> None:
        payload = json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n"
        atomic_write_bytes(self.path, payload.encode("utf-8"))

    def initialize(self) -> None:
        """Create an empty catalog file if none exists."""
        if not self.exists():
            self._write(CatalogState())

    def repair(self, backup: bool = True) -> Path | None:
        """Reset the catalog to empty. Explicit user action only.

        Args:
            backup: If True, move the existing file aside before resetting.

        Returns:
            Path of the backup file, or None if nothing was backed up.
        """
        backup_path = None
        if backup and self.path.exists():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            backup_path = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
            self.path.rename(backup_path)
            logger.warning("Moved catalog %s aside to %s", self.path, backup_path)
        self._write(CatalogState())
        return backup_path

    # -- mutations ---------------------------------------------------------

    def upsert_version(self, record: VersionRow, path: str, format: str) -> ArtifactRow:
        """Record a committed version and refresh its artifact row.

        Args:
            record: The version row to insert (or replace, by ``version_id``).
            path: Normalized artifact path.
            format: Format name of the artifact.

        Returns:
            The updated artifact row.
        """
        state = self.load()
        for index, row in enumerate(state.versions):
            if row.version_id == record.version_id:
                state.versions[index] = record
                break
        else:
            state.versions.append(record)

        artifact = state.artifacts.get(record.artifact_id)
        if artifact is None:
            artifact = ArtifactRow(
                artifact_id=record.artifact_id,
                path=path,
                format=format,
                latest_version_id=None,
                n_versions=0,
            )
            state.artifacts[record.artifact_id] = artifact
        artifact.path = path
        artifact.format = format
        state.refresh_artifact(record.artifact_id)
        self._write(state)
        logger.debug("Catalog recorded version %s for %s", record.version_id, path)
        return artifact

    def remove_versions(self, version_ids: Iterable[str]) -> list[VersionRow]:
        """Remove version rows and recompute the affected artifact rows.

        Returns:
            The rows that were removed (unknown ids are ignored).
        """
        doomed = set(version_ids)
        if not doomed:
            return []
        state = self.load()
        removed = [row for row in state.versions if row.version_id in doomed]
        if not removed:
            return []
        state.versions = [row for row in state.versions if row.version_id not in doomed]
        for aid in {row.artifact_id for row in removed}:
            state.refresh_artifact(aid)
        self._write(state)
        return removed

    # -- queries -----------------------------------------------------------

    def artifact(self, path: str) -> ArtifactRow | None:
        return self.load().artifacts.get(derive_artifact_id(path))

    def artifacts(self) -> list[ArtifactRow]:
        return sorted(self.load().artifacts.values(), key=lambda row: row.path)

    def latest(self, path: str) -> str | None:
        """Return the latest version id of ``path``, or None if it has none."""
        row = self.artifact(path)
        return row.latest_version_id if row is not None else None

    def versions_of(self, path: str) -> list[VersionRow]:
        """Return every version of ``path``, newest first."""
        return self.load().versions_for(derive_artifact_id(path))

    def all_versions(self) -> list[VersionRow]:
        return list(self.load().versions)

    def get_version(self, version_id: str) -> VersionRow | None:
        for row in self.load().versions:
            if row.version_id == version_id:
                return row
        return None
