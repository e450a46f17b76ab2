"""Sidecar metadata records for live artifact files.

A sidecar lives beside the live artifact under ``stmeta/`` and always
describes the latest version: content and code hashes, the on-disk file hash
(used to detect external modification), primary key columns, user metadata,
and the parents pinned by the latest save. Each version snapshot keeps a copy.

Two encodings are supported, JSON and YAML; readers prefer JSON.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from artifact_ledger.atomic_io import atomic_write_bytes
from artifact_ledger.errors import CorruptStateError

SIDECAR_DIRNAME = "stmeta"
SIDECAR_ENCODINGS: tuple[str, ...] = ("json", "yaml")

SIDECAR_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["path", "format", "created_at"],
    "properties": {
        "path": {"type": "string"},
        "format": {"type": "string"},
        "created_at": {"type": "string"},
        "size_bytes": {"type": ["integer", "null"], "minimum": 0},
        "content_hash": {"type": ["string", "null"]},
        "code_hash": {"type": ["string", "null"]},
        "code_label": {"type": ["string", "null"]},
        "file_hash": {"type": ["string", "null"]},
        "primary_key": {"type": "array", "items": {"type": "string"}},
        "metadata": {"type": "object"},
        "parents": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["path", "version_id"],
                "properties": {
                    "path": {"type": "string"},
                    "version_id": {"type": "string"},
                },
            },
        },
    },
}

_VALIDATOR = Draft202012Validator(SIDECAR_SCHEMA)


@dataclass
class SidecarRecord:
    """Metadata describing the current state of a live artifact file."""

    path: str
    format: str
    created_at: str
    size_bytes: int | None = None
    content_hash: str | None = None
    code_hash: str | None = None
    code_label: str | None = None
    file_hash: str | None = None
    primary_key: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    parents: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "path": self.path,
            "format": self.format,
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
            "content_hash": self.content_hash,
            "code_hash": self.code_hash,
            "code_label": self.code_label,
            "file_hash": self.file_hash,
            "primary_key": list(self.primary_key),
            "metadata": dict(self.metadata),
            "parents": [dict(p) for p in self.parents],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SidecarRecord:
        """Create from a dict (e.g., from JSON)."""
        return cls(
            path=data["path"],
            format=data["format"],
            created_at=data["created_at"],
            size_bytes=data.get("size_bytes"),
            content_hash=data.get("content_hash"),
            code_hash=data.get("code_hash"),
            code_label=data.get("code_label"),
            file_hash=data.get("file_hash"),
            primary_key=list(data.get("primary_key", [])),
            metadata=dict(data.get("metadata", {})),
            parents=[{"path": p["path"], "version_id": p["version_id"]} for p in data.get("parents", [])],
        )


def sidecar_path(artifact_path: Path, encoding: str = "json") -> Path:
    """Return the deterministic sidecar location for ``artifact_path``."""
    if encoding not in SIDECAR_ENCODINGS:
        raise ValueError(f"Unknown sidecar encoding: {encoding!r}")
    return artifact_path.parent / SIDECAR_DIRNAME / f"{artifact_path.name}.stmeta.{encoding}"


def encodings_for(meta_format: str) -> tuple[str, ...]:
    """Map a ``meta_format`` setting to the encodings it writes."""
    if meta_format == "both":
        return SIDECAR_ENCODINGS
    if meta_format in SIDECAR_ENCODINGS:
        return (meta_format,)
    raise ValueError(f"Unknown meta_format: {meta_format!r}")


def encode_sidecar(record: SidecarRecord, encoding: str) -> bytes:
    """Serialize a record in one encoding."""
    data = record.to_dict()
    if encoding == "json":
        return (json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")
    if encoding == "yaml":
        return yaml.safe_dump(data, sort_keys=True, allow_unicode=True).encode("utf-8")
    raise ValueError(f"Unknown sidecar encoding: {encoding!r}")


def decode_sidecar(path: Path) -> SidecarRecord:
    """Parse and validate a sidecar file in either encoding.

    Raises:
        CorruptStateError: If the file cannot be read, parsed, or validated.
    """
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise CorruptStateError(f"Unreadable sidecar {path}: {exc}") from exc

    errors = [error.message for error in _VALIDATOR.iter_errors(data)]
    if errors:
        raise CorruptStateError(f"Malformed sidecar {path}: {'; '.join(errors)}")
    return SidecarRecord.from_dict(data)


def write_sidecar(artifact_path: Path, record: SidecarRecord, meta_format: str = "json") -> list[Path]:
    """Atomically write the sidecar encodings selected by ``meta_format``."""
    written = []
    for encoding in encodings_for(meta_format):
        target = sidecar_path(artifact_path, encoding)
        atomic_write_bytes(target, encode_sidecar(record, encoding))
        written.append(target)
    return written


def read_sidecar(artifact_path: Path) -> SidecarRecord | None:
    """Read the sidecar for ``artifact_path``, preferring JSON over YAML.

    Returns:
        The record, or None if no sidecar exists.

    Raises:
        CorruptStateError: If a present sidecar is malformed.
    """
    for encoding in SIDECAR_ENCODINGS:
        path = sidecar_path(artifact_path, encoding)
        if path.exists():
            return decode_sidecar(path)
    return None


def sidecar_formats_present(artifact_path: Path) -> str:
    """Report which sidecar encodings exist: none, json, yaml, or both."""
    present = [enc for enc in SIDECAR_ENCODINGS if sidecar_path(artifact_path, enc).exists()]
    if not present:
        return "none"
    if len(present) == len(SIDECAR_ENCODINGS):
        return "both"
    return present[0]
