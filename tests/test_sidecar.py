"""Tests for sidecar metadata records."""

from __future__ import annotations

from pathlib import Path

import pytest

from artifact_ledger.errors import CorruptStateError
from artifact_ledger.sidecar import (
    SidecarRecord,
    read_sidecar,
    sidecar_formats_present,
    sidecar_path,
    write_sidecar,
)


def _record(path: Path, **changes) -> SidecarRecord:
    fields = {
        "path": str(path),
        "format": "pickle",
        "created_at": "2024-01-01T00:00:00.000000Z",
        "size_bytes": 10,
        "content_hash": "c" * 16,
        "parents": [{"path": "/p/a.pkl", "version_id": "v" * 16}],
        "metadata": {"owner": "pipeline"},
    }
    fields.update(changes)
    return SidecarRecord(**fields)


class TestSidecarPath:
    """Tests for sidecar placement."""

    def test_location(self, tmp_path: Path) -> None:
        artifact = tmp_path / "data" / "a.pkl"
        assert sidecar_path(artifact) == tmp_path / "data" / "stmeta" / "a.pkl.stmeta.json"
        assert sidecar_path(artifact, "yaml") == tmp_path / "data" / "stmeta" / "a.pkl.stmeta.yaml"

    def test_unknown_encoding(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            sidecar_path(tmp_path / "a.pkl", "toml")


class TestReadWrite:
    """Tests for encoding, decoding, and validation."""

    @pytest.mark.parametrize("meta_format", ["json", "yaml"])
    def test_round_trip(self, tmp_path: Path, meta_format: str) -> None:
        artifact = tmp_path / "a.pkl"
        record = _record(artifact)
        write_sidecar(artifact, record, meta_format)
        assert read_sidecar(artifact) == record
        assert sidecar_formats_present(artifact) == meta_format

    def test_missing_returns_none(self, tmp_path: Path) -> None:
        assert read_sidecar(tmp_path / "a.pkl") is None
        assert sidecar_formats_present(tmp_path / "a.pkl") == "none"

    def test_json_preferred_when_both_exist(self, tmp_path: Path) -> None:
        artifact = tmp_path / "a.pkl"
        write_sidecar(artifact, _record(artifact, format="json"), "json")
        write_sidecar(artifact, _record(artifact, format="yaml"), "yaml")

        assert sidecar_formats_present(artifact) == "both"
        assert read_sidecar(artifact).format == "json"

    def test_unparseable_raises(self, tmp_path: Path) -> None:
        artifact = tmp_path / "a.pkl"
        path = sidecar_path(artifact)
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        with pytest.raises(CorruptStateError, match="Unreadable sidecar"):
            read_sidecar(artifact)

    def test_schema_violation_raises(self, tmp_path: Path) -> None:
        artifact = tmp_path / "a.pkl"
        path = sidecar_path(artifact)
        path.parent.mkdir(parents=True)
        path.write_text('{"path": "x", "created_at": 5}')
        with pytest.raises(CorruptStateError, match="Malformed sidecar"):
            read_sidecar(artifact)
