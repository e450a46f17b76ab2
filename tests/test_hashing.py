"""Tests for identity hashing and canonicalization."""

from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import pyarrow as pa

from artifact_ledger.hashing import (
    artifact_id,
    canonicalize,
    code_hash,
    content_hash,
    file_hash,
    hash_bytes,
    normalize_code,
    normalize_path,
    register_canonicalizer,
    version_id,
)


class TestHashBytes:
    """Tests for the keyed digest."""

    def test_sixteen_hex_characters(self) -> None:
        digest = hash_bytes(b"hello")
        assert len(digest) == 16
        int(digest, 16)

    def test_deterministic(self) -> None:
        assert hash_bytes(b"hello") == hash_bytes(b"hello")
        assert hash_bytes(b"hello") != hash_bytes(b"hello!")

    def test_file_hash_matches_bytes_hash(self, tmp_path: Path) -> None:
        path = tmp_path / "blob.bin"
        payload = os.urandom(4096)
        path.write_bytes(payload)
        assert file_hash(path) == hash_bytes(payload)


class TestNormalizePath:
    """Tests for path normalization and artifact ids."""

    def test_relative_resolves_against_root(self, tmp_path: Path) -> None:
        assert normalize_path("data/a.pkl", tmp_path) == str(tmp_path / "data" / "a.pkl")

    def test_collapses_dot_segments(self, tmp_path: Path) -> None:
        messy = f"{tmp_path}/data/./sub/../a.pkl"
        assert normalize_path(messy) == str(tmp_path / "data" / "a.pkl")

    def test_artifact_id_is_spelling_independent(self, tmp_path: Path) -> None:
        assert artifact_id(tmp_path / "a.pkl") == artifact_id(f"{tmp_path}/x/../a.pkl")
        assert artifact_id(tmp_path / "a.pkl") != artifact_id(tmp_path / "b.pkl")


class TestContentHash:
    """Tests for canonical content hashing."""

    def test_mapping_key_order_ignored(self) -> None:
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_values_matter(self) -> None:
        assert content_hash({"a": 1}) != content_hash({"a": 2})
        assert content_hash([1, 2]) != content_hash([2, 1])

    def test_sets_are_order_free(self) -> None:
        assert content_hash({3, 1, 2}) == content_hash({1, 2, 3})

    def test_container_kinds_are_distinct(self) -> None:
        hashes = {
            content_hash([1, 2]),
            content_hash((1, 2)),
            content_hash({1, 2}),
            content_hash(frozenset({1, 2})),
        }
        assert len(hashes) == 4
        assert content_hash({"k": [1]}) != content_hash({"k": (1,)})

    def test_bytes_never_match_text(self) -> None:
        assert content_hash(b'"abc"') != content_hash("abc")
        assert content_hash(b"[1, 2]") != content_hash([1, 2])
        assert content_hash(bytearray(b"abc")) == content_hash(b"abc")

    def test_non_finite_floats_supported(self) -> None:
        assert content_hash([float("nan")]) == content_hash([float("nan")])
        assert content_hash([float("inf")]) != content_hash([float("-inf")])

    def test_ndarray_dtype_and_shape_matter(self) -> None:
        base = np.arange(6, dtype=np.int64)
        assert content_hash(base) == content_hash(np.arange(6, dtype=np.int64))
        assert content_hash(base) != content_hash(base.astype(np.int32))
        assert content_hash(base) != content_hash(base.reshape(2, 3))

    def test_non_contiguous_array_matches_copy(self) -> None:
        grid = np.arange(12).reshape(3, 4)
        assert content_hash(grid[:, ::2]) == content_hash(np.ascontiguousarray(grid[:, ::2]))

    def test_table_schema_metadata_ignored(self) -> None:
        table = pa.table({"x": [1, 2, 3], "y": ["a", "b", "c"]})
        tagged = table.replace_schema_metadata({"pandas": "index info"})
        assert content_hash(table) == content_hash(tagged)

    def test_table_values_matter(self) -> None:
        assert content_hash(pa.table({"x": [1, 2]})) != content_hash(pa.table({"x": [1, 3]}))

    def test_registered_canonicalizer_is_used_for_subclasses(self) -> None:
        class Frame:
            def __init__(self, payload: str, noise: int) -> None:
                self.payload = payload
                self.noise = noise

        class SubFrame(Frame):
            pass

        register_canonicalizer(Frame, lambda frame: frame.payload.encode("utf-8"))

        assert canonicalize(Frame("same", noise=1)) == b"same"
        assert content_hash(SubFrame("same", noise=1)) == content_hash(SubFrame("same", noise=2))


class TestCodeHash:
    """Tests for code normalization."""

    def test_none_yields_none(self) -> None:
        assert code_hash(None) is None

    def test_formatting_noise_ignored(self) -> None:
        clean = "def f(x):\n    return x + 1\n"
        noisy = "    def f(x):   \r\n\r\n        return x + 1\r\n\n"
        assert normalize_code(clean) == normalize_code(noisy)
        assert code_hash(clean) == code_hash(noisy)

    def test_body_change_detected(self) -> None:
        assert code_hash("def f(x):\n    return x + 1\n") != code_hash("def f(x):\n    return x + 2\n")

    def test_callable_uses_source(self) -> None:
        def produce(x: int) -> int:
            return x * 2

        assert "return x * 2" in normalize_code(produce)
        assert code_hash(produce) == code_hash(produce)


class TestVersionId:
    """Tests for version id derivation."""

    def test_inputs_affect_id(self) -> None:
        base = version_id("aid", "c1", None, "2024-01-01T00:00:00.000000Z")
        assert base != version_id("aid", "c2", None, "2024-01-01T00:00:00.000000Z")
        assert base != version_id("aid", "c1", "k1", "2024-01-01T00:00:00.000000Z")
        assert base != version_id("aid", "c1", None, "2024-01-01T00:00:00.000001Z")

    def test_salt_disambiguates(self) -> None:
        args = ("aid", "c1", None, "2024-01-01T00:00:00.000000Z")
        assert version_id(*args, salt=0) != version_id(*args, salt=1)
        assert version_id(*args) == version_id(*args, salt=0)
