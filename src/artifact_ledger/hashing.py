"""Identity hashing for artifacts, versions, content, and code.

All identifiers are 16 hex characters taken from a keyed BLAKE2b digest. The
hash is used for identity and change detection only; it is not meant to resist
adversarial input.

Values pass through a pluggable canonicalize step before they reach the
hasher, so equal logical content produces equal bytes regardless of mapping
key order or container bookkeeping (Arrow schema metadata, chunk layout).

Example usage:
    register_canonicalizer(MyFrame, lambda frame: frame.to_bytes())
    digest = content_hash({"b": 1, "a": [1, 2]})
"""

from __future__ import annotations

import hashlib
import inspect
import json
import math
import os
import pickle
import textwrap
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import numpy as np
import pyarrow as pa
from pyarrow import ipc as pa_ipc

HASH_KEY = b"artifact-ledger/v1"
DIGEST_SIZE = 8
_HASH_CHUNK_SIZE = 1024 * 1024

Canonicalizer = Callable[[Any], bytes]

_CANONICALIZERS: dict[type, Canonicalizer] = {}


def hash_bytes(data: bytes) -> str:
    """Return the 16-hex-character keyed digest of ``data``."""
    hasher = hashlib.blake2b(digest_size=DIGEST_SIZE, key=HASH_KEY)
    hasher.update(data)
    return hasher.hexdigest()


def canonical_json_dumps(data: Any) -> str:
    """Serialize JSON with sorted keys and compact separators."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def normalize_path(path: str | os.PathLike[str], root: str | os.PathLike[str] | None = None) -> str:
    """Normalize a path to an absolute string.

    Relative paths are resolved against ``root`` (or the working directory).
    ``~`` is expanded and ``.``/``..`` segments are collapsed, so two spellings
    of one location normalize to the same string. Symlinks are not resolved.
    """
    raw = os.path.expanduser(os.fspath(path))
    if not os.path.isabs(raw):
        base = os.fspath(root) if root is not None else os.getcwd()
        raw = os.path.join(base, raw)
    return os.path.normpath(os.path.abspath(raw))


def artifact_id(path: str | os.PathLike[str]) -> str:
    """Derive the artifact id from the normalized absolute path."""
    return hash_bytes(normalize_path(path).encode("utf-8"))


def version_id(
    artifact_id: str,
    content_hash: str | None,
    code_hash: str | None,
    timestamp: str,
    salt: int = 0,
) -> str:
    """Derive a version id from its identity inputs.

    Args:
        artifact_id: Id of the owning artifact.
        content_hash: Hash of the canonicalized object.
        code_hash: Hash of the producing code, if any.
        timestamp: ISO-8601 creation timestamp.
        salt: Disambiguator mixed in when a derived id is already taken.

    Returns:
        A 16-hex-character version id.
    """
    payload: dict[str, Any] = {
        "artifact_id": artifact_id,
        "content_hash": content_hash or "",
        "code_hash": code_hash or "",
        "created_at": timestamp,
    }
    if salt:
        payload["salt"] = salt
    return hash_bytes(canonical_json_dumps(payload).encode("utf-8"))


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def register_canonicalizer(kind: type, func: Canonicalizer) -> None:
    """Register a canonicalizer for ``kind`` and its subclasses.

    A later registration for the same type replaces the earlier one.
    """
    _CANONICALIZERS[kind] = func


def _lookup_canonicalizer(value: Any) -> Canonicalizer | None:
    for kind in type(value).__mro__:
        func = _CANONICALIZERS.get(kind)
        if func is not None:
            return func
    return None


def _is_tree(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str, Mapping, list, tuple, set, frozenset))


def _tree_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    return f"{type(key).__name__}:{key!r}"


def _to_tree(value: Any) -> Any:
    """Convert a nested value into a JSON-encodable tree with stable ordering."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        return {"__float__": repr(value)}
    if isinstance(value, Mapping):
        return {_tree_key(k): _to_tree(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_tree(v) for v in value]
    if isinstance(value, tuple):
        return {"__tuple__": [_to_tree(v) for v in value]}
    if isinstance(value, (set, frozenset)):
        tag = "__frozenset__" if isinstance(value, frozenset) else "__set__"
        return {tag: sorted((_to_tree(v) for v in value), key=canonical_json_dumps)}
    kind = type(value)
    return {
        "__type__": f"{kind.__module__}.{kind.__qualname__}",
        "__hash__": hash_bytes(canonicalize(value)),
    }


# JSON text never holds a raw NUL, so tagged bytes cannot collide with a tree.
_BYTES_TAG = b"bytes\x00"


def canonicalize(value: Any) -> bytes:
    """Return a byte-stable encoding of ``value`` for hashing.

    Lookup order: a registered canonicalizer along the type's MRO, tagged raw
    bytes, nested builtin containers (encoded as sorted canonical JSON, with
    tuples and sets tagged so they never equal a list), and finally pickle
    protocol 4.
    """
    func = _lookup_canonicalizer(value)
    if func is not None:
        return func(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _BYTES_TAG + bytes(value)
    if _is_tree(value):
        return canonical_json_dumps(_to_tree(value)).encode("utf-8")
    return pickle.dumps(value, protocol=4)


def _canonicalize_ndarray(array: np.ndarray) -> bytes:
    header = canonical_json_dumps({"dtype": array.dtype.str, "shape": list(array.shape)})
    if array.dtype.hasobject:
        body = canonicalize(array.tolist())
    else:
        body = np.ascontiguousarray(array).tobytes()
    return header.encode("utf-8") + b"\x00" + body


def _canonicalize_table(table: pa.Table) -> bytes:
    # Schema metadata (pandas index info etc.) and chunking are bookkeeping.
    table = table.replace_schema_metadata(None).combine_chunks()
    sink = pa.BufferOutputStream()
    with pa_ipc.new_stream(sink, table.schema) as writer:
        writer.write_table(table)
    return sink.getvalue().to_pybytes()


register_canonicalizer(np.ndarray, _canonicalize_ndarray)
register_canonicalizer(pa.Table, _canonicalize_table)


# ---------------------------------------------------------------------------
# Content, code, and file hashes
# ---------------------------------------------------------------------------


def content_hash(obj: Any) -> str:
    """Hash the canonical encoding of an in-memory object."""
    return hash_bytes(canonicalize(obj))


def normalize_code(code: str | Callable[..., Any]) -> str:
    """Normalize source code so formatting noise does not change its hash.

    Callables are resolved to their source text. Line endings are unified,
    common indentation is removed, trailing whitespace is stripped, and blank
    lines are dropped.
    """
    if isinstance(code, str):
        source = code
    else:
        try:
            source = inspect.getsource(code)
        except (OSError, TypeError):
            source = f"{getattr(code, '__module__', '')}.{getattr(code, '__qualname__', repr(code))}"
    source = source.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in textwrap.dedent(source).split("\n")]
    return "\n".join(line for line in lines if line)


def code_hash(code: str | Callable[..., Any] | None) -> str | None:
    """Hash producing code; returns None when no code is supplied."""
    if code is None:
        return None
    return hash_bytes(normalize_code(code).encode("utf-8"))


def file_hash(path: str | os.PathLike[str]) -> str:
    """Hash the on-disk bytes of a file, streaming in chunks."""
    hasher = hashlib.blake2b(digest_size=DIGEST_SIZE, key=HASH_KEY)
    with Path(path).open("rb") as f:
        while True:
            chunk = f.read(_HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()
