"""Pluggable serialization backends.

A backend is a ``write(obj, path)`` / ``read(path)`` pair selected by format
name. The store treats backends as opaque byte producers: it only hashes and
copies what they write, never inspects format internals.

Format resolution order for a save or load: the explicit format name, then
the file extension, then the store's configured default.
"""

from __future__ import annotations

import json
import pickle
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import pyarrow as pa
import pyarrow.csv as pa_csv
import pyarrow.feather as pa_feather
import pyarrow.parquet as pq

from artifact_ledger.errors import StoreError

Reader = Callable[[Path], Any]
Writer = Callable[[Any, Path], None]


class UnknownFormatError(StoreError):
    """Raised when a format name is not registered."""


@dataclass(frozen=True)
class FormatBackend:
    """A named read/write pair with the file extensions it claims."""

    name: str
    read: Reader
    write: Writer
    extensions: tuple[str, ...] = ()


def _as_table(obj: Any) -> pa.Table:
    if isinstance(obj, pa.Table):
        return obj
    if isinstance(obj, Mapping):
        return pa.table(dict(obj))
    raise TypeError(f"Expected a pyarrow.Table or a mapping of columns, got {type(obj).__name__}")


def _write_pickle(obj: Any, path: Path) -> None:
    with path.open("wb") as f:
        pickle.dump(obj, f, protocol=pickle.HIGHEST_PROTOCOL)


def _read_pickle(path: Path) -> Any:
    with path.open("rb") as f:
        return pickle.load(f)


def _write_json(obj: Any, path: Path) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True, ensure_ascii=False)
        f.write("\n")


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_npy(obj: Any, path: Path) -> None:
    # A file object keeps numpy from appending ".npy" to staged temp names.
    with path.open("wb") as f:
        np.save(f, np.asarray(obj), allow_pickle=False)


def _read_npy(path: Path) -> Any:
    return np.load(path, allow_pickle=False)


def _write_parquet(obj: Any, path: Path) -> None:
    pq.write_table(_as_table(obj), str(path), compression="snappy")


def _read_parquet(path: Path) -> Any:
    return pq.read_table(str(path))


def _write_feather(obj: Any, path: Path) -> None:
    pa_feather.write_feather(_as_table(obj), str(path))


def _read_feather(path: Path) -> Any:
    return pa_feather.read_table(str(path))


def _write_csv(obj: Any, path: Path) -> None:
    pa_csv.write_csv(_as_table(obj), str(path))


def _read_csv(path: Path) -> Any:
    return pa_csv.read_csv(str(path))


class FormatRegistry:
    """Registry of serialization backends keyed by name and extension.

    Example usage:
        registry = default_registry()
        registry.register("txt", read=lambda p: p.read_text(), write=lambda o, p: p.write_text(o),
                          extensions=[".txt"])
        backend = registry.resolve(Path("notes.txt"))
    """

    def __init__(self) -> None:
        self._backends: dict[str, FormatBackend] = {}
        self._extensions: dict[str, str] = {}

    def register(
        self,
        name: str,
        read: Reader,
        write: Writer,
        extensions: Iterable[str] = (),
    ) -> FormatBackend:
        """Register (or replace) a backend.

        Args:
            name: Format name used in sidecars and ``format=`` arguments.
            read: Callable reading an object from a path.
            write: Callable writing an object to a path.
            extensions: File extensions (with or without the dot) that map to
                this format.

        Returns:
            The registered FormatBackend.
        """
        if not name:
            raise ValueError("Format name must not be empty")
        normalized = tuple(ext.lower() if ext.startswith(".") else "." + ext.lower() for ext in extensions)
        previous = self._backends.get(name)
        if previous is not None:
            for ext in previous.extensions:
                if self._extensions.get(ext) == name:
                    del self._extensions[ext]
        backend = FormatBackend(name=name, read=read, write=write, extensions=normalized)
        self._backends[name] = backend
        for ext in normalized:
            self._extensions[ext] = name
        return backend

    def get(self, name: str) -> FormatBackend:
        """Look up a backend by name.

        Raises:
            UnknownFormatError: If no backend is registered under ``name``.
        """
        try:
            return self._backends[name]
        except KeyError:
            raise UnknownFormatError(f"Unknown format: {name!r} (known: {', '.join(self.names())})") from None

    def names(self) -> list[str]:
        return sorted(self._backends)

    def guess(self, path: Path) -> str | None:
        """Return the format claimed by ``path``'s extension, if any."""
        return self._extensions.get(path.suffix.lower())

    def resolve(self, path: Path, explicit: str | None = None, default: str | None = None) -> FormatBackend:
        """Pick the backend for ``path`` by explicit name, extension, then default."""
        name = explicit or self.guess(path) or default
        if name is None:
            raise UnknownFormatError(f"Cannot determine format for {path}")
        return self.get(name)


def default_registry() -> FormatRegistry:
    """Create a registry holding the built-in backends."""
    registry = FormatRegistry()
    registry.register("pickle", _read_pickle, _write_pickle, [".pkl", ".pickle"])
    registry.register("json", _read_json, _write_json, [".json"])
    registry.register("npy", _read_npy, _write_npy, [".npy"])
    registry.register("parquet", _read_parquet, _write_parquet, [".parquet"])
    registry.register("feather", _read_feather, _write_feather, [".feather", ".arrow"])
    registry.register("csv", _read_csv, _write_csv, [".csv"])
    return registry
