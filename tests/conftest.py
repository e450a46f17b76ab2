# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for test suite.

This module provides:
- Deterministic test environment setup
- Store fixtures rooted in a per-test temporary directory
- A helper that builds a small lineage graph through the public API
"""
from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from artifact_ledger.config import StoreConfig
from artifact_ledger.store import SaveResult, Store
from artifact_ledger.version_store import ParentDescriptor


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism.

    Sets environment variables to ensure reproducible test execution.
    """
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Fixtures: Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Empty project directory for one store."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def store(project_root: Path) -> Store:
    """Freshly initialized store with the default configuration."""
    return Store.init(project_root)


@pytest.fixture
def make_store(tmp_path: Path) -> Callable[..., Store]:
    """Factory for stores with custom configuration values."""

    def _make(name: str = "custom", **config: Any) -> Store:
        root = tmp_path / name
        root.mkdir(exist_ok=True)
        return Store.init(root, StoreConfig(**config))

    return _make


def pin(result: SaveResult) -> ParentDescriptor:
    """Parent descriptor pinning the version produced by a save."""
    assert result.version_id is not None
    return ParentDescriptor(path=result.path, version_id=result.version_id)


@pytest.fixture
def chain(store: Store) -> dict[str, SaveResult]:
    """Lineage graph A -> B -> C and B -> D saved through the store."""
    a = store.save({"value": 1}, "a.pkl")
    b = store.save({"value": 2}, "b.pkl", parents=[pin(a)])
    c = store.save({"value": 3}, "c.pkl", parents=[pin(b)])
    d = store.save({"value": 4}, "d.pkl", parents=[pin(b)])
    return {"a": a, "b": b, "c": c, "d": d}
