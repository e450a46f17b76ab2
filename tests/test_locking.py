"""Tests for the store write lock."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from artifact_ledger.locking import FileLock, LockAcquisitionError, LockError
from artifact_ledger.store import Store


class TestFileLock:
    """Tests for FileLock."""

    def test_acquire_and_release(self, tmp_path: Path) -> None:
        lock = FileLock(tmp_path / ".locks" / "store.lock")
        assert not lock.is_locked
        with lock.exclusive(timeout=1.0):
            assert lock.is_locked
            assert lock.lock_path.exists()
        assert not lock.is_locked

    def test_reentrant_in_same_thread(self, tmp_path: Path) -> None:
        lock = FileLock(tmp_path / "store.lock")
        with lock.exclusive(timeout=1.0):
            with lock.exclusive(timeout=1.0):
                assert lock.is_locked
            assert lock.is_locked
        assert not lock.is_locked

    def test_second_holder_times_out(self, tmp_path: Path) -> None:
        path = tmp_path / "store.lock"
        holder = FileLock(path)
        errors: list[BaseException] = []

        def contend() -> None:
            try:
                FileLock(path).acquire(timeout=0.2)
            except LockAcquisitionError as exc:
                errors.append(exc)

        with holder.exclusive(timeout=1.0):
            thread = threading.Thread(target=contend)
            thread.start()
            thread.join(timeout=5.0)

        assert len(errors) == 1
        assert "Timeout acquiring lock" in str(errors[0])

    def test_lock_free_after_release(self, tmp_path: Path) -> None:
        path = tmp_path / "store.lock"
        with FileLock(path).exclusive(timeout=1.0):
            pass
        other = FileLock(path)
        other.acquire(timeout=0.5)
        other.release()

    def test_release_without_acquire(self, tmp_path: Path) -> None:
        with pytest.raises(LockError, match="not held"):
            FileLock(tmp_path / "store.lock").release()


class TestStoreLocking:
    """Tests for concurrent writers on one store."""

    def test_concurrent_saves_are_serialized(self, store: Store) -> None:
        errors: list[BaseException] = []

        def writer(index: int) -> None:
            try:
                for i in range(5):
                    store.save({"writer": index, "i": i}, f"w{index}.pkl")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30.0)

        assert errors == []
        assert sum(row.n_versions for row in store.catalog.artifacts()) == 20
