"""Atomic file operations for the artifact ledger.

Single files are written with the write-to-temp + fsync + rename pattern, so
a reader sees either the old or the new content and never a partial file.

Multi-file saves go through CommitJournal: each replacement keeps a backup of
the file it overwrites, and if a later step fails, the steps already applied
are undone in reverse order.

Example usage:
    with CommitJournal() as journal:
        journal.replace_file(staged_artifact, live_path)
        journal.rename_dir(staged_snapshot, version_dir)
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

from artifact_ledger.errors import AtomicWriteError

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def staged_path(target: Path) -> Path:
    """Reserve an empty temporary file beside ``target``.

    The file lives in the same directory so the final rename stays on one
    filesystem. The caller owns the returned path and must rename or unlink it.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path_str = tempfile.mkstemp(
        suffix=TMP_SUFFIX,
        prefix="." + target.name + ".",
        dir=target.parent,
    )
    os.close(fd)
    return Path(tmp_path_str)


def stage_bytes(target: Path, content: bytes) -> Path:
    """Write ``content`` to a fsynced temporary file beside ``target``."""
    tmp_path = staged_path(target)
    try:
        with tmp_path.open("wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to stage write for {target}: {exc}") from exc
    return tmp_path


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write bytes to ``path`` atomically.

    Raises:
        AtomicWriteError: If the temporary write or the rename fails. The
            previous file content, if any, is left in place.
    """
    tmp_path = stage_bytes(path, content)
    try:
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to rename {tmp_path.name} onto {path}: {exc}") from exc


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write text to ``path`` atomically."""
    atomic_write_bytes(path, content.encode(encoding))


def fsync_file(path: Path) -> None:
    """Flush a file written by a third-party writer to disk."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class CommitJournal:
    """Apply several file and directory renames as one unit.

    Used as a context manager: on a clean exit the backups are discarded; on
    an exception every applied step is reverted, newest first, and the
    exception propagates.
    """

    def __init__(self) -> None:
        self._undo: list[Callable[[], None]] = []
        self._backups: list[Path] = []

    def __enter__(self) -> CommitJournal:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        if exc_type is not None:
            self.rollback()
        else:
            self._discard_backups()
        return False

    def _backup(self, target: Path) -> Path:
        backup = target.parent / f".{target.name}.{uuid.uuid4().hex[:8]}.bak"
        try:
            os.link(target, backup)
        except OSError:
            shutil.copy2(target, backup)
        return backup

    def replace_file(self, staged: Path, target: Path) -> None:
        """Rename ``staged`` onto ``target``, remembering how to undo it."""
        backup = self._backup(target) if target.exists() else None
        try:
            os.replace(staged, target)
        except OSError as exc:
            if backup is not None:
                backup.unlink(missing_ok=True)
            staged.unlink(missing_ok=True)
            raise AtomicWriteError(f"Failed to replace {target}: {exc}") from exc

        if backup is None:
            self._undo.append(lambda: target.unlink(missing_ok=True))
        else:
            self._backups.append(backup)
            self._undo.append(lambda: os.replace(backup, target))

    def remove_file(self, target: Path) -> None:
        """Remove ``target`` if present, keeping a backup until commit."""
        if not target.exists():
            return
        backup = self._backup(target)
        target.unlink()
        self._backups.append(backup)
        self._undo.append(lambda: os.replace(backup, target))

    def rename_dir(self, staged: Path, target: Path) -> None:
        """Move a fully populated staging directory into place."""
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staged, target)
        except OSError as exc:
            shutil.rmtree(staged, ignore_errors=True)
            raise AtomicWriteError(f"Failed to commit directory {target}: {exc}") from exc
        self._undo.append(lambda: shutil.rmtree(target, ignore_errors=True))

    def add_undo(self, func: Callable[[], None]) -> None:
        """Register an extra undo step (for example a catalog restore)."""
        self._undo.append(func)

    def rollback(self) -> None:
        """Revert every applied step in reverse order."""
        while self._undo:
            undo = self._undo.pop()
            try:
                undo()
            except OSError:
                logger.error("Rollback step failed", exc_info=True)
        self._discard_backups()

    def _discard_backups(self) -> None:
        for backup in self._backups:
            backup.unlink(missing_ok=True)
        self._backups.clear()
        self._undo.clear()
