"""File locks that keep a single sync run per destination sheet."""
from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from fleetsync import app_paths

if os.name == "nt":  # pragma: no cover - Windows specific branch
    import msvcrt
else:  # pragma: no cover - POSIX branch
    import fcntl  # type: ignore[import-not-found]


class SingleInstanceError(RuntimeError):
    """Raised when another sync run already holds the lock."""


@dataclass
class _RunLock:
    """Simple lock wrapper around a filesystem-backed mutex."""

    name: str
    directory: Optional[Path] = None
    _file_handle: Optional[object] = None
    _lock_path: Optional[Path] = None

    def acquire(self) -> "_RunLock":
        directory = self.directory or app_paths.ensure_directory(app_paths.LOCKS_DIR)
        lock_path = directory / f"{self._sanitize_name(self.name)}.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        file_handle = open(lock_path, "a+b")
        file_handle.seek(0)
        try:
            self._lock_file(file_handle)
        except OSError as exc:
            file_handle.close()
            raise SingleInstanceError(f"A sync run for {self.name} is already in progress.") from exc

        try:
            file_handle.seek(0)
            file_handle.truncate()
            file_handle.write(str(os.getpid()).encode("utf-8"))
            file_handle.flush()
        except OSError:
            # The lock is held even when the PID cannot be recorded.
            pass

        self._file_handle = file_handle
        self._lock_path = lock_path
        return self

    def release(self) -> None:
        file_handle = self._file_handle
        if not file_handle:
            return

        try:
            try:
                file_handle.seek(0)
            except OSError:
                pass

            self._unlock_file(file_handle)
        finally:
            try:
                file_handle.close()
            finally:
                self._file_handle = None

        lock_path = self._lock_path
        if lock_path and lock_path.exists():
            try:
                lock_path.unlink()
            except OSError:
                pass
        self._lock_path = None

    def __enter__(self) -> "_RunLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.release()

    @staticmethod
    def _sanitize_name(name: str) -> str:
        safe = [char if char.isalnum() else "_" for char in name]
        value = "".join(safe).strip("_")
        return value or "fleetsync"

    @staticmethod
    def _lock_file(handle: object) -> None:
        if os.name == "nt":  # pragma: no cover - Windows specific branch
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:  # pragma: no cover - POSIX branch
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    @staticmethod
    def _unlock_file(handle: object) -> None:
        if os.name == "nt":  # pragma: no cover - Windows specific branch
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        else:  # pragma: no cover - POSIX branch
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def acquire_run_lock(name: str, *, directory: Optional[Path] = None) -> _RunLock:
    """Attempt to acquire the run lock for ``name``.

    :raises SingleInstanceError: when another run already holds it.
    :returns: a context-manageable lock object.
    """

    lock = _RunLock(name, directory=directory)
    return lock.acquire()


@contextmanager
def single_run(name: str, *, directory: Optional[Path] = None) -> Iterator[_RunLock]:
    """Context manager that ensures only one sync run per ``name`` executes."""

    lock = acquire_run_lock(name, directory=directory)
    try:
        yield lock
    finally:
        lock.release()


__all__ = [
    "SingleInstanceError",
    "acquire_run_lock",
    "single_run",
]
