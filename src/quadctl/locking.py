"""Advisory file locks serialising mutations of a unit-set.

Each unit-set has an exclusive ``fcntl.flock`` lock on
``runtime_dir/units/<name>.lock`` guarding its staging, live and backup
directories.

Lock files carry a small JSON payload (pid, path, acquisition time) for
diagnostics and are left in place after release.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or locked."""

    def __init__(self, message: str, path: Path) -> None:
        """Record the lock *path* the failure relates to."""
        super().__init__(message)
        self.path = path


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Record the contended *path* and the *timeout* that elapsed."""
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}.", path)
        self.timeout = timeout


@dataclass(frozen=True)
class LockHandle:
    """A held lock and how long it took to acquire."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire per-unit-set locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, *, default_timeout: float = 30.0) -> None:
        """Store the lock root and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def unit_lock_path(self, name: str) -> Path:
        """Return the lock file path for unit-set *name*."""
        return self.runtime_dir / "units" / f"{name}.lock"

    @contextmanager
    def unit_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for unit-set *name*."""
        with self._acquire(self.unit_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Cannot open lock file {path}: {exc}", path) from exc
        try:
            wait_ms = _lock_fd(fd, path, limit)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _lock_fd(fd: int, path: Path, limit: float) -> int:
    """Lock *fd* exclusively, polling until *limit*; return the wait in milliseconds."""
    started = time.monotonic()
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except OSError as exc:
            if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise LockError(f"Cannot lock {path}: {exc}", path) from exc
            if time.monotonic() - started >= limit:
                raise LockTimeoutError(path, limit) from exc
            time.sleep(_POLL_INTERVAL)
    wait_ms = int((time.monotonic() - started) * 1000)
    try:
        _write_metadata(fd, path)
    except OSError as exc:
        fcntl.flock(fd, fcntl.LOCK_UN)
        raise LockError(f"Cannot write lock metadata to {path}: {exc}", path) from exc
    return wait_ms


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
