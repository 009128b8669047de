"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from quadctl.locking import LockError, LockManager, LockTimeoutError


def test_unit_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "units" / "ai-stack.lock"
    with manager.unit_lock("ai-stack") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["acquired_at"].endswith("Z")

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.unit_lock("ai-stack", timeout=0.2):
        pass


def test_unit_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.unit_lock("alpha"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.unit_lock("alpha", timeout=0.1):
                pass

    assert excinfo.value.path == manager.unit_lock_path("alpha")
    assert "alpha.lock" in str(excinfo.value)


def test_distinct_unit_sets_do_not_contend(tmp_path: Path) -> None:
    """Locks are scoped per unit-set."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.unit_lock("alpha"):
        with manager.unit_lock("beta", timeout=0.1) as handle:
            assert handle.wait_ms >= 0


def test_lock_released_when_body_raises(tmp_path: Path) -> None:
    """An exception inside the locked block still releases the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with pytest.raises(RuntimeError):
        with manager.unit_lock("web"):
            raise RuntimeError("boom")

    with manager.unit_lock("web", timeout=0.1) as handle:
        assert handle.path == manager.unit_lock_path("web")


def test_unusable_lock_path_raises_lock_error(tmp_path: Path) -> None:
    """A lock path that cannot be opened surfaces as :class:`LockError`."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    manager.unit_lock_path("web").mkdir(parents=True)

    with pytest.raises(LockError) as excinfo:
        with manager.unit_lock("web"):
            pass

    assert not isinstance(excinfo.value, LockTimeoutError)
    assert excinfo.value.path == manager.unit_lock_path("web")
    assert "Cannot open lock file" in str(excinfo.value)
