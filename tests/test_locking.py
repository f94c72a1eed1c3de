"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from n8nctl.locking import LockManager, LockTimeoutError


def test_stack_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the stack lock writes holder metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "n8nctl.lock"
    with manager.stack_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.stack_lock(timeout=0.2):
        pass


def test_stack_lock_timeout_names_holder(tmp_path: Path) -> None:
    """A second acquisition times out and reports who holds the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.stack_lock():
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.stack_lock(timeout=0.1):
                pass

    assert excinfo.value.holder["pid"] == os.getpid()
    assert "Another n8nctl command is running." in str(excinfo.value)


def test_named_locks_are_independent(tmp_path: Path) -> None:
    """Locks with different names do not block each other."""
    manager = LockManager(tmp_path / "run", default_timeout=0.2)

    with manager.lock("alpha"):
        with manager.lock("beta") as handle:
            assert handle.path == tmp_path / "run" / "beta.lock"
