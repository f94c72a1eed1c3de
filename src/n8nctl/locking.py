"""Advisory file locks guarding mutating n8nctl commands.

Backup, restore, deploy, uninstall and update all touch the same installation
root and temporary workspace conventions, so they serialise on one global lock
file under the runtime directory. Locks are ``fcntl.flock`` based and released
automatically when the process exits; the lock file itself persists with JSON
metadata describing the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "n8nctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    def __init__(self, path: Path, timeout: float, holder: dict[str, object] | None) -> None:
        self.path = path
        self.timeout = timeout
        self.holder = holder or {}
        pid = self.holder.get("pid", "unknown")
        command = self.holder.get("command", "unknown")
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for lock {path} "
            f"(held by pid {pid}: {command}). Another n8nctl command is running."
        )


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Create and acquire named lock files under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(path, limit, _read_holder(path)) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_holder(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def stack_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock serialising all mutating commands."""
        with self.lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle


def _write_holder(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "command": " ".join(sys.argv),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


def _read_holder(path: Path) -> dict[str, object] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


__all__ = ["GLOBAL_LOCK_NAME", "LockHandle", "LockManager", "LockTimeoutError"]
