"""Structured operation logging for n8nctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final result, then appends one JSON record per operation
to ``operations.jsonl``. A human-readable trail is written alongside through
the standard :mod:`logging` module so operators can ``tail`` it during long
backup or restore runs.

Logging must never break a command: when the log directory cannot be created
or a write fails, the logger disables itself and the command carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LOGGER_NAME = "n8nctl"
_HUMAN_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value* (unknown types become strings)."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final outcome of a single command."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = uuid.uuid4().hex
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    @property
    def actor(self) -> dict[str, object]:
        """Return details about the user running the command."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):  # pragma: no cover - depends on passwd database
            user = "unknown"
        return {"user": user, "uid": os.getuid(), "pid": os.getpid()}

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "ts": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)
        level = logging.WARNING if status in {"warning", "failed", "error"} else logging.INFO
        suffix = f" ({detail})" if detail is not None else ""
        self._logger.emit(level, f"[{self.command}] {name}: {status}{suffix}")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        rc: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "op_id": self.op_id,
            "ts": self.started_at,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": self.actor,
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Write operation records and a human log under *log_dir*."""

    def __init__(self, log_dir: Path, *, max_bytes: int = 5 * 1024 * 1024) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._human_log_path = self._log_dir / "n8nctl.log"
        self._enabled = True
        self._logger = logging.getLogger(_LOGGER_NAME)
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_handler(max_bytes)

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL file holding operation records."""
        return self._operations_log_path

    @property
    def human_log_path(self) -> Path:
        """Return the human-readable log file."""
        return self._human_log_path

    def _attach_handler(self, max_bytes: int) -> None:
        target = str(self._human_log_path)
        for handler in list(self._logger.handlers):
            if isinstance(handler, RotatingFileHandler):
                if handler.baseFilename == os.path.abspath(target):
                    return
                self._logger.removeHandler(handler)
                handler.close()
        handler = RotatingFileHandler(target, maxBytes=max_bytes, backupCount=5, delay=True)
        handler.setFormatter(logging.Formatter(_HUMAN_FORMAT))
        self._logger.addHandler(handler)

    def emit(self, level: int, message: str) -> None:
        """Write *message* to the human log when logging is enabled."""
        if not self._enabled:
            return
        self._logger.log(level, message)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist its record on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        self.emit(logging.INFO, f"[{command}] started")
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        result = scope.result or {}
        status = str(result.get("status", "unknown"))
        level = logging.ERROR if status == "error" else (
            logging.WARNING if status == "warning" else logging.INFO
        )
        self.emit(level, f"[{scope.command}] {status}: {result.get('message', '')}")
        if not self._enabled:
            return
        line = json.dumps(scope.to_record(), sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
