"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from n8nctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger.operations_log_path.read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_operation_records_steps_and_result(tmp_path: Path) -> None:
    """A completed operation appends one JSON record with its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("backup", args={"json": False}, target={"kind": "backup"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("archive.postgres_data")
        op.add_step("archive.fail2ban_config", status="warning", detail="missing")
        op.success("Backup created.", changed=1, backups=["full_backup_x.tar.gz"])

    (record,) = _records(logger)
    assert record["command"] == "backup"
    assert record["lock_wait_ms"] == 12
    assert [step["name"] for step in record["steps"]] == [
        "archive.postgres_data",
        "archive.fail2ban_config",
    ]
    assert record["result"]["status"] == "success"
    assert record["result"]["backups"] == ["full_backup_x.tar.gz"]
    human = logger.human_log_path.read_text(encoding="utf-8")
    assert "[backup] archive.fail2ban_config: warning (missing)" in human


def test_operation_without_result_defaults_to_success(tmp_path: Path) -> None:
    """Leaving the scope without a result records a success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("status"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"
    assert record["result"]["message"] == "Operation completed."


def test_unhandled_exception_records_error(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("restore"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["message"] == "Unhandled error: boom"


def test_unwritable_log_directory_disables_logger(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Commands still run when the log directory cannot be created."""
    log_dir = tmp_path / "logs"
    real_mkdir = Path.mkdir

    def refuse(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("read-only filesystem")
        real_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", refuse)

    logger = StructuredLogger(log_dir)
    with logger.operation("status", args={"json": True}) as op:
        op.success("Reported stack status.", changed=0)

    assert not logger.operations_log_path.exists()


def test_write_failure_stops_further_writes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """After one failed append the operations log is left alone."""
    logger = StructuredLogger(tmp_path / "logs")
    target = logger.operations_log_path
    real_open = Path.open
    attempts: list[Path] = []

    def disk_full(self: Path, *args: object, **kwargs: object) -> object:
        if self == target:
            attempts.append(self)
            raise OSError("No space left on device")
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", disk_full)

    with logger.operation("backup") as op:
        op.success("Backup created.", changed=1)
    with logger.operation("backups") as op:
        op.success("Reported backup list.", changed=0)

    assert len(attempts) == 1


def test_warning_context_is_made_json_safe(tmp_path: Path) -> None:
    """Paths and arbitrary objects in args and context are stringified."""
    logger = StructuredLogger(tmp_path / "logs")

    class Identity:
        def __str__(self) -> str:
            return "self-signed"

    with logger.operation("restore", args={"archive": Path("full_backup_x.tar.gz")}) as op:
        op.warning(
            "Restore completed with warnings.",
            warnings=("Services may need more time.",),
            changed=3,
            context={"install_root": Path("/srv/n8n"), "identity": Identity()},
        )

    (record,) = _records(logger)
    assert record["args"] == {"archive": "full_backup_x.tar.gz"}
    assert record["result"]["status"] == "warning"
    assert record["result"]["changed"] == 3
    assert record["result"]["warnings"] == ["Services may need more time."]
    assert record["result"]["context"] == {"install_root": "/srv/n8n", "identity": "self-signed"}


def test_error_records_exit_code_and_defaults_errors(tmp_path: Path) -> None:
    """The message doubles as the error list when none is given."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("start") as op:
        op.error("Lock held by another n8nctl process.", rc=3, context={"pids": {4242}})

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 3
    assert record["result"]["errors"] == ["Lock held by another n8nctl process."]
    assert record["result"]["context"] == {"pids": "{4242}"}
