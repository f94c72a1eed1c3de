"""Subprocess plumbing shared by the providers."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path


def privilege_prefix(use_sudo: bool) -> tuple[str, ...]:
    """Return the command prefix needed to run host-level tools as root."""
    if use_sudo and os.geteuid() != 0:
        return ("sudo",)
    return ()


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[RuntimeError],
    error_prefix: str | None = None,
    check: bool = True,
    capture_output: bool = True,
    timeout: float | None = None,
    cwd: Path | None = None,
    input_text: str | None = None,
    stdin_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and translate failures into *error_cls*.

    Missing binaries, timeouts and (when *check* is set) non-zero exits all
    raise *error_cls* with the command's stderr folded into the message.
    """
    prefix = error_prefix or " ".join(args[:2])
    if dry_run:
        return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")

    merged_env: dict[str, str] | None = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)

    try:
        if stdin_path is not None:
            with stdin_path.open("r", encoding="utf-8") as handle:
                result = subprocess.run(  # noqa: S603 - controlled command execution
                    list(args),
                    stdin=handle,
                    capture_output=capture_output,
                    text=True,
                    check=False,
                    timeout=timeout,
                    cwd=str(cwd) if cwd else None,
                    env=merged_env,
                )
        else:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                list(args),
                input=input_text,
                capture_output=capture_output,
                text=True,
                check=False,
                timeout=timeout,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
            )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{prefix} timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise error_cls(f"{prefix} could not run: {exc}") from exc

    if check and result.returncode != 0:
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["privilege_prefix", "run_command"]
