"""Crontab management for the daily maintenance run."""
from __future__ import annotations

from dataclasses import dataclass

from .commands import run_command


class CronError(RuntimeError):
    """Raised when the user crontab cannot be read or written."""


@dataclass(slots=True)
class CronScheduler:
    """Install and remove n8nctl's entry in the invoking user's crontab."""

    crontab_bin: str = "crontab"
    timeout: float | None = 60.0

    def entries(self) -> list[str]:
        """Return the current crontab lines (empty when the user has none)."""
        result = run_command(
            [self.crontab_bin, "-l"],
            error_cls=CronError,
            error_prefix="crontab -l",
            check=False,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            # crontab -l exits 1 with "no crontab for <user>".
            if "no crontab" in (result.stderr or "").lower():
                return []
            message = (result.stderr or result.stdout or "no output").strip()
            raise CronError(f"crontab -l failed (exit {result.returncode}): {message}")
        return [line for line in (result.stdout or "").splitlines() if line.strip()]

    def install(self, line: str, *, marker: str) -> bool:
        """Ensure *line* is present, replacing other lines containing *marker*."""
        current = self.entries()
        if line in current and sum(marker in item for item in current) == 1:
            return False
        updated = [item for item in current if marker not in item]
        updated.append(line)
        self._write(updated)
        return True

    def remove(self, marker: str) -> bool:
        """Remove every line containing *marker*; return ``True`` when any was removed."""
        current = self.entries()
        updated = [item for item in current if marker not in item]
        if updated == current:
            return False
        self._write(updated)
        return True

    def _write(self, lines: list[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        run_command(
            [self.crontab_bin, "-"],
            error_cls=CronError,
            error_prefix="crontab -",
            input_text=content,
            timeout=self.timeout,
        )


__all__ = ["CronError", "CronScheduler"]
