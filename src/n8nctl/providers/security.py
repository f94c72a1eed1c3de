"""Host firewall and intrusion-prevention providers."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ..retry import retry_until
from .commands import run_command

_NUMBERED_RULE = re.compile(r"^\[\s*(?P<num>\d+)\]\s+(?P<rule>.*)$")


class SecurityProviderError(RuntimeError):
    """Raised when firewall or intrusion-prevention commands fail."""


@dataclass(frozen=True, slots=True)
class RuleCleanup:
    """Result of deleting firewall rules that match a pattern."""

    deleted: int
    exhausted: bool


class FirewallManager(Protocol):
    """Host firewall capability."""

    def enable(self) -> None:
        """Turn the firewall on."""

    def disable(self) -> None:
        """Turn the firewall off."""

    def reload(self) -> None:
        """Reload rules from the on-disk configuration."""

    def delete_rules_matching(self, pattern: str, *, cap: int) -> RuleCleanup:
        """Delete rules whose text contains *pattern*, at most *cap* of them."""


class IntrusionPreventionManager(Protocol):
    """Intrusion-prevention daemon capability."""

    def restart(self) -> None:
        """Restart the daemon so restored jails take effect."""


@dataclass(slots=True)
class UfwFirewall:
    """``ufw`` implementation of :class:`FirewallManager`."""

    ufw_bin: str = "ufw"
    prefix: tuple[str, ...] = ()
    timeout: float | None = 120.0

    def enable(self) -> None:
        """Enable ufw without the interactive prompt."""
        self._ufw("--force", "enable")

    def disable(self) -> None:
        """Disable ufw."""
        self._ufw("disable")

    def reload(self) -> None:
        """Reload ufw rules."""
        self._ufw("reload")

    def numbered_rules(self) -> list[tuple[int, str]]:
        """Return ``(number, rule text)`` pairs from ``ufw status numbered``."""
        output = self._ufw("status", "numbered").stdout or ""
        rules: list[tuple[int, str]] = []
        for line in output.splitlines():
            match = _NUMBERED_RULE.match(line.strip())
            if match:
                rules.append((int(match.group("num")), match.group("rule")))
        return rules

    def delete_rules_matching(
        self,
        pattern: str,
        *,
        cap: int,
        sleep: Callable[[float], None] | None = None,
    ) -> RuleCleanup:
        """Delete matching rules one at a time, re-reading numbering after each delete."""
        deleted = 0

        def delete_next() -> bool:
            nonlocal deleted
            for number, rule in self.numbered_rules():
                if pattern in rule:
                    self._ufw("--force", "delete", str(number))
                    deleted += 1
                    return False
            return True

        outcome = retry_until(
            delete_next,
            attempts=max(cap, 1),
            interval=0.0,
            sleep=sleep or (lambda _delay: None),
        )
        return RuleCleanup(deleted=deleted, exhausted=not outcome.succeeded)

    def _ufw(self, *args: str) -> subprocess.CompletedProcess[str]:
        return run_command(
            [*self.prefix, self.ufw_bin, *args],
            error_cls=SecurityProviderError,
            error_prefix=f"ufw {' '.join(args)}",
            timeout=self.timeout,
        )


@dataclass(slots=True)
class Fail2banManager:
    """fail2ban implementation of :class:`IntrusionPreventionManager`."""

    systemctl_bin: str = "systemctl"
    client_bin: str = "fail2ban-client"
    prefix: tuple[str, ...] = ()
    timeout: float | None = 120.0

    def restart(self) -> None:
        """Restart the fail2ban service."""
        run_command(
            [*self.prefix, self.systemctl_bin, "restart", "fail2ban"],
            error_cls=SecurityProviderError,
            error_prefix="systemctl restart fail2ban",
            timeout=self.timeout,
        )

    def status(self) -> str:
        """Return ``fail2ban-client status`` output."""
        result = run_command(
            [*self.prefix, self.client_bin, "status"],
            error_cls=SecurityProviderError,
            error_prefix="fail2ban-client status",
            timeout=self.timeout,
        )
        return result.stdout or ""


__all__ = [
    "Fail2banManager",
    "FirewallManager",
    "IntrusionPreventionManager",
    "RuleCleanup",
    "SecurityProviderError",
    "UfwFirewall",
]
