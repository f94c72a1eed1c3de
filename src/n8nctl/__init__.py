"""n8nctl: manage a self-hosted n8n stack.

Only the package version lives here; commands are in :mod:`n8nctl.cli`.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.1.0"
