"""eigenctl package bootstrap.

Exposes the package version consumed by the CLI, the structured operation log
and packaging metadata.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.1.0"
