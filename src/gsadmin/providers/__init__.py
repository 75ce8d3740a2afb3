"""Provider interfaces for gsadmin."""
from __future__ import annotations

from .lockfile import LockFileError, LockFileReader
from .query import QueryProbe
from .toolchain import ToolchainError, ToolchainProvider

__all__ = [
    "LockFileError",
    "LockFileReader",
    "QueryProbe",
    "ToolchainError",
    "ToolchainProvider",
]
