"""gsadmin: lock-file reconciliation and toolchain dispatch for game servers.

Only the release identifier lives here; the CLI prints it for ``--version``
and the HTTP gateway advertises it as the FastAPI application version.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in step with ``version`` in pyproject.toml.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the gsadmin release identifier."""
    return __version__
