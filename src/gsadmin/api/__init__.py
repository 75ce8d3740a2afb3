"""HTTP gateway for gsadmin."""
from __future__ import annotations

from .server import create_app, create_default_app

__all__ = ["create_app", "create_default_app"]
