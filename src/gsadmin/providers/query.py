"""Live status probe backed by the toolchain's query helper."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..models import ServerState

LOGGER = logging.getLogger(__name__)

SUCCESS_PREFIX = "OK"


@dataclass(slots=True)
class QueryProbe:
    """Query a running instance over its game protocol.

    Runs ``<python_bin> <script> -a <host> -p <port> -e <engine>`` once. Any
    failure to confirm the instance is reported as ``Unknown`` rather than an
    error: inability to reach the server is itself a status.
    """

    script: Path
    python_bin: str = "python3"
    engine: str = "protocol-valve"
    timeout: float | None = 10.0

    def command(self, host: str, port: int) -> list[str]:
        """Return the argv used to probe *host*:*port*."""
        return [
            self.python_bin,
            str(self.script),
            "-a",
            host,
            "-p",
            str(port),
            "-e",
            self.engine,
        ]

    def probe(self, host: str, port: int) -> ServerState:
        """Return ``Running`` when the helper confirms *host*:*port*, else ``Unknown``."""
        try:
            result = subprocess.run(  # noqa: S603
                self.command(host, port),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            LOGGER.info("Query probe for %s:%s timed out after %ss", host, port, self.timeout)
            return ServerState.UNKNOWN
        except OSError as exc:
            LOGGER.warning("Query probe for %s:%s could not run: %s", host, port, exc)
            return ServerState.UNKNOWN

        if result.returncode != 0:
            LOGGER.info("Query probe for %s:%s exited %s", host, port, result.returncode)
            return ServerState.UNKNOWN
        if (result.stdout or "").startswith(SUCCESS_PREFIX):
            return ServerState.RUNNING
        return ServerState.UNKNOWN


__all__ = ["QueryProbe", "SUCCESS_PREFIX"]
