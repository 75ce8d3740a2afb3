"""Toolchain provider for invoking per-instance lifecycle scripts."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

SUCCESS_SUFFIX = "with code: 0"


class ToolchainError(RuntimeError):
    """Raised when a toolchain invocation fails."""

    def __init__(self, message: str, *, returncode: int | None = None, output: str = "") -> None:
        """Store the exit status and captured output alongside *message*."""
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass(slots=True)
class ToolchainProvider:
    """Run ``<toolchain_dir>/<physical_id> <verb>`` and classify the result.

    The toolchain offers no structured IPC: success is signalled by a zero
    exit status and captured output ending in :data:`SUCCESS_SUFFIX`.
    """

    toolchain_dir: Path
    timeout: float | None = None

    def executable(self, physical_id: str) -> Path:
        """Return the lifecycle script path for *physical_id*."""
        return self.toolchain_dir / physical_id

    def run(self, physical_id: str, verb: str) -> subprocess.CompletedProcess[str]:
        """Invoke *verb* for *physical_id* and raise on failure."""
        args = [str(self.executable(physical_id)), verb]
        result = self._run_command(args, error_prefix=f"{physical_id} {verb}")
        if not self.classify(result):
            output = result.stdout or ""
            message = output.strip().splitlines()[-1] if output.strip() else "no output"
            raise ToolchainError(
                f"{physical_id} {verb} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                output=output,
            )
        return result

    @staticmethod
    def classify(result: subprocess.CompletedProcess[str]) -> bool:
        """Return ``True`` when *result* follows the success convention."""
        if result.returncode != 0:
            return False
        output = (result.stdout or "").rstrip()
        return output.endswith(SUCCESS_SUFFIX)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ToolchainError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            captured = exc.stdout or ""
            if isinstance(captured, bytes):
                captured = captured.decode("utf-8", errors="replace")
            raise ToolchainError(
                f"{error_prefix} timed out after {exc.timeout}s",
                output=captured,
            ) from exc
        except OSError as exc:
            raise ToolchainError(f"{error_prefix} could not be executed: {exc}") from exc


__all__ = ["SUCCESS_SUFFIX", "ToolchainError", "ToolchainProvider"]
