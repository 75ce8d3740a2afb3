"""Reader for toolchain lock markers."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..models import LockRecord

PORT_LINE_INDEX = 2


class LockFileError(RuntimeError):
    """Raised when a lock marker exists but cannot be read or parsed."""


@dataclass(slots=True)
class LockFileReader:
    """Read ``<lock_dir>/<physical_id>.lock`` markers.

    The toolchain writes the marker while an instance runs and removes it on
    shutdown, so a missing file is the canonical "not running" signal.
    """

    lock_dir: Path

    def lock_path(self, physical_id: str) -> Path:
        """Return the marker path for *physical_id*."""
        return self.lock_dir / f"{physical_id}.lock"

    def read(self, physical_id: str) -> LockRecord | None:
        """Return the parsed marker, or ``None`` when the instance is not running."""
        path = self.lock_path(physical_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise LockFileError(f"Unable to read lock file {path}: {exc}") from exc

        lines = tuple(text.split("\n"))
        if len(lines) <= PORT_LINE_INDEX:
            raise LockFileError(
                f"Lock file {path} has {len(lines)} line(s); expected the port on line 3."
            )
        raw_port = lines[PORT_LINE_INDEX].strip()
        if not (raw_port.isascii() and raw_port.isdigit()):
            raise LockFileError(f"Lock file {path} has a non-numeric port: {raw_port!r}.")
        return LockRecord(physical_id=physical_id, path=path, port=int(raw_port), lines=lines)


__all__ = ["LockFileError", "LockFileReader"]
