"""Structured operation logging for gsadmin.

Every CLI command and gateway request is recorded as a single JSON document
in ``operations.jsonl`` together with a one-line human summary in
``gsadmin.log``. Logging must never break the caller: if the log directory
cannot be created or a write fails, the logger disables itself and further
records are silently skipped.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "gsadmin.log"


def _iso_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> Any:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _iso_now()
        self._start = time.perf_counter()
        self._steps: list[dict[str, Any]] = []
        self._result: dict[str, Any] | None = None

    @property
    def result(self) -> Mapping[str, Any] | None:
        """Return the recorded result, if any."""
        return self._result

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, Any] = {"name": name, "status": status, "at": _iso_now()}
        if detail:
            step["detail"] = detail
        self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context, rc=0)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            context=context,
            warnings=list(warnings or []),
            errors=list(errors or []),
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            context=context,
            errors=list(errors) if errors else [message],
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        context: Mapping[str, object] | None,
        rc: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
    ) -> None:
        result: dict[str, Any] = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": warnings or [],
            "errors": errors or [],
        }
        if context:
            result["context"] = _sanitize(context)
        self._result = result

    def to_record(self) -> dict[str, Any]:
        """Build the JSON record written to the operations log."""
        record: dict[str, Any] = {
            "op_id": self.op_id,
            "ts": self.started_at,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self._steps),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "result": self._result,
        }
        return record


class StructuredLogger:
    """Append-only JSON operations log with a human-readable companion."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging if it cannot be created."""
        self.logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG
        self._human_log_path = logs_dir / HUMAN_LOG
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and write its record on exit.

        Exceptions escaping the block are recorded as errors and re-raised.
        A block that finishes without calling ``success``/``warning``/``error``
        is recorded as a success.
        """
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)], rc=1)
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Completed.")
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record.get("result") or {}
        human = (
            f"{record['ts']} {record['command']} "
            f"[{result.get('status', 'unknown')}] {result.get('message', '')}\n"
        )
        try:
            with self._write_lock:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, sort_keys=True) + "\n")
                with self._human_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(human)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
