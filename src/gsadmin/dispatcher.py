"""Translate lifecycle actions into background toolchain invocations."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Mapping
from datetime import UTC, datetime

from .logging import StructuredLogger
from .models import ActionOutcome, Instance, ServerAction, ServerState
from .providers.toolchain import ToolchainError, ToolchainProvider

LOGGER = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000


class UnknownInstanceError(ValueError):
    """Raised when a request names an instance that is not configured."""


class DispatchConflictError(RuntimeError):
    """Raised when serialised dispatch finds an action already in flight."""


def _iso_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


class CommandDispatcher:
    """Fire-and-forget executor for start/stop/update actions.

    :meth:`dispatch` starts the toolchain call on its own daemon thread and
    returns the optimistic transient state straight away. Actions are never
    queued behind one another. The eventual outcome is never reported to the
    original caller; it is logged and kept in a bounded in-memory history so
    it can be inspected afterwards.
    """

    def __init__(
        self,
        instances: Mapping[str, str],
        *,
        toolchain: ToolchainProvider,
        logger: StructuredLogger | None = None,
        serialize: bool = False,
        history_size: int = 50,
    ) -> None:
        """Create the dispatcher with an empty in-flight table."""
        self._instances = instances
        self._toolchain = toolchain
        self._logger = logger
        self._serialize = serialize
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()
        self._closed = False
        self._in_flight: dict[str, int] = {}
        self._history: deque[ActionOutcome] = deque(maxlen=max(0, history_size))

    def resolve(self, name: str) -> Instance:
        """Return the configured instance for logical *name*."""
        physical_id = self._instances.get(name)
        if physical_id is None:
            raise UnknownInstanceError(f"Unknown server: {name!r}")
        return Instance(name=name, physical_id=physical_id)

    def dispatch(self, name: str, action: ServerAction) -> ServerState:
        """Schedule *action* for *name* and return its optimistic state."""
        instance = self.resolve(name)
        self._acquire(instance.name)
        thread = threading.Thread(
            target=self._execute,
            args=(instance, action),
            name=f"gsadmin-dispatch-{instance.name}-{action.verb}",
            daemon=True,
        )
        with self._lock:
            if self._closed:
                self._release_locked(instance.name)
                raise RuntimeError("Dispatcher has been shut down.")
            self._threads.add(thread)
        thread.start()
        LOGGER.info("Dispatched %s for instance '%s'", action.verb, instance.name)
        return action.transient_state

    def run(self, name: str, action: ServerAction) -> ActionOutcome:
        """Execute *action* for *name* in the calling thread and return its outcome."""
        instance = self.resolve(name)
        self._acquire(instance.name)
        return self._execute(instance, action)

    def pending(self) -> list[str]:
        """Return the names of instances with an action still running."""
        with self._lock:
            return sorted(name for name, count in self._in_flight.items() if count > 0)

    def recent_outcomes(self) -> list[ActionOutcome]:
        """Return finished outcomes, newest first."""
        with self._lock:
            return list(reversed(self._history))

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running actions."""
        with self._lock:
            self._closed = True
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join()

    def _acquire(self, name: str) -> None:
        with self._lock:
            if self._serialize and self._in_flight.get(name, 0) > 0:
                raise DispatchConflictError(f"An action is already in progress for {name!r}.")
            self._in_flight[name] = self._in_flight.get(name, 0) + 1

    def _release(self, name: str) -> None:
        with self._lock:
            self._release_locked(name)

    def _release_locked(self, name: str) -> None:
        remaining = self._in_flight.get(name, 0) - 1
        if remaining > 0:
            self._in_flight[name] = remaining
        else:
            self._in_flight.pop(name, None)

    def _execute(self, instance: Instance, action: ServerAction) -> ActionOutcome:
        started_at = _iso_now()
        try:
            outcome = self._invoke(instance, action, started_at)
        finally:
            self._release(instance.name)
        with self._lock:
            self._history.append(outcome)
        self._record(outcome)
        with self._lock:
            self._threads.discard(threading.current_thread())
        return outcome

    def _invoke(
        self,
        instance: Instance,
        action: ServerAction,
        started_at: str,
    ) -> ActionOutcome:
        try:
            result = self._toolchain.run(instance.physical_id, action.verb)
        except ToolchainError as exc:
            return ActionOutcome(
                instance=instance.name,
                physical_id=instance.physical_id,
                action=action,
                started_at=started_at,
                finished_at=_iso_now(),
                succeeded=False,
                returncode=exc.returncode,
                output=_tail(exc.output),
                error=str(exc),
            )
        except Exception as exc:  # noqa: BLE001 - background failures are recorded, not raised
            LOGGER.exception(
                "Unexpected error running %s for instance '%s'", action.verb, instance.name
            )
            return ActionOutcome(
                instance=instance.name,
                physical_id=instance.physical_id,
                action=action,
                started_at=started_at,
                finished_at=_iso_now(),
                succeeded=False,
                error=f"Unexpected error: {exc}",
            )
        return ActionOutcome(
            instance=instance.name,
            physical_id=instance.physical_id,
            action=action,
            started_at=started_at,
            finished_at=_iso_now(),
            succeeded=True,
            returncode=result.returncode,
            output=_tail(result.stdout or ""),
        )

    def _record(self, outcome: ActionOutcome) -> None:
        if outcome.succeeded:
            LOGGER.info("%s for instance '%s' completed", outcome.verb, outcome.instance)
        else:
            LOGGER.warning(
                "%s for instance '%s' (%s) failed: %s\n%s",
                outcome.verb,
                outcome.instance,
                outcome.physical_id,
                outcome.error,
                outcome.output,
            )
        if self._logger is None:
            return
        with self._logger.operation(
            f"dispatch {outcome.verb}",
            args={"server": outcome.instance, "action": outcome.action.value},
            target={"kind": "instance", "name": outcome.instance, "id": outcome.physical_id},
        ) as op:
            op.add_step(
                f"toolchain.{outcome.verb}",
                status="success" if outcome.succeeded else "error",
                detail=f"returncode={outcome.returncode}",
            )
            if outcome.succeeded:
                op.success(f"{outcome.action.value} completed.", changed=1)
            else:
                op.error(
                    f"{outcome.action.value} failed.",
                    errors=[outcome.error or "unknown error"],
                    rc=4,
                    context={"output": outcome.output},
                )


__all__ = [
    "CommandDispatcher",
    "DispatchConflictError",
    "UnknownInstanceError",
]
