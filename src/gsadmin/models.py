"""Data models shared by the reconciler, dispatcher and gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ServerState(str, Enum):
    """Client-visible run state of a game-server instance."""

    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"
    UPDATING = "Updating"
    UNKNOWN = "Unknown"

    @property
    def is_transient(self) -> bool:
        """Return ``True`` for optimistic states assigned at dispatch time."""
        return self in _TRANSIENT_STATES


_TRANSIENT_STATES = frozenset(
    {ServerState.STARTING, ServerState.SHUTTING_DOWN, ServerState.UPDATING}
)


class ServerAction(str, Enum):
    """Lifecycle action a caller may request against an instance."""

    START = "Start"
    STOP = "Stop"
    UPDATE = "Update"

    @property
    def verb(self) -> str:
        """Return the toolchain verb passed on the command line."""
        return self.value.lower()

    @property
    def transient_state(self) -> ServerState:
        """Return the optimistic state reported right after dispatch."""
        return _TRANSIENT_BY_ACTION[self]

    @property
    def progress(self) -> str:
        """Return a human phrase for the action while it runs."""
        return _PROGRESS_BY_ACTION[self]

    @classmethod
    def parse(cls, value: object) -> ServerAction:
        """Return the action named by *value* or raise ``ValueError``."""
        if isinstance(value, str):
            for action in cls:
                if action.value == value:
                    return action
        raise ValueError(f"Unrecognised action: {value!r}")


_TRANSIENT_BY_ACTION: dict[ServerAction, ServerState] = {
    ServerAction.START: ServerState.STARTING,
    ServerAction.STOP: ServerState.SHUTTING_DOWN,
    ServerAction.UPDATE: ServerState.UPDATING,
}

_PROGRESS_BY_ACTION: dict[ServerAction, str] = {
    ServerAction.START: "Starting",
    ServerAction.STOP: "Stopping",
    ServerAction.UPDATE: "Updating",
}


@dataclass(frozen=True, slots=True)
class Instance:
    """A configured instance: caller-facing name plus toolchain identifier."""

    name: str
    physical_id: str


@dataclass(frozen=True, slots=True)
class LockRecord:
    """Parsed contents of a toolchain lock marker."""

    physical_id: str
    path: Path
    port: int
    lines: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of a background toolchain invocation."""

    instance: str
    physical_id: str
    action: ServerAction
    started_at: str
    finished_at: str
    succeeded: bool
    returncode: int | None = None
    output: str = ""
    error: str | None = None

    @property
    def verb(self) -> str:
        """Return the toolchain verb used for this outcome."""
        return self.action.verb

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "instance": self.instance,
            "physical_id": self.physical_id,
            "action": self.action.value,
            "verb": self.verb,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": self.succeeded,
            "returncode": self.returncode,
            "output": self.output,
            "error": self.error,
        }


__all__ = [
    "ActionOutcome",
    "Instance",
    "LockRecord",
    "ServerAction",
    "ServerState",
]
