"""Tests for the command dispatcher."""

from __future__ import annotations

import json
import subprocess
import threading
import time
from pathlib import Path

import pytest

from gsadmin.dispatcher import CommandDispatcher, DispatchConflictError, UnknownInstanceError
from gsadmin.logging import StructuredLogger
from gsadmin.models import ServerAction, ServerState
from gsadmin.providers.toolchain import ToolchainError, ToolchainProvider

INSTANCES = {"A": "a-phys", "B": "b-phys"}


class BlockingToolchain(ToolchainProvider):
    """Toolchain stand-in that blocks until released."""

    def __init__(self, *, fail: bool = False) -> None:
        """Initialise the gate and call log."""
        self.release = threading.Event()
        self.started = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    def run(self, physical_id: str, verb: str) -> subprocess.CompletedProcess[str]:
        """Record the call, wait for release, then succeed or fail."""
        self.calls.append((physical_id, verb))
        self.started.set()
        self.release.wait(timeout=5)
        if self.fail:
            raise ToolchainError(
                f"{physical_id} {verb} failed (exit 1): boom",
                returncode=1,
                output="boom",
            )
        return subprocess.CompletedProcess([physical_id, verb], 0, stdout="with code: 0")


def _wait_for(predicate: object, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():  # type: ignore[operator]
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


def _dispatcher(
    toolchain: ToolchainProvider,
    tmp_path: Path,
    **kwargs: object,
) -> CommandDispatcher:
    return CommandDispatcher(
        INSTANCES,
        toolchain=toolchain,
        logger=StructuredLogger(tmp_path / "logs"),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.mark.parametrize(
    ("action", "expected", "verb"),
    [
        (ServerAction.START, ServerState.STARTING, "start"),
        (ServerAction.STOP, ServerState.SHUTTING_DOWN, "stop"),
        (ServerAction.UPDATE, ServerState.UPDATING, "update"),
    ],
)
def test_dispatch_returns_before_completion(
    tmp_path: Path,
    action: ServerAction,
    expected: ServerState,
    verb: str,
) -> None:
    """Dispatch returns the optimistic state while the toolchain is still running."""
    toolchain = BlockingToolchain()
    dispatcher = _dispatcher(toolchain, tmp_path)
    try:
        state = dispatcher.dispatch("A", action)

        assert state is expected
        assert toolchain.started.wait(timeout=5)
        assert dispatcher.pending() == ["A"]
        assert toolchain.calls == [("a-phys", verb)]
    finally:
        toolchain.release.set()
        dispatcher.shutdown(wait=True)

    assert dispatcher.pending() == []
    outcomes = dispatcher.recent_outcomes()
    assert len(outcomes) == 1
    assert outcomes[0].succeeded is True
    assert outcomes[0].verb == verb


def test_background_failure_is_recorded(tmp_path: Path) -> None:
    """Failures are kept in the history and the operations log."""
    toolchain = BlockingToolchain(fail=True)
    toolchain.release.set()
    dispatcher = _dispatcher(toolchain, tmp_path)

    dispatcher.dispatch("B", ServerAction.UPDATE)
    dispatcher.shutdown(wait=True)

    outcome = dispatcher.recent_outcomes()[0]
    assert outcome.succeeded is False
    assert outcome.instance == "B"
    assert outcome.physical_id == "b-phys"
    assert outcome.returncode == 1
    assert outcome.output == "boom"
    assert "failed" in (outcome.error or "")

    operations = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    record = json.loads(operations.splitlines()[-1])
    assert record["command"] == "dispatch update"
    assert record["result"]["status"] == "error"
    assert record["result"]["context"]["output"] == "boom"


def test_unexpected_exception_is_recorded(tmp_path: Path) -> None:
    """Non-toolchain exceptions in the background are captured, not lost."""

    class ExplodingToolchain(ToolchainProvider):
        def __init__(self) -> None:
            pass

        def run(self, physical_id: str, verb: str) -> subprocess.CompletedProcess[str]:
            raise KeyError("surprise")

    dispatcher = _dispatcher(ExplodingToolchain(), tmp_path)
    dispatcher.dispatch("A", ServerAction.START)
    dispatcher.shutdown(wait=True)

    outcome = dispatcher.recent_outcomes()[0]
    assert outcome.succeeded is False
    assert "Unexpected error" in (outcome.error or "")
    assert dispatcher.pending() == []


def test_unknown_instance_rejected_without_invocation(tmp_path: Path) -> None:
    """Unknown names raise before anything is scheduled."""
    toolchain = BlockingToolchain()
    dispatcher = _dispatcher(toolchain, tmp_path)

    with pytest.raises(UnknownInstanceError):
        dispatcher.dispatch("Z", ServerAction.START)

    dispatcher.shutdown(wait=True)
    assert toolchain.calls == []
    assert dispatcher.recent_outcomes() == []


def test_concurrent_dispatch_allowed_by_default(tmp_path: Path) -> None:
    """Without serialisation two actions may overlap on one instance."""
    toolchain = BlockingToolchain()
    dispatcher = _dispatcher(toolchain, tmp_path)
    try:
        assert dispatcher.dispatch("A", ServerAction.START) is ServerState.STARTING
        assert dispatcher.dispatch("A", ServerAction.STOP) is ServerState.SHUTTING_DOWN
        _wait_for(lambda: len(toolchain.calls) == 2)
    finally:
        toolchain.release.set()
        dispatcher.shutdown(wait=True)

    assert len(dispatcher.recent_outcomes()) == 2


def test_serialized_dispatch_rejects_overlap(tmp_path: Path) -> None:
    """With serialisation, a second action while one runs is refused."""
    toolchain = BlockingToolchain()
    dispatcher = _dispatcher(toolchain, tmp_path, serialize=True)
    try:
        dispatcher.dispatch("A", ServerAction.START)
        with pytest.raises(DispatchConflictError):
            dispatcher.dispatch("A", ServerAction.STOP)
        assert dispatcher.dispatch("B", ServerAction.START) is ServerState.STARTING
    finally:
        toolchain.release.set()
        dispatcher.shutdown(wait=True)

    assert dispatcher.pending() == []


def test_run_executes_synchronously(tmp_path: Path) -> None:
    """``run`` waits for the toolchain and returns the outcome."""
    toolchain = BlockingToolchain()
    toolchain.release.set()
    dispatcher = _dispatcher(toolchain, tmp_path)

    outcome = dispatcher.run("A", ServerAction.STOP)
    dispatcher.shutdown()

    assert outcome.succeeded is True
    assert outcome.action is ServerAction.STOP
    assert dispatcher.recent_outcomes() == [outcome]


def test_history_is_bounded_newest_first(tmp_path: Path) -> None:
    """Only the most recent outcomes are kept."""
    toolchain = BlockingToolchain()
    toolchain.release.set()
    dispatcher = _dispatcher(toolchain, tmp_path, history_size=2)

    dispatcher.run("A", ServerAction.START)
    dispatcher.run("A", ServerAction.STOP)
    dispatcher.run("B", ServerAction.UPDATE)
    dispatcher.shutdown()

    outcomes = dispatcher.recent_outcomes()
    assert [(o.instance, o.action) for o in outcomes] == [
        ("B", ServerAction.UPDATE),
        ("A", ServerAction.STOP),
    ]


def test_many_long_actions_never_queue(tmp_path: Path) -> None:
    """Every dispatch starts immediately even while earlier actions still run."""
    instances = {f"S{index}": f"s{index}" for index in range(8)}
    toolchain = BlockingToolchain()
    dispatcher = CommandDispatcher(
        instances,
        toolchain=toolchain,
        logger=StructuredLogger(tmp_path / "logs"),
    )
    try:
        for index in range(7):
            assert dispatcher.dispatch(f"S{index}", ServerAction.UPDATE) is ServerState.UPDATING
        assert dispatcher.dispatch("S7", ServerAction.STOP) is ServerState.SHUTTING_DOWN

        _wait_for(lambda: ("s7", "stop") in toolchain.calls)
        assert len(toolchain.calls) == 8
        assert dispatcher.pending() == sorted(instances)
    finally:
        toolchain.release.set()
        dispatcher.shutdown(wait=True)

    assert dispatcher.pending() == []
    assert len(dispatcher.recent_outcomes()) == 8


def test_dispatch_after_shutdown_is_refused(tmp_path: Path) -> None:
    """A closed dispatcher starts nothing and leaves no action pending."""
    toolchain = BlockingToolchain()
    dispatcher = _dispatcher(toolchain, tmp_path)
    dispatcher.shutdown()

    with pytest.raises(RuntimeError, match="shut down"):
        dispatcher.dispatch("A", ServerAction.START)

    assert toolchain.calls == []
    assert dispatcher.pending() == []


def test_undecodable_toolchain_output_is_a_success(tmp_path: Path) -> None:
    """Update output with stray bytes that are not UTF-8 still counts as a success."""
    toolchain_dir = tmp_path / "lgsm"
    toolchain_dir.mkdir()
    script = toolchain_dir / "a-phys"
    script.write_bytes(b"#!/bin/sh\nprintf 'caf\\351 update\\nwith code: 0\\n'\n")
    script.chmod(0o755)
    dispatcher = _dispatcher(ToolchainProvider(toolchain_dir=toolchain_dir, timeout=10.0), tmp_path)

    outcome = dispatcher.run("A", ServerAction.UPDATE)
    dispatcher.shutdown()

    assert outcome.succeeded is True
    assert outcome.error is None
    assert "with code: 0" in outcome.output
