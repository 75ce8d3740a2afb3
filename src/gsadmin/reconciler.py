"""Derive each instance's run state from lock markers and live probes."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass

from .models import Instance, ServerState
from .providers.lockfile import LockFileError, LockFileReader
from .providers.query import QueryProbe

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ReconcilerOptions:
    """Runtime tunables for reconciliation passes."""

    probe_host: str = "127.0.0.1"
    port_offset: int = 1
    max_concurrency: int = 4
    cache_ttl: float = 0.0


class StateReconciler:
    """Combine lock-file and probe results into one state per instance.

    A pass always yields exactly one entry per configured instance. Faults are
    isolated per instance: anything that goes wrong while reconciling one
    instance degrades that instance to ``Unknown`` and leaves the rest alone.
    """

    def __init__(
        self,
        instances: Sequence[Instance],
        *,
        locks: LockFileReader,
        probe: QueryProbe,
        options: ReconcilerOptions | None = None,
    ) -> None:
        """Store the instance table and the providers used to inspect it."""
        self._instances = tuple(instances)
        self._locks = locks
        self._probe = probe
        self._options = options or ReconcilerOptions()
        self._cache_lock = threading.Lock()
        self._cached: tuple[float, dict[str, ServerState]] | None = None
        self._generation = 0

    @property
    def instances(self) -> tuple[Instance, ...]:
        """Return the configured instances."""
        return self._instances

    def reconcile(self) -> dict[str, ServerState]:
        """Return the current state of every instance keyed by logical name."""
        cached = self._cached_result()
        if cached is not None:
            return cached

        with self._cache_lock:
            generation = self._generation
        states = self._run_pass()
        if self._options.cache_ttl > 0:
            with self._cache_lock:
                # An invalidation during the pass makes its result stale.
                if self._generation == generation:
                    self._cached = (time.monotonic(), dict(states))
        return states

    def reconcile_one(self, instance: Instance) -> ServerState:
        """Return the current state of a single *instance*."""
        try:
            return self._derive_state(instance)
        except Exception:  # noqa: BLE001 - one instance must not fail the pass
            LOGGER.exception("Unexpected error reconciling instance '%s'", instance.name)
            return ServerState.UNKNOWN

    def invalidate(self) -> None:
        """Drop any cached pass so the next read probes afresh."""
        with self._cache_lock:
            self._generation += 1
            self._cached = None

    def _cached_result(self) -> dict[str, ServerState] | None:
        ttl = self._options.cache_ttl
        if ttl <= 0:
            return None
        with self._cache_lock:
            if self._cached is None:
                return None
            stamp, states = self._cached
            if time.monotonic() - stamp >= ttl:
                return None
            return dict(states)

    def _run_pass(self) -> dict[str, ServerState]:
        if not self._instances:
            return {}

        max_workers = min(max(1, self._options.max_concurrency), len(self._instances))
        if max_workers == 1:
            return {instance.name: self.reconcile_one(instance) for instance in self._instances}

        states: dict[str, ServerState] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_name: dict[concurrent.futures.Future[ServerState], str] = {}
            for instance in self._instances:
                future = executor.submit(self.reconcile_one, instance)
                future_to_name[future] = instance.name

            for future in concurrent.futures.as_completed(future_to_name):
                states[future_to_name[future]] = future.result()

        # Keep configuration order in the response.
        return {instance.name: states[instance.name] for instance in self._instances}

    def _derive_state(self, instance: Instance) -> ServerState:
        try:
            record = self._locks.read(instance.physical_id)
        except LockFileError as exc:
            LOGGER.warning("Instance '%s' reported Unknown: %s", instance.name, exc)
            return ServerState.UNKNOWN
        if record is None:
            return ServerState.STOPPED
        query_port = record.port + self._options.port_offset
        return self._probe.probe(self._options.probe_host, query_port)


__all__ = ["ReconcilerOptions", "StateReconciler"]
