"""Runtime object graph shared by the CLI and the HTTP gateway."""
from __future__ import annotations

from dataclasses import dataclass

from .config import AppConfig
from .dispatcher import CommandDispatcher
from .logging import StructuredLogger
from .providers import LockFileReader, QueryProbe, ToolchainProvider
from .reconciler import ReconcilerOptions, StateReconciler


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands and request handlers."""

    config: AppConfig
    logger: StructuredLogger
    toolchain: ToolchainProvider
    locks: LockFileReader
    probe: QueryProbe
    reconciler: StateReconciler
    dispatcher: CommandDispatcher


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire providers, reconciler and dispatcher for *config*."""
    logger = StructuredLogger(config.logs_dir)
    toolchain = ToolchainProvider(
        toolchain_dir=config.toolchain_dir,
        timeout=config.toolchain.timeout,
    )
    locks = LockFileReader(config.lock_dir)
    probe = QueryProbe(
        script=config.probe.script,
        python_bin=config.probe.python_bin,
        engine=config.probe.engine,
        timeout=config.probe.timeout,
    )
    reconciler = StateReconciler(
        config.instance_list(),
        locks=locks,
        probe=probe,
        options=ReconcilerOptions(
            probe_host=config.probe.host,
            port_offset=config.probe.port_offset,
            max_concurrency=config.reconcile.max_concurrency,
            cache_ttl=config.reconcile.cache_ttl,
        ),
    )
    dispatcher = CommandDispatcher(
        config.instances,
        toolchain=toolchain,
        logger=logger,
        serialize=config.dispatch.serialize,
        history_size=config.dispatch.history_size,
    )
    return RuntimeContext(
        config=config,
        logger=logger,
        toolchain=toolchain,
        locks=locks,
        probe=probe,
        reconciler=reconciler,
        dispatcher=dispatcher,
    )


__all__ = ["RuntimeContext", "build_runtime"]
