"""Typer-powered command line interface for ``gsadmin``.

The CLI shares its runtime wiring with the HTTP gateway: ``status`` runs one
reconciliation pass, ``action`` executes a lifecycle action synchronously and
reports the toolchain outcome, and ``serve`` starts the gateway under uvicorn.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .config import ConfigError, load_config
from .dispatcher import DispatchConflictError, UnknownInstanceError
from .exit_codes import ExitCode
from .logging import OperationScope
from .models import ServerAction, ServerState
from .runtime import RuntimeContext, build_runtime

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to gsadmin's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

STATE_COLOURS = {
    ServerState.RUNNING: "green",
    ServerState.STARTING: "yellow",
    ServerState.UPDATING: "yellow",
    ServerState.SHUTTING_DOWN: "yellow",
    ServerState.STOPPED: "red",
    ServerState.UNKNOWN: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Game server control plane.

        Query the run state of the configured server instances and start,
        stop or update them through their toolchain scripts.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the gsadmin version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"gsadmin {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _render_state(state: ServerState) -> str:
    colour = STATE_COLOURS.get(state, "white")
    return f"[{colour}]{state.value}[/{colour}]"


@app.command()
def status(
    ctx: typer.Context,
    server: str | None = typer.Argument(None, help="Only report this server."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Reconcile and display the state of configured servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"server": server, "json": json_output},
        target={"kind": "instance", "scope": server or "all"},
    ) as op:
        if server is None:
            instances = list(runtime.reconciler.instances)
            states = runtime.reconciler.reconcile()
        else:
            try:
                instance = runtime.dispatcher.resolve(server)
            except UnknownInstanceError:
                known = ", ".join(runtime.config.instances)
                _command_error(op, f"Unknown server '{server}'. Configured: {known}.")
            instances = [instance]
            states = {instance.name: runtime.reconciler.reconcile_one(instance)}
        payload = {"servers": {name: state.value for name, state in states.items()}}
        if json_output:
            typer.echo(json.dumps(payload, indent=2))
            op.success("Reported server states as JSON.", context=payload["servers"])
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Server", style="bold")
        table.add_column("Toolchain id")
        table.add_column("State")
        for item in instances:
            table.add_row(
                item.name,
                item.physical_id,
                _render_state(states[item.name]),
            )
        console.print(table)
        op.success("Reported server states.", context=payload["servers"])


@app.command()
def action(
    ctx: typer.Context,
    server: str = typer.Argument(..., help="Logical name of the server."),
    verb: str = typer.Argument(..., metavar="ACTION", help="Start, Stop or Update."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run a lifecycle action and wait for the toolchain to finish."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "action",
        args={"server": server, "action": verb, "json": json_output},
        target={"kind": "instance", "name": server},
    ) as op:
        if server not in runtime.config.instances:
            known = ", ".join(runtime.config.instances)
            _command_error(op, f"Unknown server '{server}'. Configured: {known}.")
        try:
            requested = ServerAction.parse(verb)
        except ValueError:
            allowed = ", ".join(item.value for item in ServerAction)
            _command_error(op, f"Unknown action '{verb}'. Allowed: {allowed}.")

        executable = runtime.toolchain.executable(runtime.config.instances[server])
        if not executable.exists():
            _command_error(
                op,
                f"Toolchain executable not found: {executable}",
                rc=ExitCode.ENVIRONMENT,
            )
        op.add_step("toolchain.locate", detail=str(executable))

        console.print(f"{requested.progress} server '{server}'...")
        try:
            outcome = runtime.dispatcher.run(server, requested)
        except (UnknownInstanceError, DispatchConflictError) as exc:
            _command_error(op, str(exc))

        op.add_step(
            f"toolchain.{requested.verb}",
            status="success" if outcome.succeeded else "error",
            detail=f"returncode={outcome.returncode}",
        )
        if json_output:
            typer.echo(json.dumps(outcome.to_dict(), indent=2))
        if not outcome.succeeded:
            if not json_output and outcome.output:
                console.print(outcome.output, markup=False, highlight=False)
            _command_error(
                op,
                f"{requested.value} failed for '{server}': {outcome.error}",
                rc=ExitCode.PROVIDER,
            )
        if not json_output:
            console.print(f"[green]{requested.value} completed for '{server}'.[/green]")
        op.success(f"{requested.value} completed.", changed=1)


@app.command()
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Override api.host."),
    port: int | None = typer.Option(None, "--port", help="Override api.port."),
    log_level: str = typer.Option("info", "--log-level", help="uvicorn log level."),
) -> None:
    """Serve the HTTP gateway with uvicorn."""
    import uvicorn

    from .api.server import create_app

    runtime = _get_runtime(ctx)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bind_host = host or runtime.config.api.host
    bind_port = port or runtime.config.api.port
    with runtime.logger.operation(
        "serve",
        args={"host": bind_host, "port": bind_port},
        target={"kind": "api", "path": runtime.config.api.path},
    ) as op:
        uvicorn.run(create_app(runtime), host=bind_host, port=bind_port, log_level=log_level)
        op.success("Gateway stopped.")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            typer.echo(json.dumps(data, indent=2, sort_keys=True))
            op.success("Rendered configuration as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.")


def main() -> None:  # pragma: no cover - console script entry point
    """Run the CLI application."""
    app()


__all__ = ["app", "main"]
