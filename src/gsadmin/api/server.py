"""
gsadmin HTTP gateway.

Exposes one endpoint path (``api.path``, ``/vhadminapi`` by default):

- ``GET``  returns the reconciled state of every configured server.
- ``POST`` accepts ``{"server": ..., "action": "Start"|"Stop"|"Update"}``,
  dispatches the action in the background and returns the same status
  payload with the target server set to its optimistic transient state.

Any other method on the path is answered with 405. ``GET <path>/actions``
reports in-flight actions and the outcomes of recently finished ones.

Usage:
    gsadmin serve
    # or
    uvicorn gsadmin.api.server:create_default_app --factory --port 8085
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, ValidationError
from starlette.requests import ClientDisconnect

from .. import __version__
from ..config import load_config
from ..dispatcher import DispatchConflictError, UnknownInstanceError
from ..models import ServerAction, ServerState
from ..runtime import RuntimeContext, build_runtime

logger = logging.getLogger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================

class ActionRequest(BaseModel):
    """Lifecycle action requested for one server."""
    server: str
    action: str


class StatusResponse(BaseModel):
    """State of every configured server keyed by logical name."""
    servers: dict[str, ServerState]


class ActionsResponse(BaseModel):
    """In-flight actions and recently finished outcomes."""
    pending: list[str] = Field(default_factory=list)
    outcomes: list[dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Handlers (run on the threadpool)
# ============================================================================

def list_status(runtime: RuntimeContext) -> StatusResponse:
    """Reconcile every server and build the status payload."""
    with runtime.logger.operation(
        "api status",
        target={"kind": "instance", "scope": "all"},
    ) as op:
        states = runtime.reconciler.reconcile()
        op.success(
            "Reported server states.",
            context={name: state.value for name, state in states.items()},
        )
    return StatusResponse(servers=states)


def apply_action(runtime: RuntimeContext, payload: ActionRequest) -> StatusResponse:
    """Validate *payload*, dispatch it and return the optimistic status payload."""
    with runtime.logger.operation(
        "api action",
        args={"server": payload.server, "action": payload.action},
        target={"kind": "instance", "name": payload.server},
    ) as op:
        if payload.server not in runtime.config.instances:
            op.error("Unknown server.", rc=400)
            raise HTTPException(status_code=400, detail="Unknown server.")
        try:
            action = ServerAction.parse(payload.action)
        except ValueError:
            op.error("Unknown action.", rc=400)
            raise HTTPException(status_code=400, detail="Unknown action.") from None

        states = runtime.reconciler.reconcile()
        op.add_step("reconcile", detail=f"instances={len(states)}")

        try:
            transient = runtime.dispatcher.dispatch(payload.server, action)
        except UnknownInstanceError:
            op.error("Unknown server.", rc=400)
            raise HTTPException(status_code=400, detail="Unknown server.") from None
        except DispatchConflictError:
            op.error("Action already in progress.", rc=409)
            raise HTTPException(
                status_code=409, detail="An action is already in progress for this server."
            ) from None
        op.add_step(f"dispatch.{action.verb}", detail=transient.value)
        runtime.reconciler.invalidate()

        states[payload.server] = transient
        op.success(f"Dispatched {action.value}.", changed=1)
    return StatusResponse(servers=states)


def list_actions(runtime: RuntimeContext) -> ActionsResponse:
    """Report in-flight and finished background actions."""
    return ActionsResponse(
        pending=runtime.dispatcher.pending(),
        outcomes=[outcome.to_dict() for outcome in runtime.dispatcher.recent_outcomes()],
    )


# ============================================================================
# Application factory
# ============================================================================

def create_app(runtime: RuntimeContext) -> FastAPI:
    """Build the gateway application bound to *runtime*."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "gsadmin gateway serving %d server(s) on %s",
            len(runtime.config.instances),
            runtime.config.api.path,
        )
        yield
        runtime.dispatcher.shutdown(wait=False)

    app = FastAPI(title="gsadmin", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    path = runtime.config.api.path
    actions_path = f"{path.rstrip('/')}/actions"

    @app.get(path, response_model=StatusResponse)
    async def get_status() -> StatusResponse:
        return await run_in_threadpool(list_status, runtime)

    @app.post(path, response_model=StatusResponse)
    async def post_action(request: Request) -> StatusResponse:
        try:
            body = await request.body()
        except (ClientDisconnect, OSError) as exc:
            logger.warning("Error reading POST request body: %s", exc)
            raise HTTPException(status_code=500, detail="Unable to read request body.") from None
        try:
            payload = ActionRequest.model_validate_json(body)
        except ValidationError:
            raise HTTPException(status_code=400, detail="Malformed request body.") from None
        return await run_in_threadpool(apply_action, runtime, payload)

    @app.get(actions_path, response_model=ActionsResponse)
    async def get_actions() -> ActionsResponse:
        return await run_in_threadpool(list_actions, runtime)

    return app


def create_default_app() -> FastAPI:
    """Build an application from the environment's configuration."""
    return create_app(build_runtime(load_config()))


__all__ = [
    "ActionRequest",
    "ActionsResponse",
    "StatusResponse",
    "apply_action",
    "create_app",
    "create_default_app",
    "list_actions",
    "list_status",
]
