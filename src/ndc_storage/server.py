"""HTTP surface of the connector (FastAPI)."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.concurrency import run_in_threadpool

from ndc_storage.concurrency import CancellationToken
from ndc_storage.connector import Connector
from ndc_storage.errors import ConnectorError, UnprocessableContentError

DISCONNECT_POLL_SECONDS = 0.5


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    """Render a connector error as ``{message, details}`` with its status code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.debug(f"{request.method} {request.url.path}: {exc.status_code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError as e:
        raise UnprocessableContentError(f"invalid request body: {e}") from e
    if not isinstance(payload, dict):
        raise UnprocessableContentError("request body must be a JSON object")
    return payload


async def _run_cancellable(
    request: Request,
    handler: Callable[[dict[str, Any], CancellationToken], Any],
    payload: dict[str, Any],
) -> Any:
    """Run a blocking handler in the threadpool, cancelling it if the client goes away."""
    token = CancellationToken()

    async def _watch() -> None:
        while not token.is_cancelled():
            if await request.is_disconnected():
                logger.debug(f"client disconnected, cancelling {request.url.path}")
                token.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(_watch())
    try:
        return await run_in_threadpool(handler, payload, token)
    finally:
        token.cancel()
        watcher.cancel()


def create_app(connector: Connector) -> FastAPI:
    """Build the FastAPI application serving one connector instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"serving storage clients: {', '.join(connector.manager.client_ids) or '(none)'}")
        yield
        connector.close()

    app = FastAPI(title="ndc-storage", lifespan=lifespan)
    app.state.connector = connector
    app.exception_handler(ConnectorError)(connector_error_handler)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {}

    @app.get("/capabilities")
    async def get_capabilities() -> dict[str, Any]:
        return connector.capabilities()

    @app.get("/schema")
    async def get_schema() -> dict[str, Any]:
        return connector.schema()

    @app.post("/query")
    async def post_query(request: Request) -> Any:
        payload = await _read_payload(request)
        return await _run_cancellable(request, connector.query, payload)

    @app.post("/mutation")
    async def post_mutation(request: Request) -> Any:
        payload = await _read_payload(request)
        return await _run_cancellable(request, connector.mutation, payload)

    return app
