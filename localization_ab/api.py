"""
FastAPI service that hands each user a deterministically assigned payload.

Endpoints
---------
* ``GET /health`` – liveness probe, independent of the payload store.
* ``POST /experiment`` – ``{"userId": ...}`` → the variant assigned to that user,
  embedded verbatim as a JSON value.

The payload store is built by the caller and injected into :func:`create_app`;
handlers only read it, so requests need no locking.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from localization_ab import payload_store
from localization_ab.config import ServerSettings
from localization_ab.limits import ConnectionLimitsMiddleware
from localization_ab.model import (
    EXPERIMENT_ID,
    ErrorResponse,
    ExperimentRequest,
    ExperimentResponse,
    HealthResponse,
    PayloadVariant,
)
from localization_ab.payload_store import PayloadStore

logger = logging.getLogger(__name__)

_ENVELOPE_PREFIX = b'{"experimentId":' + json.dumps(EXPERIMENT_ID).encode() + b',"selectedPayloadName":'


def render_experiment(variant: PayloadVariant) -> bytes:
    """Return the ``/experiment`` body with *variant* content spliced in as raw JSON."""
    name = json.dumps(variant.name, ensure_ascii=False).encode("utf-8")
    return _ENVELOPE_PREFIX + name + b',"payload":' + variant.content + b"}"


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(ErrorResponse(error=message).model_dump(), status_code=status)


# App factory

def create_app(store: PayloadStore, settings: Optional[ServerSettings] = None) -> FastAPI:
    """Build the service around an already-loaded *store*."""
    settings = settings or ServerSettings()

    app = FastAPI(title="Localization Experiment Backend")
    app.state.store = store
    app.state.settings = settings
    app.add_middleware(
        ConnectionLimitsMiddleware,
        read_timeout=settings.read_timeout,
        write_timeout=settings.write_timeout,
        max_body_size=settings.max_body_size,
    )

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse()

    @app.post(
        "/experiment",
        responses={
            200: {"model": ExperimentResponse},
            400: {"model": ErrorResponse},
        },
    )
    async def experiment(request: Request) -> Response:
        """Return the payload variant assigned to the caller's ``userId``."""
        raw = await request.body()
        try:
            req = ExperimentRequest.model_validate_json(raw)
        except ValidationError:
            return _error(400, "Invalid request body")
        if not req.user_id:
            return _error(400, "userId is required")

        variant = request.app.state.store.variant_for(req.user_id)
        return Response(content=render_experiment(variant), media_type="application/json")

    return app


# Server entry-point

def uvicorn_config(app: FastAPI, settings: ServerSettings) -> uvicorn.Config:
    """Map the idle and concurrency bounds onto uvicorn; the rest live in middleware."""
    return uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        timeout_keep_alive=settings.idle_timeout,
        limit_concurrency=settings.max_connections,
        log_level=settings.log_level,
    )


def serve(settings: ServerSettings) -> None:
    """Load payloads from ``settings.payload_dir`` and run until interrupted.

    Raises :class:`~localization_ab.payload_store.BootFailure` before binding the
    port when no payload can be served.
    """
    store = payload_store.build(settings.payload_dir)
    app = create_app(store, settings)
    logger.info(
        "serving %d payloads on %s:%d (read=%ss write=%ss idle=%ss max_conns=%d body_limit=%d)",
        store.size(),
        settings.host,
        settings.port,
        settings.read_timeout,
        settings.write_timeout,
        settings.idle_timeout,
        settings.max_connections,
        settings.max_body_size,
    )
    uvicorn.Server(uvicorn_config(app, settings)).run()
