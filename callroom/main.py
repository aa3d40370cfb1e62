"""FastAPI application for the two-party call signaling server."""
from __future__ import annotations

import base64
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import settings
from .routers import signaling
from .services.rooms import registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    logger.info("Signaling server starting (env=%s)", settings.app_env)
    yield
    registry.close()


app = FastAPI(title="Callroom Signaling API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

app.include_router(signaling.router, tags=["signaling"])


FAVICON_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGMAAQAABQABDQottAAAAABJRU5ErkJggg=="
)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    return PlainTextResponse("User-agent: *\nDisallow:")


@app.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    return Response(content=FAVICON_BYTES, media_type="image/png")
