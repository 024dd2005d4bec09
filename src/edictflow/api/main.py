from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from edictflow import __version__
from edictflow.api.deps import get_actor, get_event_publisher
from edictflow.api.errors import register_error_handlers
from edictflow.api.routes import approvals, audit, categories, changes, exceptions, health, rules
from edictflow.config import get_settings
from edictflow.db.session import dispose_engine, get_session_factory, init_engine
from edictflow.logging import bind_request_context, configure_logging
from edictflow.workers.sweeper import EnforcementSweeper

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    init_engine(settings)
    publisher = get_event_publisher(settings)

    stop = asyncio.Event()
    sweeper_task: asyncio.Task[None] | None = None
    if settings.sweeper_enabled:
        # First tick runs immediately, reconciling deadlines missed while down.
        sweeper = EnforcementSweeper(get_session_factory(), publisher, settings)
        sweeper_task = asyncio.create_task(sweeper.run_forever(stop))

    try:
        yield
    finally:
        stop.set()
        if sweeper_task is not None:
            await sweeper_task
        await publisher.close()
        await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Edictflow API",
        version=__version__,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.cors_origins],
            allow_methods=["*"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    @app.middleware("http")
    async def bind_request_logging(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        bind_request_context(request_id=request_id, actor_id=get_actor(request))
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    register_error_handlers(app)

    app.include_router(rules.router, prefix=settings.api_prefix, tags=["rules"])
    app.include_router(approvals.router, prefix=settings.api_prefix, tags=["approvals"])
    app.include_router(changes.router, prefix=settings.api_prefix, tags=["changes"])
    app.include_router(exceptions.router, prefix=settings.api_prefix, tags=["exceptions"])
    app.include_router(audit.router, prefix=settings.api_prefix, tags=["audit"])
    app.include_router(categories.router, prefix=settings.api_prefix, tags=["categories"])
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()
