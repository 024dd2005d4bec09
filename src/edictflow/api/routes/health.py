from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow import __version__
from edictflow.api.deps import get_event_publisher, session_dependency
from edictflow.config import Settings, get_settings
from edictflow.events import EventPublisher

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str = __version__


class ReadinessResponse(BaseModel):
    status: str
    database: str
    events: str


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy")


@router.get("/ready", response_model=ReadinessResponse, status_code=status.HTTP_200_OK)
async def readiness_check(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    publisher: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> ReadinessResponse:
    """Readiness check with database and event backend connectivity."""
    db_status = "unknown"
    events_status = "unknown"

    try:
        result = await session.execute(text("SELECT 1"))
        if result.scalar() == 1:
            db_status = "connected"
    except (SQLAlchemyError, ConnectionError, TimeoutError, OSError):
        db_status = "disconnected"

    try:
        if await publisher.ping():
            events_status = "connected"
    except (ConnectionError, TimeoutError, OSError):
        events_status = "disconnected"

    overall_status = (
        "ready" if db_status == "connected" and events_status == "connected" else "not_ready"
    )
    return ReadinessResponse(status=overall_status, database=db_status, events=events_status)
