from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.approvals.service import ApprovalService
from edictflow.changes.service import ChangeRequestService
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.db.session import get_session
from edictflow.events import EventPublisher, build_publisher
from edictflow.exception_requests.service import ExceptionService
from edictflow.rules.categories import CategoryService
from edictflow.rules.service import RuleService

ANONYMOUS = "anonymous"


async def session_dependency() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


_publisher: EventPublisher | None = None


def get_event_publisher(settings: Settings = Depends(get_settings)) -> EventPublisher:  # noqa: B008
    global _publisher

    if _publisher is None:
        _publisher = build_publisher(settings)
    return _publisher


def get_clock() -> Clock:
    return utcnow


def get_actor(request: Request) -> str:
    """Caller identity, set by the authenticating proxy."""
    return request.headers.get("X-Principal-Id", ANONYMOUS)


def rule_service(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    events: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> RuleService:
    return RuleService(session, events, settings, clock)


def category_service(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    events: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> CategoryService:
    return CategoryService(session, events, clock)


def approval_service(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    events: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> ApprovalService:
    return ApprovalService(session, events, settings, clock)


def change_request_service(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    events: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> ChangeRequestService:
    return ChangeRequestService(session, events, settings, clock)


def exception_service(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    events: EventPublisher = Depends(get_event_publisher),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    clock: Clock = Depends(get_clock),  # noqa: B008
) -> ExceptionService:
    return ExceptionService(session, events, settings, clock)
