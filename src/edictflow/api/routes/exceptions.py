from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from edictflow.api.deps import exception_service, get_actor
from edictflow.domain.models import ExceptionRequest, ExceptionStatus
from edictflow.exception_requests.service import ExceptionFiling, ExceptionService

router = APIRouter()


class ExceptionApprovalRequest(BaseModel):
    expires_at: datetime | None = None


@router.post("/exceptions", response_model=ExceptionRequest, status_code=status.HTTP_201_CREATED)
async def file_exception(
    payload: ExceptionFiling,
    service: ExceptionService = Depends(exception_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ExceptionRequest:
    return await service.file_exception(payload, actor)


@router.get("/exceptions", response_model=list[ExceptionRequest])
async def list_exceptions(
    team_id: str | None = None,
    status: ExceptionStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: ExceptionService = Depends(exception_service),  # noqa: B008
) -> list[ExceptionRequest]:
    return await service.list_exceptions(team_id=team_id, status=status, limit=limit, offset=offset)


@router.get("/exceptions/{exception_id}", response_model=ExceptionRequest)
async def get_exception(
    exception_id: str,
    service: ExceptionService = Depends(exception_service),  # noqa: B008
) -> ExceptionRequest:
    return await service.get_exception(exception_id)


@router.post("/exceptions/{exception_id}/approve", response_model=ExceptionRequest)
async def approve_exception(
    exception_id: str,
    payload: ExceptionApprovalRequest | None = None,
    service: ExceptionService = Depends(exception_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ExceptionRequest:
    expires_at = payload.expires_at if payload else None
    return await service.approve_exception(exception_id, actor, expires_at)


@router.post("/exceptions/{exception_id}/deny", response_model=ExceptionRequest)
async def deny_exception(
    exception_id: str,
    service: ExceptionService = Depends(exception_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ExceptionRequest:
    return await service.deny_exception(exception_id, actor)
