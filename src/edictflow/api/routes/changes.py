from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from edictflow.api.deps import change_request_service, get_actor
from edictflow.changes.service import ChangeRequestService, DetectedChange
from edictflow.domain.models import ChangeRequest, ChangeRequestStatus

router = APIRouter()


@router.post("/changes", response_model=ChangeRequest, status_code=status.HTTP_201_CREATED)
async def report_change(
    payload: DetectedChange,
    service: ChangeRequestService = Depends(change_request_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ChangeRequest:
    """Detector endpoint: record an out-of-band modification of a governed file."""
    return await service.create_from_detector(payload, actor)


@router.get("/changes", response_model=list[ChangeRequest])
async def list_changes(
    team_id: str | None = None,
    status: ChangeRequestStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: ChangeRequestService = Depends(change_request_service),  # noqa: B008
) -> list[ChangeRequest]:
    return await service.list_changes(team_id=team_id, status=status, limit=limit, offset=offset)


@router.get("/changes/{change_request_id}", response_model=ChangeRequest)
async def get_change(
    change_request_id: str,
    service: ChangeRequestService = Depends(change_request_service),  # noqa: B008
) -> ChangeRequest:
    return await service.get_change(change_request_id)


@router.post("/changes/{change_request_id}/approve", response_model=ChangeRequest)
async def approve_change(
    change_request_id: str,
    service: ChangeRequestService = Depends(change_request_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ChangeRequest:
    return await service.approve(change_request_id, actor)


@router.post("/changes/{change_request_id}/reject", response_model=ChangeRequest)
async def reject_change(
    change_request_id: str,
    service: ChangeRequestService = Depends(change_request_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ChangeRequest:
    return await service.reject(change_request_id, actor)
