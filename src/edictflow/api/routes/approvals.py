from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from edictflow.api.deps import approval_service, get_actor
from edictflow.approvals.service import ApprovalService
from edictflow.domain.models import ApprovalStatus, Rule, TargetLayer

router = APIRouter()


class DecisionRequest(BaseModel):
    comment: str | None = None


@router.post("/rules/{rule_id}/approve", response_model=ApprovalStatus)
async def approve_rule(
    rule_id: str,
    payload: DecisionRequest | None = None,
    service: ApprovalService = Depends(approval_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ApprovalStatus:
    return await service.approve(rule_id, actor, payload.comment if payload else None)


@router.post("/rules/{rule_id}/reject", response_model=ApprovalStatus)
async def reject_rule(
    rule_id: str,
    payload: DecisionRequest,
    service: ApprovalService = Depends(approval_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> ApprovalStatus:
    return await service.reject(rule_id, actor, payload.comment)


@router.get("/rules/{rule_id}/approval-status", response_model=ApprovalStatus)
async def approval_status(
    rule_id: str,
    service: ApprovalService = Depends(approval_service),  # noqa: B008
) -> ApprovalStatus:
    return await service.get_approval_status(rule_id)


@router.get("/approvals/pending", response_model=list[Rule])
async def pending_approvals(
    team_id: str | None = None,
    scope: TargetLayer | None = None,
    service: ApprovalService = Depends(approval_service),  # noqa: B008
) -> list[Rule]:
    return await service.list_pending(team_id=team_id, scope=scope)
