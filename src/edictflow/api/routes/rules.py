from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from edictflow.api.deps import get_actor, rule_service
from edictflow.domain.models import Rule, RuleStatus
from edictflow.rules.matcher import MatchContext
from edictflow.rules.merge import ManagedRender
from edictflow.rules.service import RuleDraft, RuleService, RuleUpdate

router = APIRouter()


class EffectiveRulesRequest(BaseModel):
    team_id: str | None = None
    file_path: str | None = None
    contexts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    at: datetime | None = None


class RenderRulesRequest(EffectiveRulesRequest):
    existing_content: str = ""


@router.post("/rules", response_model=Rule, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: RuleDraft,
    service: RuleService = Depends(rule_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Rule:
    return await service.create_rule(payload, actor)


@router.get("/rules", response_model=list[Rule])
async def list_rules(
    team_id: str | None = None,
    status: RuleStatus | None = None,
    service: RuleService = Depends(rule_service),  # noqa: B008
) -> list[Rule]:
    return await service.list_rules(team_id=team_id, status=status)


@router.post("/rules/effective", response_model=list[Rule])
async def effective_rules(
    payload: EffectiveRulesRequest,
    service: RuleService = Depends(rule_service),  # noqa: B008
) -> list[Rule]:
    """Ordered effective rule set for a team and, optionally, a file or context."""
    match = MatchContext(
        file_path=payload.file_path,
        contexts=tuple(payload.contexts),
        tags=tuple(payload.tags),
    )
    return await service.effective_rules(payload.team_id, match, payload.at)


@router.post("/rules/effective/render", response_model=ManagedRender)
async def render_effective_rules(
    payload: RenderRulesRequest,
    service: RuleService = Depends(rule_service),  # noqa: B008
) -> ManagedRender:
    """Effective rules rendered as a managed block and merged into existing file content."""
    match = MatchContext(
        file_path=payload.file_path,
        contexts=tuple(payload.contexts),
        tags=tuple(payload.tags),
    )
    return await service.render_effective(
        payload.team_id, payload.existing_content, match, payload.at
    )


@router.get("/rules/{rule_id}", response_model=Rule)
async def get_rule(
    rule_id: str,
    service: RuleService = Depends(rule_service),  # noqa: B008
) -> Rule:
    return await service.get_rule(rule_id)


@router.patch("/rules/{rule_id}", response_model=Rule)
async def update_rule(
    rule_id: str,
    payload: RuleUpdate,
    service: RuleService = Depends(rule_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Rule:
    return await service.update_rule(rule_id, payload, actor)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    service: RuleService = Depends(rule_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Response:
    await service.delete_rule(rule_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/rules/{rule_id}/submit", response_model=Rule)
async def submit_rule(
    rule_id: str,
    service: RuleService = Depends(rule_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Rule:
    return await service.submit_rule(rule_id, actor)


@router.post("/rules/{rule_id}/revise", response_model=Rule, status_code=status.HTTP_201_CREATED)
async def revise_rule(
    rule_id: str,
    service: RuleService = Depends(rule_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Rule:
    return await service.revise_rule(rule_id, actor)
