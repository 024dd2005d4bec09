from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from edictflow.api.deps import category_service, get_actor
from edictflow.domain.models import Category
from edictflow.rules.categories import CategoryDraft, CategoryService

router = APIRouter()


class CategoryDeleteResponse(BaseModel):
    category_id: str
    detached_rule_ids: list[str]


@router.get("/categories", response_model=list[Category])
async def list_categories(
    service: CategoryService = Depends(category_service),  # noqa: B008
) -> list[Category]:
    return await service.list_categories()


@router.post("/categories", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: CategoryDraft,
    service: CategoryService = Depends(category_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> Category:
    return await service.create_category(payload, actor)


@router.delete("/categories/{category_id}", response_model=CategoryDeleteResponse)
async def delete_category(
    category_id: str,
    service: CategoryService = Depends(category_service),  # noqa: B008
    actor: str = Depends(get_actor),  # noqa: B008
) -> CategoryDeleteResponse:
    detached = await service.delete_category(category_id, actor)
    return CategoryDeleteResponse(category_id=category_id, detached_rule_ids=detached)
