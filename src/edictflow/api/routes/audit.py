from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.api.deps import session_dependency
from edictflow.audit.diff import FieldDiff, render_between, render_diff
from edictflow.core.errors import NotFound, ValidationError
from edictflow.db.repositories import AuditFilters, AuditRepository
from edictflow.domain.models import AuditAction, AuditEntityType, AuditEntry

router = APIRouter()


class AuditListResponse(BaseModel):
    entries: list[AuditEntry]
    total: int
    limit: int
    offset: int


class DiffLineResponse(BaseModel):
    kind: str
    content: str


class FieldDiffResponse(BaseModel):
    field: str
    old: Any = None
    new: Any = None
    lines: list[DiffLineResponse] | None = None

    @classmethod
    def from_diff(cls, diff: FieldDiff) -> FieldDiffResponse:
        lines = None
        if diff.lines is not None:
            lines = [DiffLineResponse(kind=line.kind.value, content=line.content) for line in diff.lines]
        return cls(field=diff.field, old=diff.old, new=diff.new, lines=lines)


class EntryDiffResponse(BaseModel):
    entry: AuditEntry
    fields: list[FieldDiffResponse]


@router.get("/audit", response_model=AuditListResponse)
async def list_audit_entries(
    entity_type: AuditEntityType | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    action: AuditAction | None = None,
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> AuditListResponse:
    filters = AuditFilters(
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        action=action,
        from_=from_,
        to=to,
    )
    entries, total = await AuditRepository(session).list(filters, limit=limit, offset=offset)
    return AuditListResponse(entries=entries, total=total, limit=limit, offset=offset)


@router.get("/audit/entity/{entity_type}/{entity_id}", response_model=list[AuditEntry])
async def entity_history(
    entity_type: AuditEntityType,
    entity_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[AuditEntry]:
    """Full history of one entity, oldest first."""
    return await AuditRepository(session).entity_history(entity_type, entity_id)


@router.get("/audit/entity/{entity_type}/{entity_id}/diff", response_model=list[FieldDiffResponse])
async def entity_diff(
    entity_type: AuditEntityType,
    entity_id: str,
    older: str = Query(...),
    newer: str = Query(...),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[FieldDiffResponse]:
    """Deltas between the entity's state after two entries of its history."""
    history = await AuditRepository(session).entity_history(entity_type, entity_id)
    by_id = {entry.id: entry for entry in history}
    missing = [entry_id for entry_id in (older, newer) if entry_id not in by_id]
    if missing:
        raise ValidationError(
            "Entries do not belong to this entity's history",
            {"entity_id": entity_id, "entry_ids": missing},
        )
    diffs = render_between(history, by_id[older], by_id[newer])
    return [FieldDiffResponse.from_diff(d) for d in diffs]


@router.get("/audit/{entry_id}/diff", response_model=EntryDiffResponse)
async def entry_diff(
    entry_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> EntryDiffResponse:
    entry = await AuditRepository(session).get(entry_id)
    if entry is None:
        raise NotFound(f"Audit entry not found: {entry_id}", {"entry_id": entry_id})
    return EntryDiffResponse(
        entry=entry, fields=[FieldDiffResponse.from_diff(d) for d in render_diff(entry)]
    )
