"""
Audit recorder.

Turns a before/after pair of entity snapshots into one immutable audit entry.
Entries are written inside the caller's transaction, so a transition and its
audit entry commit or roll back together.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping

import structlog
from pydantic import BaseModel

from edictflow.audit.diff import compute_changes
from edictflow.core.clock import Clock, utcnow
from edictflow.db.repositories import AuditRepository
from edictflow.domain.models import AuditAction, AuditEntityType, AuditEntry

logger = structlog.get_logger()


def snapshot(entity: BaseModel | None) -> dict[str, Any] | None:
    """JSON-safe view of an entity, as stored in audit changes."""
    if entity is None:
        return None
    return entity.model_dump(mode="json")


class AuditRecorder:
    """Appends audit entries for state transitions."""

    def __init__(self, repository: AuditRepository, clock: Clock = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    async def record_transition(
        self,
        entity_type: AuditEntityType,
        entity_id: str,
        action: AuditAction,
        actor_id: str | None,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
        metadata: Mapping[str, Any] | None = None,
        actor_name: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            actor_name=actor_name,
            changes=compute_changes(before, after),
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        await self.repository.create(entry)
        logger.debug(
            "audit_recorded",
            entry_id=entry.id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            action=action.value,
            changed_fields=sorted(entry.changes),
        )
        return entry
