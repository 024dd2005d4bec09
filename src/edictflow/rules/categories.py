from __future__ import annotations

import uuid

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.audit.recorder import AuditRecorder, snapshot
from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import InvalidState, NotFound
from edictflow.db.repositories import AuditRepository, CategoryRepository
from edictflow.domain.models import AuditAction, AuditEntityType, Category
from edictflow.events import EventFanout, EventPublisher, EventType, GovernanceEvent

logger = structlog.get_logger()


class CategoryDraft(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    display_order: int = 0


class CategoryService:
    """Classification labels for rules. Create and delete only."""

    def __init__(self, session: AsyncSession, events: EventPublisher, clock: Clock = utcnow) -> None:
        self.session = session
        self.categories = CategoryRepository(session)
        self.audit = AuditRecorder(AuditRepository(session), clock)
        self.events = EventFanout(events)
        self.clock = clock

    async def list_categories(self) -> list[Category]:
        return await self.categories.list()

    async def create_category(self, draft: CategoryDraft, actor_id: str | None) -> Category:
        name = draft.name.strip()
        if await self.categories.get_by_name(name) is not None:
            raise InvalidState(f"Category already exists: {name}", {"name": name})
        now = self.clock()
        category = Category(
            id=str(uuid.uuid4()),
            name=name,
            display_order=draft.display_order,
            created_at=now,
            updated_at=now,
        )
        await self.categories.create(category)
        await self.audit.record_transition(
            AuditEntityType.category,
            category.id,
            AuditAction.created,
            actor_id,
            None,
            snapshot(category),
        )
        await self.session.commit()

        logger.info("category_created", category_id=category.id, name=name)
        await self.events.publish_event(
            GovernanceEvent(
                event_type=EventType.category_created,
                entity_type=AuditEntityType.category.value,
                entity_id=category.id,
                actor_id=actor_id,
                payload={"name": name},
                occurred_at=now,
            )
        )
        return category

    async def delete_category(self, category_id: str, actor_id: str | None) -> list[str]:
        """Delete a category; rules referencing it are detached, not deleted."""
        category = await self.categories.get(category_id)
        if category is None:
            raise NotFound(f"Category not found: {category_id}", {"category_id": category_id})
        if category.is_system:
            raise InvalidState("System categories cannot be deleted", {"category_id": category_id})

        detached = await self.categories.delete(category_id)
        await self.audit.record_transition(
            AuditEntityType.category,
            category_id,
            AuditAction.deleted,
            actor_id,
            snapshot(category),
            None,
            metadata={"detached_rule_ids": detached},
        )
        await self.session.commit()

        logger.info("category_deleted", category_id=category_id, detached_rules=len(detached))
        await self.events.publish_event(
            GovernanceEvent(
                event_type=EventType.category_deleted,
                entity_type=AuditEntityType.category.value,
                entity_id=category_id,
                actor_id=actor_id,
                payload={"name": category.name, "detached_rule_ids": detached},
                occurred_at=self.clock(),
            )
        )
        return detached
