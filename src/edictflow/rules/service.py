"""
Rule lifecycle service.

Authoring (create, update, delete, revise), submission into the approval
quorum, and resolution of the effective rule set for a team. Every mutation
commits one audit entry with the state change, then announces one event.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.audit.recorder import AuditRecorder, snapshot
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import InvalidState, NotFound, ValidationError
from edictflow.db.repositories import (
    AuditRepository,
    CategoryRepository,
    RuleRepository,
    TeamRepository,
)
from edictflow.domain.models import (
    AuditAction,
    AuditEntityType,
    EnforcementMode,
    Rule,
    RuleStatus,
    TargetLayer,
    Trigger,
)
from edictflow.events import EventFanout, EventPublisher, EventType, GovernanceEvent
from edictflow.rules.layers import TargetContext, resolve_effective
from edictflow.rules.matcher import MatchContext
from edictflow.rules.merge import ManagedRender, render_into

logger = structlog.get_logger()

# Rule fields a partial update may set back to null.
_CLEARABLE_FIELDS = frozenset({"description", "category_id", "effective_start", "effective_end"})


class RuleDraft(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    content: str = ""
    description: str | None = None
    target_layer: TargetLayer
    category_id: str | None = None
    team_id: str | None = None
    force: bool = False
    enforcement_mode: EnforcementMode = EnforcementMode.block
    temporary_timeout_hours: int | None = None
    priority_weight: int = 0
    overridable: bool = True
    effective_start: datetime | None = None
    effective_end: datetime | None = None
    triggers: list[Trigger] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class RuleUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = None
    description: str | None = None
    category_id: str | None = None
    force: bool | None = None
    enforcement_mode: EnforcementMode | None = None
    temporary_timeout_hours: int | None = None
    priority_weight: int | None = None
    overridable: bool | None = None
    effective_start: datetime | None = None
    effective_end: datetime | None = None
    triggers: list[Trigger] | None = None
    tags: list[str] | None = None


class RuleService:
    def __init__(
        self,
        session: AsyncSession,
        events: EventPublisher,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.rules = RuleRepository(session)
        self.teams = TeamRepository(session)
        self.categories = CategoryRepository(session)
        self.audit = AuditRecorder(AuditRepository(session), clock)
        self.events = EventFanout(events)
        self.settings = settings or get_settings()
        self.clock = clock

    async def get_rule(self, rule_id: str) -> Rule:
        rule = await self.rules.get(rule_id)
        if rule is None:
            raise NotFound(f"Rule not found: {rule_id}", {"rule_id": rule_id})
        return rule

    async def list_rules(
        self, team_id: str | None = None, status: RuleStatus | None = None
    ) -> list[Rule]:
        return await self.rules.list(team_id=team_id, status=status)

    async def _check_references(self, category_id: str | None, team_id: str | None) -> None:
        if category_id is not None and await self.categories.get(category_id) is None:
            raise NotFound(f"Category not found: {category_id}", {"category_id": category_id})
        if team_id is not None and await self.teams.get(team_id) is None:
            raise NotFound(f"Team not found: {team_id}", {"team_id": team_id})

    async def _announce(self, event_type: EventType, rule: Rule, actor_id: str | None, **payload: Any) -> None:
        await self.events.publish_event(
            GovernanceEvent(
                event_type=event_type,
                entity_type=AuditEntityType.rule.value,
                entity_id=rule.id,
                team_id=rule.team_id,
                actor_id=actor_id,
                payload={"name": rule.name, "status": rule.status.value, **payload},
                occurred_at=self.clock(),
            )
        )

    async def create_rule(self, draft: RuleDraft, actor_id: str | None) -> Rule:
        await self._check_references(draft.category_id, draft.team_id)
        now = self.clock()
        values = draft.model_dump()
        if values["temporary_timeout_hours"] is None:
            values["temporary_timeout_hours"] = self.settings.default_temporary_timeout_hours
        rule = Rule(
            id=str(uuid.uuid4()),
            status=RuleStatus.draft,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        rule.validate_definition()

        await self.rules.create(rule)
        await self.audit.record_transition(
            AuditEntityType.rule, rule.id, AuditAction.created, actor_id, None, snapshot(rule)
        )
        await self.session.commit()

        logger.info("rule_created", rule_id=rule.id, layer=rule.target_layer.value, team_id=rule.team_id)
        await self._announce(EventType.rule_created, rule, actor_id)
        return rule

    async def update_rule(self, rule_id: str, changes: RuleUpdate, actor_id: str | None) -> Rule:
        rule = await self.get_rule(rule_id)
        if not rule.is_mutable:
            raise InvalidState(
                f"Rule in status '{rule.status.value}' cannot be edited",
                {"rule_id": rule_id, "status": rule.status.value},
            )
        updates = changes.model_dump(exclude_unset=True)
        cleared = sorted(k for k, v in updates.items() if v is None and k not in _CLEARABLE_FIELDS)
        if cleared:
            raise ValidationError(
                f"Fields cannot be cleared: {', '.join(cleared)}",
                {"rule_id": rule_id, "fields": cleared},
            )
        if "category_id" in updates:
            await self._check_references(updates["category_id"], None)

        try:
            updated = Rule.model_validate(
                {**rule.model_dump(), **updates, "updated_at": self.clock()}
            )
        except PydanticValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            raise ValidationError(
                "Invalid rule update", {"rule_id": rule_id, "errors": errors}
            ) from exc
        updated.validate_definition()

        if not await self.rules.save(updated, expected=[RuleStatus.draft, RuleStatus.rejected]):
            await self.session.rollback()
            raise InvalidState("Rule changed state during update", {"rule_id": rule_id})
        await self.audit.record_transition(
            AuditEntityType.rule,
            rule.id,
            AuditAction.updated,
            actor_id,
            snapshot(rule),
            snapshot(updated),
        )
        await self.session.commit()

        logger.info("rule_updated", rule_id=rule.id, fields=sorted(updates))
        await self._announce(EventType.rule_updated, updated, actor_id, fields=sorted(updates))
        return updated

    async def delete_rule(self, rule_id: str, actor_id: str | None) -> None:
        rule = await self.get_rule(rule_id)
        if rule.status is not RuleStatus.draft:
            raise InvalidState(
                "Only draft rules can be deleted",
                {"rule_id": rule_id, "status": rule.status.value},
            )
        if not await self.rules.delete(rule_id, expected=RuleStatus.draft):
            await self.session.rollback()
            raise InvalidState("Rule changed state during delete", {"rule_id": rule_id})
        await self.audit.record_transition(
            AuditEntityType.rule, rule.id, AuditAction.deleted, actor_id, snapshot(rule), None
        )
        await self.session.commit()

        logger.info("rule_deleted", rule_id=rule_id)
        await self._announce(EventType.rule_deleted, rule, actor_id)

    async def submit_rule(self, rule_id: str, actor_id: str | None) -> Rule:
        """Move a draft or rejected rule into the approval queue."""
        rule = await self.get_rule(rule_id)
        if not rule.can_submit:
            raise InvalidState(
                f"Rule in status '{rule.status.value}' cannot be submitted",
                {"rule_id": rule_id, "status": rule.status.value},
            )
        if not rule.name.strip() or not rule.content.strip():
            raise InvalidState(
                "Rule name and content must be non-empty to submit", {"rule_id": rule_id}
            )

        now = self.clock()
        values = {
            "submitted_at": now,
            "approval_round": rule.approval_round + 1,
            "updated_at": now,
        }
        if not await self.rules.transition_status(rule_id, rule.status, RuleStatus.pending, **values):
            await self.session.rollback()
            raise InvalidState("Rule changed state during submit", {"rule_id": rule_id})
        submitted = rule.model_copy(update={"status": RuleStatus.pending, **values})
        await self.audit.record_transition(
            AuditEntityType.rule,
            rule_id,
            AuditAction.submitted,
            actor_id,
            snapshot(rule),
            snapshot(submitted),
            metadata={"approval_round": submitted.approval_round},
        )
        await self.session.commit()

        logger.info("rule_submitted", rule_id=rule_id, approval_round=submitted.approval_round)
        await self._announce(
            EventType.rule_submitted, submitted, actor_id, approval_round=submitted.approval_round
        )
        return submitted

    async def revise_rule(self, rule_id: str, actor_id: str | None) -> Rule:
        """Spawn a fresh draft from a terminal rule; the source stays untouched."""
        source = await self.get_rule(rule_id)
        if source.status not in (RuleStatus.approved, RuleStatus.rejected):
            raise InvalidState(
                "Only approved or rejected rules can be revised",
                {"rule_id": rule_id, "status": source.status.value},
            )
        now = self.clock()
        draft = source.model_copy(
            update={
                "id": str(uuid.uuid4()),
                "status": RuleStatus.draft,
                "submitted_at": None,
                "approved_at": None,
                "approval_round": 0,
                "revises_rule_id": source.id,
                "created_by": actor_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self.rules.create(draft)
        await self.audit.record_transition(
            AuditEntityType.rule,
            draft.id,
            AuditAction.revised,
            actor_id,
            None,
            snapshot(draft),
            metadata={"revises_rule_id": source.id},
        )
        await self.session.commit()

        logger.info("rule_revised", rule_id=draft.id, revises_rule_id=source.id)
        await self._announce(EventType.rule_revised, draft, actor_id, revises_rule_id=source.id)
        return draft

    async def effective_rules(
        self,
        team_id: str | None,
        match: MatchContext | None = None,
        at: datetime | None = None,
    ) -> list[Rule]:
        """Ordered effective rule set for a team (or for no team: globals only)."""
        inherit = True
        if team_id is not None:
            team = await self.teams.get(team_id)
            if team is None:
                raise NotFound(f"Team not found: {team_id}", {"team_id": team_id})
            inherit = team.inherit_global_rules
        target = TargetContext(
            team_id=team_id, inherit_global_rules=inherit, match=match or MatchContext()
        )
        candidates = await self.rules.list_candidates(team_id)
        return resolve_effective(target, candidates, at or self.clock())

    async def render_effective(
        self,
        team_id: str | None,
        existing_content: str = "",
        match: MatchContext | None = None,
        at: datetime | None = None,
    ) -> ManagedRender:
        """Effective rule set rendered as a managed block merged into `existing_content`."""
        rules = await self.effective_rules(team_id, match, at)
        rendered = render_into(existing_content, rules, await self.categories.list())
        if rendered.tampered:
            logger.warning("managed_section_tampered", team_id=team_id)
        return rendered
