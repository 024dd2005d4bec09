"""
Change-request enforcement.

A change request tracks one out-of-band file modification reported by the
detector, under the enforcement mode of the rule in force when it was seen.
Every move out of `pending` is a compare-and-set, so an approval, a rejection,
an exception grant and the auto-revert deadline race safely: exactly one wins
and the others see `AlreadyTerminal`.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.audit.recorder import AuditRecorder, snapshot
from edictflow.changes.state import deadline_for, ensure_transition
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import AlreadyTerminal, InvalidState, NotFound, ValidationError
from edictflow.db.repositories import (
    AuditRepository,
    ChangeRequestRepository,
    RuleRepository,
)
from edictflow.domain.models import (
    AuditAction,
    AuditEntityType,
    ChangeRequest,
    ChangeRequestStatus,
)
from edictflow.events import (
    EnforcementInstruction,
    EventFanout,
    EventPublisher,
    EventType,
    GovernanceEvent,
    InstructionAction,
)

logger = structlog.get_logger()


class DetectedChange(BaseModel):
    """Detector report of a governed file modified outside the approval flow."""

    rule_id: str
    team_id: str
    file_path: str = Field(min_length=1)
    original_hash: str = Field(min_length=1)
    modified_hash: str = Field(min_length=1)
    diff_content: str = ""
    agent_id: str | None = None
    user_id: str | None = None


class ChangeRequestService:
    def __init__(
        self,
        session: AsyncSession,
        events: EventPublisher,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.changes = ChangeRequestRepository(session)
        self.rules = RuleRepository(session)
        self.audit = AuditRecorder(AuditRepository(session), clock)
        self.events = EventFanout(events)
        self.settings = settings or get_settings()
        self.clock = clock

    async def get_change(self, change_request_id: str) -> ChangeRequest:
        change = await self.changes.get(change_request_id)
        if change is None:
            raise NotFound(
                f"Change request not found: {change_request_id}",
                {"change_request_id": change_request_id},
            )
        return change

    async def list_changes(
        self,
        team_id: str | None = None,
        status: ChangeRequestStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ChangeRequest]:
        return await self.changes.list(team_id=team_id, status=status, limit=limit, offset=offset)

    async def _announce(
        self,
        event_type: EventType,
        change: ChangeRequest,
        actor_id: str | None,
        instruction: InstructionAction | None = None,
    ) -> None:
        await self.events.publish_event(
            GovernanceEvent(
                event_type=event_type,
                entity_type=AuditEntityType.change_request.value,
                entity_id=change.id,
                team_id=change.team_id,
                actor_id=actor_id,
                payload={
                    "rule_id": change.rule_id,
                    "file_path": change.file_path,
                    "status": change.status.value,
                    "enforcement_mode": change.enforcement_mode.value,
                    "timeout_at": change.timeout_at.isoformat() if change.timeout_at else None,
                },
                occurred_at=self.clock(),
            )
        )
        if instruction is not None:
            await self.events.publish_instruction(
                EnforcementInstruction(
                    action=instruction,
                    change_request_id=change.id,
                    team_id=change.team_id,
                    file_path=change.file_path,
                    agent_id=change.agent_id,
                    revert_to_hash=(
                        change.original_hash if instruction is InstructionAction.revert else None
                    ),
                    issued_at=self.clock(),
                )
            )

    async def create_from_detector(
        self, detected: DetectedChange, actor_id: str | None = None
    ) -> ChangeRequest:
        rule = await self.rules.get(detected.rule_id)
        if rule is None:
            raise NotFound(f"Rule not found: {detected.rule_id}", {"rule_id": detected.rule_id})
        if not rule.is_active:
            raise InvalidState(
                "Only approved rules are enforced",
                {"rule_id": rule.id, "status": rule.status.value},
            )
        if not rule.is_global and rule.team_id != detected.team_id:
            raise ValidationError(
                "Rule does not govern this team",
                {"rule_id": rule.id, "team_id": detected.team_id},
            )

        existing = await self.changes.find_pending_for_file(
            detected.team_id, detected.rule_id, detected.file_path
        )
        if existing is not None and await self.changes.update_diff(
            existing.id, detected.modified_hash, detected.diff_content
        ):
            updated = existing.model_copy(
                update={
                    "modified_hash": detected.modified_hash,
                    "diff_content": detected.diff_content,
                }
            )
            await self.audit.record_transition(
                AuditEntityType.change_request,
                existing.id,
                AuditAction.updated,
                actor_id,
                snapshot(existing),
                snapshot(updated),
            )
            await self.session.commit()
            logger.info("change_updated", change_request_id=existing.id, file_path=existing.file_path)
            await self._announce(EventType.change_updated, updated, actor_id)
            return updated

        now = self.clock()
        timeout_hours = rule.temporary_timeout_hours
        change = ChangeRequest(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            team_id=detected.team_id,
            agent_id=detected.agent_id,
            user_id=detected.user_id,
            file_path=detected.file_path,
            original_hash=detected.original_hash,
            modified_hash=detected.modified_hash,
            diff_content=detected.diff_content,
            enforcement_mode=rule.enforcement_mode,
            timeout_hours=timeout_hours,
            status=ChangeRequestStatus.pending,
            timeout_at=deadline_for(rule.enforcement_mode, timeout_hours, now),
            created_at=now,
        )
        await self.changes.create(change)
        await self.audit.record_transition(
            AuditEntityType.change_request,
            change.id,
            AuditAction.created,
            actor_id,
            None,
            snapshot(change),
            metadata={"rule_id": rule.id, "agent_id": detected.agent_id},
        )
        await self.session.commit()

        logger.info(
            "change_detected",
            change_request_id=change.id,
            rule_id=rule.id,
            team_id=change.team_id,
            enforcement_mode=change.enforcement_mode.value,
            timeout_at=change.timeout_at.isoformat() if change.timeout_at else None,
        )
        await self._announce(EventType.change_detected, change, actor_id)
        return change

    async def _resolve(
        self,
        change_request_id: str,
        target: ChangeRequestStatus,
        action: AuditAction,
        actor_id: str | None,
    ) -> ChangeRequest:
        change = await self.get_change(change_request_id)
        if not change.is_pending:
            ensure_transition(change, target)

        now = self.clock()
        values = {"resolved_at": now, "resolved_by": actor_id, "timeout_at": None}
        if not await self.changes.transition(
            change.id, [ChangeRequestStatus.pending], target, **values
        ):
            await self.session.rollback()
            current = await self.get_change(change.id)
            logger.info(
                "change_transition_lost",
                change_request_id=change.id,
                target=target.value,
                status=current.status.value,
            )
            raise AlreadyTerminal(
                "Change request already left pending",
                {"change_request_id": change.id, "status": current.status.value},
            )
        resolved = change.model_copy(update={"status": target, **values})
        await self.audit.record_transition(
            AuditEntityType.change_request,
            change.id,
            action,
            actor_id,
            snapshot(change),
            snapshot(resolved),
        )
        await self.session.commit()
        return resolved

    async def approve(self, change_request_id: str, actor_id: str | None) -> ChangeRequest:
        """Authorize the change retroactively."""
        resolved = await self._resolve(
            change_request_id, ChangeRequestStatus.approved, AuditAction.approved, actor_id
        )
        logger.info("change_approved", change_request_id=resolved.id, actor_id=actor_id)
        await self._announce(EventType.change_approved, resolved, actor_id, InstructionAction.accept)
        return resolved

    async def reject(self, change_request_id: str, actor_id: str | None) -> ChangeRequest:
        """Refuse the change; the detector reverts it to the original hash."""
        resolved = await self._resolve(
            change_request_id, ChangeRequestStatus.rejected, AuditAction.rejected, actor_id
        )
        logger.info("change_rejected", change_request_id=resolved.id, actor_id=actor_id)
        await self._announce(EventType.change_rejected, resolved, actor_id, InstructionAction.revert)
        return resolved

    async def auto_revert(self, change: ChangeRequest) -> ChangeRequest:
        """Fire the auto-revert deadline of a pending temporary change."""
        now = self.clock()
        if not await self.changes.transition(
            change.id,
            [ChangeRequestStatus.pending],
            ChangeRequestStatus.auto_reverted,
            resolved_at=now,
            timeout_at=None,
        ):
            await self.session.rollback()
            raise AlreadyTerminal(
                "Change request already left pending",
                {"change_request_id": change.id},
            )
        reverted = change.model_copy(
            update={
                "status": ChangeRequestStatus.auto_reverted,
                "resolved_at": now,
                "timeout_at": None,
            }
        )
        await self.audit.record_transition(
            AuditEntityType.change_request,
            change.id,
            AuditAction.auto_reverted,
            None,
            snapshot(change),
            snapshot(reverted),
            metadata={"timeout_at": change.timeout_at.isoformat() if change.timeout_at else None},
        )
        await self.session.commit()

        logger.info("change_auto_reverted", change_request_id=change.id, team_id=change.team_id)
        await self._announce(
            EventType.change_auto_reverted, reverted, None, InstructionAction.revert
        )
        return reverted

    async def expire_overdue(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Auto-revert every pending change past its deadline. Returns how many fired."""
        now = now or self.clock()
        overdue = await self.changes.find_overdue(now, limit or self.settings.sweeper_batch_size)
        fired = 0
        for change in overdue:
            try:
                await self.auto_revert(change)
            except AlreadyTerminal:
                logger.info("auto_revert_skipped", change_request_id=change.id)
                continue
            except Exception:
                await self.session.rollback()
                logger.exception("auto_revert_failed", change_request_id=change.id)
                continue
            fired += 1
        return fired
