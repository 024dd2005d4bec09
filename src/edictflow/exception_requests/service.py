"""
Exception workflow.

An exception suspends enforcement for one change request. Approval moves the
parent change request to `exception_granted`, which cancels its auto-revert
deadline because the sweeper only touches pending requests. When a
time-limited exception runs out, enforcement is re-armed as if it had never
been granted.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.audit.recorder import AuditRecorder, snapshot
from edictflow.changes.state import GRANTABLE_STATES, deadline_for
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import (
    AlreadyTerminal,
    DuplicateException,
    InvalidState,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from edictflow.db.repositories import (
    AuditRepository,
    ChangeRequestRepository,
    ExceptionRequestRepository,
)
from edictflow.domain.models import (
    AuditAction,
    AuditEntityType,
    ChangeRequest,
    ChangeRequestStatus,
    EnforcementMode,
    ExceptionRequest,
    ExceptionStatus,
    ExceptionType,
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

FILEABLE_STATES = frozenset({ChangeRequestStatus.pending, ChangeRequestStatus.auto_reverted})


class ExceptionFiling(BaseModel):
    change_request_id: str
    justification: str
    exception_type: ExceptionType
    expires_at: datetime | None = None


class ExceptionService:
    def __init__(
        self,
        session: AsyncSession,
        events: EventPublisher,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.exceptions = ExceptionRequestRepository(session)
        self.changes = ChangeRequestRepository(session)
        self.audit = AuditRecorder(AuditRepository(session), clock)
        self.events = EventFanout(events)
        self.settings = settings or get_settings()
        self.clock = clock

    async def get_exception(self, exception_id: str) -> ExceptionRequest:
        exception = await self.exceptions.get(exception_id)
        if exception is None:
            raise NotFound(
                f"Exception request not found: {exception_id}", {"exception_id": exception_id}
            )
        return exception

    async def _get_change(self, change_request_id: str) -> ChangeRequest:
        change = await self.changes.get(change_request_id)
        if change is None:
            raise NotFound(
                f"Change request not found: {change_request_id}",
                {"change_request_id": change_request_id},
            )
        return change

    async def list_exceptions(
        self,
        team_id: str | None = None,
        status: ExceptionStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExceptionRequest]:
        return await self.exceptions.list(team_id=team_id, status=status, limit=limit, offset=offset)

    async def _announce(
        self,
        event_type: EventType,
        exception: ExceptionRequest,
        change: ChangeRequest,
        actor_id: str | None,
        instruction: InstructionAction | None = None,
    ) -> None:
        await self.events.publish_event(
            GovernanceEvent(
                event_type=event_type,
                entity_type=AuditEntityType.exception_request.value,
                entity_id=exception.id,
                team_id=change.team_id,
                actor_id=actor_id,
                payload={
                    "change_request_id": change.id,
                    "exception_type": exception.exception_type.value,
                    "status": exception.status.value,
                    "change_request_status": change.status.value,
                    "expires_at": exception.expires_at.isoformat() if exception.expires_at else None,
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

    def _check_expiry(self, exception_type: ExceptionType, expires_at: datetime | None) -> None:
        if exception_type is ExceptionType.permanent:
            if expires_at is not None:
                raise ValidationError("Permanent exceptions cannot have an expiry")
            return
        if expires_at is not None and expires_at <= self.clock():
            raise ValidationError(
                "expires_at must be in the future", {"expires_at": expires_at.isoformat()}
            )

    async def file_exception(self, filing: ExceptionFiling, user_id: str | None) -> ExceptionRequest:
        change = await self._get_change(filing.change_request_id)
        if not filing.justification.strip():
            raise ValidationError("A justification is required")
        self._check_expiry(filing.exception_type, filing.expires_at)
        if change.status not in FILEABLE_STATES:
            raise InvalidState(
                f"Cannot file an exception for a change request in status '{change.status.value}'",
                {"change_request_id": change.id, "status": change.status.value},
            )
        now = self.clock()
        active = await self.exceptions.find_active(change.id, now)
        if active is not None:
            raise DuplicateException(
                "An active exception already exists for this change request",
                {"change_request_id": change.id, "exception_id": active.id},
            )

        exception = ExceptionRequest(
            id=str(uuid.uuid4()),
            change_request_id=change.id,
            user_id=user_id,
            justification=filing.justification.strip(),
            exception_type=filing.exception_type,
            status=ExceptionStatus.pending,
            expires_at=filing.expires_at,
            created_at=now,
        )
        await self.exceptions.create(exception)
        await self.audit.record_transition(
            AuditEntityType.exception_request,
            exception.id,
            AuditAction.created,
            user_id,
            None,
            snapshot(exception),
            metadata={"change_request_id": change.id},
        )
        await self.session.commit()

        logger.info(
            "exception_requested",
            exception_id=exception.id,
            change_request_id=change.id,
            exception_type=exception.exception_type.value,
        )
        await self._announce(EventType.exception_requested, exception, change, user_id)
        return exception

    async def _close(
        self,
        exception: ExceptionRequest,
        target: ExceptionStatus,
        actor_id: str | None,
        **values: object,
    ) -> ExceptionRequest:
        if exception.status is not ExceptionStatus.pending:
            raise InvalidTransition(
                f"Exception request in status '{exception.status.value}' is already resolved",
                {"exception_id": exception.id, "status": exception.status.value},
            )
        now = self.clock()
        values = {"resolved_at": now, "resolved_by": actor_id, **values}
        if not await self.exceptions.transition(
            exception.id, ExceptionStatus.pending, target, **values
        ):
            await self.session.rollback()
            raise AlreadyTerminal(
                "Exception request already resolved", {"exception_id": exception.id}
            )
        return exception.model_copy(update={"status": target, **values})

    async def approve_exception(
        self,
        exception_id: str,
        approver_id: str | None,
        expires_at: datetime | None = None,
    ) -> ExceptionRequest:
        exception = await self.get_exception(exception_id)
        expiry = expires_at or exception.expires_at
        if exception.exception_type is ExceptionType.time_limited:
            if expiry is None:
                raise ValidationError(
                    "Time-limited exceptions need an expiry", {"exception_id": exception_id}
                )
            self._check_expiry(exception.exception_type, expiry)
        else:
            self._check_expiry(exception.exception_type, expires_at)

        approved = await self._close(
            exception, ExceptionStatus.approved, approver_id, expires_at=expiry
        )
        change = await self._get_change(exception.change_request_id)
        now = self.clock()
        change_values = {"resolved_at": now, "resolved_by": approver_id, "timeout_at": None}
        if not await self.changes.transition(
            change.id, GRANTABLE_STATES, ChangeRequestStatus.exception_granted, **change_values
        ):
            await self.session.rollback()
            raise AlreadyTerminal(
                "Change request cannot take an exception grant",
                {"change_request_id": change.id},
            )
        granted = change.model_copy(
            update={"status": ChangeRequestStatus.exception_granted, **change_values}
        )
        await self.audit.record_transition(
            AuditEntityType.exception_request,
            exception.id,
            AuditAction.approved,
            approver_id,
            snapshot(exception),
            snapshot(approved),
            metadata={
                "change_request_id": change.id,
                "change_request_status": {"old": change.status.value, "new": granted.status.value},
            },
        )
        await self.audit.record_transition(
            AuditEntityType.change_request,
            change.id,
            AuditAction.exception_granted,
            approver_id,
            snapshot(change),
            snapshot(granted),
            metadata={"exception_id": exception.id},
        )
        await self.session.commit()

        logger.info(
            "exception_granted",
            exception_id=exception.id,
            change_request_id=change.id,
            previous_status=change.status.value,
        )
        await self._announce(
            EventType.exception_granted, approved, granted, approver_id, InstructionAction.allow
        )
        return approved

    async def deny_exception(self, exception_id: str, approver_id: str | None) -> ExceptionRequest:
        exception = await self.get_exception(exception_id)
        denied = await self._close(exception, ExceptionStatus.denied, approver_id)
        change = await self._get_change(exception.change_request_id)
        await self.audit.record_transition(
            AuditEntityType.exception_request,
            exception.id,
            AuditAction.denied,
            approver_id,
            snapshot(exception),
            snapshot(denied),
            metadata={"change_request_id": change.id},
        )
        await self.session.commit()

        logger.info("exception_denied", exception_id=exception.id, change_request_id=change.id)
        await self._announce(EventType.exception_denied, denied, change, approver_id)
        return denied

    async def expire_exception(self, exception: ExceptionRequest) -> ChangeRequest:
        """Close an expired time-limited exception and re-arm enforcement."""
        now = self.clock()
        if not await self.exceptions.mark_expired(exception.id, now):
            await self.session.rollback()
            raise AlreadyTerminal("Exception already expired", {"exception_id": exception.id})

        change = await self._get_change(exception.change_request_id)
        rearmed = change
        instruction: InstructionAction | None = None
        if change.status is ChangeRequestStatus.exception_granted:
            values = {
                "resolved_at": None,
                "resolved_by": None,
                "timeout_at": deadline_for(
                    change.enforcement_mode,
                    change.timeout_hours or self.settings.default_temporary_timeout_hours,
                    now,
                ),
            }
            if await self.changes.transition(
                change.id,
                [ChangeRequestStatus.exception_granted],
                ChangeRequestStatus.pending,
                **values,
            ):
                rearmed = change.model_copy(
                    update={"status": ChangeRequestStatus.pending, **values}
                )
                if change.enforcement_mode is EnforcementMode.block:
                    instruction = InstructionAction.revert

        expired = exception.model_copy(update={"expired_at": now})
        await self.audit.record_transition(
            AuditEntityType.exception_request,
            exception.id,
            AuditAction.expired,
            None,
            snapshot(exception),
            snapshot(expired),
            metadata={
                "change_request_id": change.id,
                "change_request_status": {"old": change.status.value, "new": rearmed.status.value},
                "timeout_at": rearmed.timeout_at.isoformat() if rearmed.timeout_at else None,
            },
        )
        if rearmed is not change:
            await self.audit.record_transition(
                AuditEntityType.change_request,
                change.id,
                AuditAction.updated,
                None,
                snapshot(change),
                snapshot(rearmed),
                metadata={"exception_id": exception.id, "reason": "exception_expired"},
            )
        await self.session.commit()

        logger.info(
            "exception_expired",
            exception_id=exception.id,
            change_request_id=change.id,
            rearmed=rearmed.status is ChangeRequestStatus.pending,
            enforcement_mode=change.enforcement_mode.value,
        )
        await self._announce(EventType.exception_expired, expired, rearmed, None, instruction)
        return rearmed

    async def expire_exceptions(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Process every time-limited exception past its expiry. Returns how many expired."""
        now = now or self.clock()
        due = await self.exceptions.find_expired(now, limit or self.settings.sweeper_batch_size)
        expired = 0
        for exception in due:
            try:
                await self.expire_exception(exception)
            except AlreadyTerminal:
                logger.info("exception_expiry_skipped", exception_id=exception.id)
                continue
            except Exception:
                await self.session.rollback()
                logger.exception("exception_expiry_failed", exception_id=exception.id)
                continue
            expired += 1
        return expired
