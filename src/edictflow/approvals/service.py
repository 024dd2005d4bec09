from __future__ import annotations

import uuid

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.approvals.quorum import QuorumOutcome, QuorumPolicy, derive_status
from edictflow.audit.recorder import AuditRecorder, snapshot
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.core.errors import (
    AlreadyTerminal,
    DuplicateApproval,
    InvalidState,
    MissingComment,
    NotFound,
)
from edictflow.db.repositories import (
    ApprovalConfigRepository,
    ApprovalRepository,
    AuditRepository,
    RuleRepository,
)
from edictflow.domain.models import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalStatus,
    AuditAction,
    AuditEntityType,
    Rule,
    RuleStatus,
    TargetLayer,
)
from edictflow.events import EventFanout, EventPublisher, EventType, GovernanceEvent

logger = structlog.get_logger()


class ApprovalService:
    """Records approver decisions and moves rules out of review."""

    def __init__(
        self,
        session: AsyncSession,
        events: EventPublisher,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.rules = RuleRepository(session)
        self.approvals = ApprovalRepository(session)
        self.policy = QuorumPolicy(ApprovalConfigRepository(session), settings or get_settings())
        self.audit = AuditRecorder(AuditRepository(session), clock)
        self.events = EventFanout(events)
        self.clock = clock

    async def _get_rule(self, rule_id: str) -> Rule:
        rule = await self.rules.get(rule_id)
        if rule is None:
            raise NotFound(f"Rule not found: {rule_id}", {"rule_id": rule_id})
        return rule

    async def _outcome(self, rule: Rule) -> tuple[QuorumOutcome, list[ApprovalRecord]]:
        records = await self.approvals.list_round(rule.id, rule.approval_round)
        required = await self.policy.required_count(rule)
        return derive_status(records, required), records

    async def record_decision(
        self,
        rule_id: str,
        user_id: str,
        decision: ApprovalDecision,
        comment: str | None = None,
    ) -> ApprovalStatus:
        if decision is ApprovalDecision.rejected and not (comment or "").strip():
            await self._get_rule(rule_id)
            raise MissingComment("A comment is required when rejecting", {"rule_id": rule_id})
        # Decisions on one rule serialize on its row so each count sees every
        # committed vote of the round.
        rule = await self.rules.get_for_update(rule_id)
        if rule is None:
            raise NotFound(f"Rule not found: {rule_id}", {"rule_id": rule_id})
        if rule.status is not RuleStatus.pending:
            await self.session.rollback()
            raise InvalidState(
                f"Rule in status '{rule.status.value}' is not awaiting approval",
                {"rule_id": rule_id, "status": rule.status.value},
            )
        if await self.approvals.has_decided(rule_id, user_id, rule.approval_round):
            await self.session.rollback()
            raise DuplicateApproval(
                "User already decided on this rule",
                {"rule_id": rule_id, "user_id": user_id},
            )

        now = self.clock()
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            user_id=user_id,
            decision=decision,
            comment=comment,
            approval_round=rule.approval_round,
            created_at=now,
        )
        try:
            await self.approvals.create(record)
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateApproval(
                "User already decided on this rule",
                {"rule_id": rule_id, "user_id": user_id},
            ) from exc

        outcome, records = await self._outcome(rule)
        after = rule
        if outcome.is_final:
            values = {"updated_at": now}
            if outcome.status is RuleStatus.approved:
                values["approved_at"] = now
            moved = await self.rules.transition_status(
                rule_id, RuleStatus.pending, outcome.status, **values
            )
            if moved:
                after = rule.model_copy(update={"status": outcome.status, **values})
            else:
                # A concurrent decision already closed the round; keep this one
                # only if it agrees with the status that won.
                current = await self._get_rule(rule_id)
                if current.status is not outcome.status:
                    await self.session.rollback()
                    raise AlreadyTerminal(
                        "Rule left review before this decision was recorded",
                        {"rule_id": rule_id, "status": current.status.value},
                    )
                outcome = QuorumOutcome(RuleStatus.pending, outcome.current_count, outcome.required_count)

        await self.audit.record_transition(
            AuditEntityType.rule,
            rule_id,
            AuditAction(decision.value),
            user_id,
            snapshot(rule),
            snapshot(after),
            metadata={
                "approval_id": record.id,
                "approval_round": record.approval_round,
                "comment": comment,
                "current_count": outcome.current_count,
                "required_count": outcome.required_count,
            },
        )
        await self.session.commit()

        if outcome.is_final:
            event_type = (
                EventType.rule_approved
                if outcome.status is RuleStatus.approved
                else EventType.rule_rejected
            )
        else:
            event_type = EventType.approval_recorded
        logger.info(
            event_type.value,
            rule_id=rule_id,
            user_id=user_id,
            decision=decision.value,
            current_count=outcome.current_count,
            required_count=outcome.required_count,
        )
        await self.events.publish_event(
            GovernanceEvent(
                event_type=event_type,
                entity_type=AuditEntityType.rule.value,
                entity_id=rule_id,
                team_id=rule.team_id,
                actor_id=user_id,
                payload={
                    "name": rule.name,
                    "decision": decision.value,
                    "status": after.status.value,
                    "current_count": outcome.current_count,
                    "required_count": outcome.required_count,
                },
                occurred_at=now,
            )
        )
        return ApprovalStatus(
            rule_id=rule_id,
            status=after.status,
            required_count=outcome.required_count,
            current_count=outcome.current_count,
            approvals=records,
        )

    async def approve(self, rule_id: str, user_id: str, comment: str | None = None) -> ApprovalStatus:
        return await self.record_decision(rule_id, user_id, ApprovalDecision.approved, comment)

    async def reject(self, rule_id: str, user_id: str, comment: str | None) -> ApprovalStatus:
        return await self.record_decision(rule_id, user_id, ApprovalDecision.rejected, comment)

    async def get_approval_status(self, rule_id: str) -> ApprovalStatus:
        rule = await self._get_rule(rule_id)
        outcome, records = await self._outcome(rule)
        return ApprovalStatus(
            rule_id=rule_id,
            status=rule.status,
            required_count=outcome.required_count,
            current_count=outcome.current_count,
            approvals=records,
        )

    async def list_pending(
        self, team_id: str | None = None, scope: TargetLayer | None = None
    ) -> list[Rule]:
        return await self.rules.list(team_id=team_id, status=RuleStatus.pending, target_layer=scope)
