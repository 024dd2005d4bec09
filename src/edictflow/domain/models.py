from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from edictflow.core.errors import ValidationError

MIN_TIMEOUT_HOURS = 1
MAX_TIMEOUT_HOURS = 168


class TargetLayer(StrEnum):
    """Rule layers, declared in precedence order (first wins)."""

    organization = "organization"
    team = "team"
    project = "project"

    @property
    def precedence(self) -> int:
        """Lower value means higher precedence."""
        return list(TargetLayer).index(self)


class RuleStatus(StrEnum):
    draft = "draft"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


RULE_TRANSITIONS: Mapping[RuleStatus, frozenset[RuleStatus]] = {
    RuleStatus.draft: frozenset({RuleStatus.pending}),
    RuleStatus.pending: frozenset({RuleStatus.approved, RuleStatus.rejected}),
    RuleStatus.rejected: frozenset({RuleStatus.pending}),
    RuleStatus.approved: frozenset(),
}


class EnforcementMode(StrEnum):
    block = "block"
    temporary = "temporary"
    warning = "warning"


class TriggerType(StrEnum):
    path = "path"
    context = "context"
    tag = "tag"


TRIGGER_SPECIFICITY: Mapping[TriggerType, int] = {
    TriggerType.path: 100,
    TriggerType.context: 50,
    TriggerType.tag: 10,
}


class Trigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TriggerType
    pattern: str | None = None
    context_types: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    @property
    def specificity(self) -> int:
        return TRIGGER_SPECIFICITY[self.type]

    def surface_key(self) -> tuple[str, ...]:
        """Normalized identity of what this trigger targets."""
        if self.type is TriggerType.path:
            return (self.type.value, self.pattern or "")
        if self.type is TriggerType.context:
            return (self.type.value, *sorted(c.lower() for c in self.context_types))
        return (self.type.value, *sorted(t.lower() for t in self.tags))


class Rule(BaseModel):
    id: str
    name: str
    content: str
    description: str | None = None
    target_layer: TargetLayer
    category_id: str | None = None
    team_id: str | None = None
    force: bool = False
    status: RuleStatus = RuleStatus.draft
    enforcement_mode: EnforcementMode = EnforcementMode.block
    temporary_timeout_hours: int = 24
    priority_weight: int = 0
    overridable: bool = True
    effective_start: datetime | None = None
    effective_end: datetime | None = None
    triggers: list[Trigger] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_by: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    approval_round: int = 0
    revises_rule_id: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_global(self) -> bool:
        return not self.team_id

    @property
    def is_active(self) -> bool:
        return self.status is RuleStatus.approved

    @property
    def is_mutable(self) -> bool:
        return self.status in (RuleStatus.draft, RuleStatus.rejected)

    @property
    def can_submit(self) -> bool:
        return RuleStatus.pending in RULE_TRANSITIONS[self.status]

    def is_effective(self, now: datetime) -> bool:
        if self.effective_start is not None and now < self.effective_start:
            return False
        if self.effective_end is not None and now > self.effective_end:
            return False
        return True

    def max_specificity(self) -> int:
        return max((t.specificity for t in self.triggers), default=0)

    def trigger_surface(self) -> frozenset[tuple[str, ...]]:
        return frozenset(t.surface_key() for t in self.triggers)

    def validate_definition(self) -> None:
        """Check structural invariants; raises ValidationError."""
        if self.is_global:
            if self.target_layer is not TargetLayer.organization:
                raise ValidationError(
                    "global rules must target the organization layer",
                    {"rule_id": self.id, "target_layer": self.target_layer.value},
                )
        elif self.force:
            raise ValidationError("force flag is only valid for global rules", {"rule_id": self.id})
        if not MIN_TIMEOUT_HOURS <= self.temporary_timeout_hours <= MAX_TIMEOUT_HOURS:
            raise ValidationError(
                "temporary_timeout_hours must be between 1 and 168",
                {"temporary_timeout_hours": self.temporary_timeout_hours},
            )
        if self.priority_weight < 0:
            raise ValidationError("priority_weight must be non-negative")
        if (
            self.effective_start is not None
            and self.effective_end is not None
            and self.effective_start > self.effective_end
        ):
            raise ValidationError("effective_start must not be after effective_end")
        for trigger in self.triggers:
            if trigger.type is TriggerType.path and not trigger.pattern:
                raise ValidationError("path triggers require a pattern")
            if trigger.type is TriggerType.context and not trigger.context_types:
                raise ValidationError("context triggers require context_types")
            if trigger.type is TriggerType.tag and not trigger.tags:
                raise ValidationError("tag triggers require tags")


class ApprovalDecision(StrEnum):
    approved = "approved"
    rejected = "rejected"


class ApprovalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    rule_id: str
    user_id: str
    decision: ApprovalDecision
    comment: str | None = None
    approval_round: int = 1
    created_at: datetime


class ApprovalStatus(BaseModel):
    rule_id: str
    status: RuleStatus
    required_count: int
    current_count: int
    approvals: list[ApprovalRecord] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    id: str
    scope: TargetLayer
    required_count: int = Field(ge=1)
    team_id: str | None = None
    created_at: datetime


class ChangeRequestStatus(StrEnum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    auto_reverted = "auto_reverted"
    exception_granted = "exception_granted"


CHANGE_REQUEST_TRANSITIONS: Mapping[ChangeRequestStatus, frozenset[ChangeRequestStatus]] = {
    ChangeRequestStatus.pending: frozenset(
        {
            ChangeRequestStatus.approved,
            ChangeRequestStatus.rejected,
            ChangeRequestStatus.auto_reverted,
            ChangeRequestStatus.exception_granted,
        }
    ),
    ChangeRequestStatus.approved: frozenset({ChangeRequestStatus.exception_granted}),
    ChangeRequestStatus.rejected: frozenset({ChangeRequestStatus.exception_granted}),
    ChangeRequestStatus.auto_reverted: frozenset({ChangeRequestStatus.exception_granted}),
    # Re-armed when a time-limited exception expires.
    ChangeRequestStatus.exception_granted: frozenset({ChangeRequestStatus.pending}),
}


class ChangeRequest(BaseModel):
    id: str
    rule_id: str
    team_id: str
    agent_id: str | None = None
    user_id: str | None = None
    file_path: str
    original_hash: str
    modified_hash: str
    diff_content: str = ""
    enforcement_mode: EnforcementMode
    timeout_hours: int | None = None
    status: ChangeRequestStatus = ChangeRequestStatus.pending
    timeout_at: datetime | None = None
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is ChangeRequestStatus.pending

    def is_overdue(self, now: datetime) -> bool:
        return self.is_pending and self.timeout_at is not None and now >= self.timeout_at


class ExceptionType(StrEnum):
    time_limited = "time_limited"
    permanent = "permanent"


class ExceptionStatus(StrEnum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class ExceptionRequest(BaseModel):
    id: str
    change_request_id: str
    user_id: str | None = None
    justification: str
    exception_type: ExceptionType
    status: ExceptionStatus = ExceptionStatus.pending
    expires_at: datetime | None = None
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    expired_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        """Pending, or approved and not yet expired."""
        if self.status is ExceptionStatus.pending:
            return True
        if self.status is not ExceptionStatus.approved or self.expired_at is not None:
            return False
        return self.expires_at is None or now < self.expires_at


class AuditEntityType(StrEnum):
    rule = "rule"
    change_request = "change_request"
    exception_request = "exception_request"
    category = "category"
    team = "team"
    approval_config = "approval_config"
    user = "user"
    role = "role"


class AuditAction(StrEnum):
    created = "created"
    updated = "updated"
    deleted = "deleted"
    submitted = "submitted"
    approved = "approved"
    rejected = "rejected"
    deactivated = "deactivated"
    role_assigned = "role_assigned"
    role_removed = "role_removed"
    permission_added = "permission_added"
    permission_removed = "permission_removed"
    revised = "revised"
    auto_reverted = "auto_reverted"
    exception_granted = "exception_granted"
    denied = "denied"
    expired = "expired"


class ChangeValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    old: Any = None
    new: Any = None


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    entity_type: AuditEntityType
    entity_id: str
    action: AuditAction
    actor_id: str | None = None
    actor_name: str | None = None
    changes: dict[str, ChangeValue] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class Category(BaseModel):
    id: str
    name: str
    is_system: bool = False
    display_order: int = 0
    created_at: datetime
    updated_at: datetime


class Team(BaseModel):
    id: str
    name: str
    inherit_global_rules: bool = True
