from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from edictflow.core.clock import utcnow
from edictflow.domain.models import (
    ApprovalDecision,
    AuditAction,
    AuditEntityType,
    ChangeRequestStatus,
    EnforcementMode,
    ExceptionStatus,
    ExceptionType,
    RuleStatus,
    TargetLayer,
)


class Base(DeclarativeBase):
    pass


class TeamModel(Base):
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    inherit_global_rules: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class CategoryModel(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class RuleModel(Base):
    """Governance rule, organization/team/project scoped."""

    __tablename__ = "rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text)
    target_layer: Mapped[TargetLayer] = mapped_column(
        Enum(TargetLayer, name="target_layer", native_enum=False), nullable=False
    )
    category_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("categories.id", ondelete="SET NULL")
    )
    team_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("teams.id"), index=True)
    force: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[RuleStatus] = mapped_column(
        Enum(RuleStatus, name="rule_status", native_enum=False), nullable=False, index=True
    )
    enforcement_mode: Mapped[EnforcementMode] = mapped_column(
        Enum(EnforcementMode, name="enforcement_mode", native_enum=False), nullable=False
    )
    temporary_timeout_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    priority_weight: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overridable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_start: Mapped[datetime | None] = mapped_column(DateTime)
    effective_end: Mapped[datetime | None] = mapped_column(DateTime)
    triggers: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255))
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    approval_round: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revises_rule_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("idx_rules_team_status", "team_id", "status"),)


class RuleApprovalModel(Base):
    """One approver's decision on a rule, append-only."""

    __tablename__ = "rule_approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[ApprovalDecision] = mapped_column(
        Enum(ApprovalDecision, name="approval_decision", native_enum=False), nullable=False
    )
    comment: Mapped[str | None] = mapped_column(Text)
    approval_round: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("rule_id", "user_id", "approval_round", name="uq_rule_user_round"),
        Index("idx_rule_approvals_rule_round", "rule_id", "approval_round"),
    )


class ApprovalConfigModel(Base):
    __tablename__ = "approval_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scope: Mapped[TargetLayer] = mapped_column(
        Enum(TargetLayer, name="approval_scope", native_enum=False), nullable=False
    )
    team_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("teams.id"))
    required_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("scope", "team_id", name="uq_approval_scope_team"),)


class ChangeRequestModel(Base):
    """Out-of-band file change reported by the detector."""

    __tablename__ = "change_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("rules.id"), nullable=False)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id"), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(255))
    user_id: Mapped[str | None] = mapped_column(String(255))
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    modified_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    diff_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    enforcement_mode: Mapped[EnforcementMode] = mapped_column(
        Enum(EnforcementMode, name="change_enforcement_mode", native_enum=False), nullable=False
    )
    timeout_hours: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[ChangeRequestStatus] = mapped_column(
        Enum(ChangeRequestStatus, name="change_request_status", native_enum=False),
        nullable=False,
    )
    timeout_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    resolved_by: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        Index("idx_change_requests_status_timeout", "status", "timeout_at"),
        Index("idx_change_requests_team_status", "team_id", "status"),
        Index("idx_change_requests_file", "team_id", "rule_id", "file_path"),
    )


class ExceptionRequestModel(Base):
    __tablename__ = "exception_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    change_request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("change_requests.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(255))
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    exception_type: Mapped[ExceptionType] = mapped_column(
        Enum(ExceptionType, name="exception_type", native_enum=False), nullable=False
    )
    status: Mapped[ExceptionStatus] = mapped_column(
        Enum(ExceptionStatus, name="exception_status", native_enum=False), nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    resolved_by: Mapped[str | None] = mapped_column(String(255))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_exception_requests_change_status", "change_request_id", "status"),
        Index("idx_exception_requests_status_expires", "status", "expires_at"),
    )


class AuditEntryModel(Base):
    """Append-only audit trail. Rows are never updated or deleted."""

    __tablename__ = "audit_entries"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    entity_type: Mapped[AuditEntityType] = mapped_column(
        Enum(AuditEntityType, name="audit_entity_type", native_enum=False), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action", native_enum=False), nullable=False, index=True
    )
    actor_id: Mapped[str | None] = mapped_column(String(255), index=True)
    actor_name: Mapped[str | None] = mapped_column(String(255))
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )

    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id", "created_at"),)
