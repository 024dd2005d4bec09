"""
Repositories for governance entities.

Each repository wraps one table, converts ORM rows to pydantic domain models,
and exposes compare-and-set status transitions: an UPDATE guarded by the
expected source status whose row count tells the caller whether it won.
Repositories flush but never commit; services own the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edictflow.db import models as db_models
from edictflow.domain.models import (
    ApprovalConfig,
    ApprovalRecord,
    AuditAction,
    AuditEntityType,
    AuditEntry,
    Category,
    ChangeRequest,
    ChangeRequestStatus,
    ChangeValue,
    ExceptionRequest,
    ExceptionStatus,
    ExceptionType,
    Rule,
    RuleStatus,
    TargetLayer,
    Team,
)


async def _compare_and_set(
    session: AsyncSession,
    model: Any,
    entity_id: str,
    expected: Iterable[Any],
    values: dict[str, Any],
) -> bool:
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status.in_(list(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1  # type: ignore[attr-defined]


@dataclass(slots=True)
class TeamRepository:
    session: AsyncSession

    async def create(self, team: Team) -> None:
        self.session.add(
            db_models.TeamModel(
                id=team.id, name=team.name, inherit_global_rules=team.inherit_global_rules
            )
        )
        await self.session.flush()

    async def get(self, team_id: str) -> Team | None:
        row = await self.session.get(db_models.TeamModel, team_id, populate_existing=True)
        if row is None:
            return None
        return Team(id=row.id, name=row.name, inherit_global_rules=row.inherit_global_rules)


@dataclass(slots=True)
class RuleRepository:
    """Persistence helpers for rule lifecycle."""

    session: AsyncSession

    @staticmethod
    def _values(rule: Rule) -> dict[str, Any]:
        values = rule.model_dump(exclude={"triggers"})
        values["triggers"] = [t.model_dump(mode="json") for t in rule.triggers]
        return values

    @staticmethod
    def _to_domain(row: db_models.RuleModel) -> Rule:
        return Rule.model_validate(row, from_attributes=True)

    async def create(self, rule: Rule) -> None:
        self.session.add(db_models.RuleModel(**self._values(rule)))
        await self.session.flush()

    async def get(self, rule_id: str) -> Rule | None:
        row = await self.session.get(db_models.RuleModel, rule_id, populate_existing=True)
        return self._to_domain(row) if row else None

    async def get_for_update(self, rule_id: str) -> Rule | None:
        """Load a rule and hold its row lock until the transaction ends."""
        stmt = (
            select(db_models.RuleModel)
            .where(db_models.RuleModel.id == rule_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def list(
        self,
        team_id: str | None = None,
        status: RuleStatus | None = None,
        target_layer: TargetLayer | None = None,
    ) -> list[Rule]:
        stmt = select(db_models.RuleModel)
        if team_id is not None:
            stmt = stmt.where(db_models.RuleModel.team_id == team_id)
        if status is not None:
            stmt = stmt.where(db_models.RuleModel.status == status)
        if target_layer is not None:
            stmt = stmt.where(db_models.RuleModel.target_layer == target_layer)
        stmt = stmt.order_by(db_models.RuleModel.created_at, db_models.RuleModel.id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(row) for row in result.scalars().all()]

    async def list_candidates(self, team_id: str | None) -> list[Rule]:
        """Approved rules owned by the team plus all approved global rules."""
        owner = db_models.RuleModel.team_id.is_(None)
        if team_id is not None:
            owner = owner | (db_models.RuleModel.team_id == team_id)
        stmt = select(db_models.RuleModel).where(
            db_models.RuleModel.status == RuleStatus.approved, owner
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(row) for row in result.scalars().all()]

    async def save(self, rule: Rule, expected: Iterable[RuleStatus]) -> bool:
        """Overwrite a rule's definition if it is still in one of `expected`."""
        values = self._values(rule)
        values.pop("id")
        values.pop("created_at")
        return await _compare_and_set(
            self.session, db_models.RuleModel, rule.id, expected, values
        )

    async def transition_status(
        self,
        rule_id: str,
        expected: RuleStatus,
        new_status: RuleStatus,
        **values: Any,
    ) -> bool:
        return await _compare_and_set(
            self.session,
            db_models.RuleModel,
            rule_id,
            [expected],
            {"status": new_status, **values},
        )

    async def delete(self, rule_id: str, expected: RuleStatus = RuleStatus.draft) -> bool:
        row = await self.session.get(db_models.RuleModel, rule_id, populate_existing=True)
        if row is None or row.status is not expected:
            return False
        await self.session.delete(row)
        await self.session.flush()
        return True


@dataclass(slots=True)
class ApprovalRepository:
    """Append-only approval decisions."""

    session: AsyncSession

    @staticmethod
    def _to_domain(row: db_models.RuleApprovalModel) -> ApprovalRecord:
        return ApprovalRecord(
            id=row.id,
            rule_id=row.rule_id,
            user_id=row.user_id,
            decision=row.decision,
            comment=row.comment,
            approval_round=row.approval_round,
            created_at=row.created_at,
        )

    async def has_decided(self, rule_id: str, user_id: str, approval_round: int) -> bool:
        stmt = select(func.count()).where(
            db_models.RuleApprovalModel.rule_id == rule_id,
            db_models.RuleApprovalModel.user_id == user_id,
            db_models.RuleApprovalModel.approval_round == approval_round,
        )
        return bool((await self.session.execute(stmt)).scalar_one())

    async def create(self, record: ApprovalRecord) -> None:
        self.session.add(db_models.RuleApprovalModel(**record.model_dump()))
        await self.session.flush()

    async def list_round(self, rule_id: str, approval_round: int) -> list[ApprovalRecord]:
        stmt = (
            select(db_models.RuleApprovalModel)
            .where(
                db_models.RuleApprovalModel.rule_id == rule_id,
                db_models.RuleApprovalModel.approval_round == approval_round,
            )
            .order_by(db_models.RuleApprovalModel.created_at, db_models.RuleApprovalModel.id)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]


@dataclass(slots=True)
class ApprovalConfigRepository:
    session: AsyncSession

    async def create(self, config: ApprovalConfig) -> None:
        self.session.add(db_models.ApprovalConfigModel(**config.model_dump()))
        await self.session.flush()

    async def get_for_scope(self, scope: TargetLayer, team_id: str | None) -> ApprovalConfig | None:
        """Most specific config: team+scope first, then scope-wide."""
        model = db_models.ApprovalConfigModel
        candidates = [model.team_id.is_(None)]
        if team_id is not None:
            candidates.insert(0, model.team_id == team_id)
        for owner in candidates:
            stmt = select(model).where(model.scope == scope, owner)
            row = (await self.session.execute(stmt)).scalars().first()
            if row is not None:
                return ApprovalConfig(
                    id=row.id,
                    scope=row.scope,
                    team_id=row.team_id,
                    required_count=row.required_count,
                    created_at=row.created_at,
                )
        return None


@dataclass(slots=True)
class ChangeRequestRepository:
    """Persistence helpers for change-request enforcement."""

    session: AsyncSession

    @staticmethod
    def _to_domain(row: db_models.ChangeRequestModel) -> ChangeRequest:
        return ChangeRequest.model_validate(row, from_attributes=True)

    async def create(self, change: ChangeRequest) -> None:
        self.session.add(db_models.ChangeRequestModel(**change.model_dump()))
        await self.session.flush()

    async def get(self, change_request_id: str) -> ChangeRequest | None:
        row = await self.session.get(
            db_models.ChangeRequestModel, change_request_id, populate_existing=True
        )
        return self._to_domain(row) if row else None

    async def find_pending_for_file(
        self, team_id: str, rule_id: str, file_path: str
    ) -> ChangeRequest | None:
        model = db_models.ChangeRequestModel
        stmt = (
            select(model)
            .where(
                model.team_id == team_id,
                model.rule_id == rule_id,
                model.file_path == file_path,
                model.status == ChangeRequestStatus.pending,
            )
            .order_by(model.created_at.desc())
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalars().first()
        return self._to_domain(row) if row else None

    async def update_diff(
        self, change_request_id: str, modified_hash: str, diff_content: str
    ) -> bool:
        return await _compare_and_set(
            self.session,
            db_models.ChangeRequestModel,
            change_request_id,
            [ChangeRequestStatus.pending],
            {"modified_hash": modified_hash, "diff_content": diff_content},
        )

    async def list(
        self,
        team_id: str | None = None,
        status: ChangeRequestStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ChangeRequest]:
        model = db_models.ChangeRequestModel
        stmt = select(model)
        if team_id is not None:
            stmt = stmt.where(model.team_id == team_id)
        if status is not None:
            stmt = stmt.where(model.status == status)
        stmt = stmt.order_by(model.created_at.desc(), model.id).limit(limit).offset(offset)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(row) for row in result.scalars().all()]

    async def find_overdue(self, now: datetime, limit: int = 100) -> list[ChangeRequest]:
        """Pending requests whose persisted deadline has passed."""
        model = db_models.ChangeRequestModel
        stmt = (
            select(model)
            .where(
                model.status == ChangeRequestStatus.pending,
                model.timeout_at.is_not(None),
                model.timeout_at <= now,
            )
            .order_by(model.timeout_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def transition(
        self,
        change_request_id: str,
        expected: Iterable[ChangeRequestStatus],
        new_status: ChangeRequestStatus,
        **values: Any,
    ) -> bool:
        return await _compare_and_set(
            self.session,
            db_models.ChangeRequestModel,
            change_request_id,
            expected,
            {"status": new_status, **values},
        )


@dataclass(slots=True)
class ExceptionRequestRepository:
    session: AsyncSession

    @staticmethod
    def _to_domain(row: db_models.ExceptionRequestModel) -> ExceptionRequest:
        return ExceptionRequest.model_validate(row, from_attributes=True)

    async def create(self, exception: ExceptionRequest) -> None:
        self.session.add(db_models.ExceptionRequestModel(**exception.model_dump()))
        await self.session.flush()

    async def get(self, exception_id: str) -> ExceptionRequest | None:
        row = await self.session.get(
            db_models.ExceptionRequestModel, exception_id, populate_existing=True
        )
        return self._to_domain(row) if row else None

    async def find_active(self, change_request_id: str, now: datetime) -> ExceptionRequest | None:
        model = db_models.ExceptionRequestModel
        stmt = (
            select(model)
            .where(
                model.change_request_id == change_request_id,
                model.status.in_([ExceptionStatus.pending, ExceptionStatus.approved]),
                model.expired_at.is_(None),
            )
            .order_by(model.created_at.desc())
            .execution_options(populate_existing=True)
        )
        for row in (await self.session.execute(stmt)).scalars().all():
            exception = self._to_domain(row)
            if exception.is_active(now):
                return exception
        return None

    async def list(
        self,
        team_id: str | None = None,
        status: ExceptionStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExceptionRequest]:
        model = db_models.ExceptionRequestModel
        stmt = select(model)
        if team_id is not None:
            stmt = stmt.join(
                db_models.ChangeRequestModel,
                db_models.ChangeRequestModel.id == model.change_request_id,
            ).where(db_models.ChangeRequestModel.team_id == team_id)
        if status is not None:
            stmt = stmt.where(model.status == status)
        stmt = stmt.order_by(model.created_at.desc(), model.id).limit(limit).offset(offset)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_domain(row) for row in result.scalars().all()]

    async def find_expired(self, now: datetime, limit: int = 100) -> list[ExceptionRequest]:
        """Approved time-limited exceptions past expiry that were not yet processed."""
        model = db_models.ExceptionRequestModel
        stmt = (
            select(model)
            .where(
                model.status == ExceptionStatus.approved,
                model.exception_type == ExceptionType.time_limited,
                model.expires_at.is_not(None),
                model.expires_at <= now,
                model.expired_at.is_(None),
            )
            .order_by(model.expires_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def transition(
        self,
        exception_id: str,
        expected: ExceptionStatus,
        new_status: ExceptionStatus,
        **values: Any,
    ) -> bool:
        return await _compare_and_set(
            self.session,
            db_models.ExceptionRequestModel,
            exception_id,
            [expected],
            {"status": new_status, **values},
        )

    async def mark_expired(self, exception_id: str, now: datetime) -> bool:
        model = db_models.ExceptionRequestModel
        stmt = (
            update(model)
            .where(
                model.id == exception_id,
                model.status == ExceptionStatus.approved,
                model.expired_at.is_(None),
            )
            .values(expired_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]


@dataclass(slots=True)
class AuditFilters:
    entity_type: AuditEntityType | None = None
    entity_id: str | None = None
    actor_id: str | None = None
    action: AuditAction | None = None
    from_: datetime | None = None
    to: datetime | None = None


@dataclass(slots=True)
class AuditRepository:
    """Audit trail storage. Insert-only."""

    session: AsyncSession

    @staticmethod
    def _to_domain(row: db_models.AuditEntryModel) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            action=row.action,
            actor_id=row.actor_id,
            actor_name=row.actor_name,
            changes={k: ChangeValue(**v) for k, v in (row.changes or {}).items()},
            metadata=row.entry_metadata or {},
            created_at=row.created_at,
        )

    async def create(self, entry: AuditEntry) -> None:
        self.session.add(
            db_models.AuditEntryModel(
                id=entry.id,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                action=entry.action,
                actor_id=entry.actor_id,
                actor_name=entry.actor_name,
                changes={k: v.model_dump(mode="json") for k, v in entry.changes.items()},
                entry_metadata=entry.metadata,
                created_at=entry.created_at,
            )
        )
        await self.session.flush()

    async def get(self, entry_id: str) -> AuditEntry | None:
        stmt = select(db_models.AuditEntryModel).where(db_models.AuditEntryModel.id == entry_id)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def list(
        self,
        filters: AuditFilters | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        """Newest first, with the total count of matching entries."""
        model = db_models.AuditEntryModel
        f = filters or AuditFilters()
        conditions = []
        if f.entity_type is not None:
            conditions.append(model.entity_type == f.entity_type)
        if f.entity_id is not None:
            conditions.append(model.entity_id == f.entity_id)
        if f.actor_id is not None:
            conditions.append(model.actor_id == f.actor_id)
        if f.action is not None:
            conditions.append(model.action == f.action)
        if f.from_ is not None:
            conditions.append(model.created_at >= f.from_)
        if f.to is not None:
            conditions.append(model.created_at <= f.to)

        total = (
            await self.session.execute(select(func.count()).select_from(model).where(*conditions))
        ).scalar_one()
        stmt = (
            select(model)
            .where(*conditions)
            .order_by(model.created_at.desc(), model.seq.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._to_domain(row) for row in rows], total

    async def entity_history(self, entity_type: AuditEntityType, entity_id: str) -> list[AuditEntry]:
        """All entries for one entity, oldest first."""
        model = db_models.AuditEntryModel
        stmt = (
            select(model)
            .where(model.entity_type == entity_type, model.entity_id == entity_id)
            .order_by(model.created_at, model.seq)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._to_domain(row) for row in rows]


@dataclass(slots=True)
class CategoryRepository:
    session: AsyncSession

    @staticmethod
    def _to_domain(row: db_models.CategoryModel) -> Category:
        return Category.model_validate(row, from_attributes=True)

    async def create(self, category: Category) -> None:
        self.session.add(db_models.CategoryModel(**category.model_dump()))
        await self.session.flush()

    async def get(self, category_id: str) -> Category | None:
        row = await self.session.get(db_models.CategoryModel, category_id, populate_existing=True)
        return self._to_domain(row) if row else None

    async def get_by_name(self, name: str) -> Category | None:
        stmt = select(db_models.CategoryModel).where(db_models.CategoryModel.name == name)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def list(self) -> list[Category]:
        stmt = select(db_models.CategoryModel).order_by(
            db_models.CategoryModel.display_order, db_models.CategoryModel.name
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [self._to_domain(row) for row in rows]

    async def delete(self, category_id: str) -> list[str]:
        """Delete a category, detaching its rules. Returns the detached rule ids."""
        rule_ids = list(
            (
                await self.session.execute(
                    select(db_models.RuleModel.id).where(
                        db_models.RuleModel.category_id == category_id
                    )
                )
            ).scalars()
        )
        await self.session.execute(
            update(db_models.RuleModel)
            .where(db_models.RuleModel.category_id == category_id)
            .values(category_id=None)
            .execution_options(synchronize_session=False)
        )
        row = await self.session.get(db_models.CategoryModel, category_id)
        if row is not None:
            await self.session.delete(row)
        await self.session.flush()
        return rule_ids
