from unittest.mock import patch

import pytest
from sqlalchemy import Select
from sqlalchemy.dialects import postgresql

from edictflow.approvals.service import ApprovalService
from edictflow.core.errors import DuplicateApproval, InvalidState, MissingComment, NotFound
from edictflow.db.repositories import ApprovalConfigRepository, AuditFilters, AuditRepository
from edictflow.domain.models import ApprovalConfig, AuditAction, RuleStatus, TargetLayer
from edictflow.events import EventType
from edictflow.rules.service import RuleDraft


@pytest.fixture
async def org_rule(rule_service):
    """A global rule under review; organization scope needs two approvals."""
    rule = await rule_service.create_rule(
        RuleDraft(name="No force pushes", content="Protect main", target_layer=TargetLayer.organization),
        "author",
    )
    return await rule_service.submit_rule(rule.id, "author")


@pytest.fixture
async def team_rule(team, rule_service):
    rule = await rule_service.create_rule(
        RuleDraft(name="Lint", content="Run ruff", target_layer=TargetLayer.team, team_id=team.id),
        "author",
    )
    return await rule_service.submit_rule(rule.id, "author")


@pytest.mark.asyncio
async def test_two_approvals_reach_organization_quorum(session, bus, org_rule, approval_service):
    first = await approval_service.approve(org_rule.id, "x")

    assert first.status is RuleStatus.pending
    assert (first.current_count, first.required_count) == (1, 2)
    assert bus.events[-1].event_type is EventType.approval_recorded

    second = await approval_service.approve(org_rule.id, "y", comment="lgtm")

    assert second.status is RuleStatus.approved
    assert second.current_count == 2
    assert {a.user_id for a in second.approvals} == {"x", "y"}
    assert bus.events[-1].event_type is EventType.rule_approved

    rule = await approval_service.rules.get(org_rule.id)
    assert rule.status is RuleStatus.approved
    assert rule.approved_at is not None

    entries, _ = await AuditRepository(session).list(AuditFilters(action=AuditAction.approved))
    assert len(entries) == 2
    assert entries[0].metadata["current_count"] == 2
    assert entries[0].changes["status"].new == "approved"
    assert "status" not in entries[1].changes


@pytest.mark.asyncio
async def test_same_user_cannot_vote_twice(org_rule, approval_service):
    await approval_service.approve(org_rule.id, "x")

    with pytest.raises(DuplicateApproval):
        await approval_service.approve(org_rule.id, "x")
    with pytest.raises(DuplicateApproval):
        await approval_service.reject(org_rule.id, "x", "changed my mind")

    status = await approval_service.get_approval_status(org_rule.id)
    assert status.current_count == 1
    assert status.status is RuleStatus.pending


@pytest.mark.asyncio
async def test_rejection_requires_comment(bus, org_rule, approval_service):
    events_before = len(bus.events)

    with pytest.raises(MissingComment):
        await approval_service.reject(org_rule.id, "x", "  ")

    status = await approval_service.get_approval_status(org_rule.id)
    assert status.status is RuleStatus.pending
    assert status.approvals == []
    assert len(bus.events) == events_before


@pytest.mark.asyncio
async def test_single_rejection_closes_review(bus, org_rule, approval_service, rule_service):
    await approval_service.approve(org_rule.id, "x")

    result = await approval_service.reject(org_rule.id, "y", "too broad")

    assert result.status is RuleStatus.rejected
    assert bus.events[-1].event_type is EventType.rule_rejected
    with pytest.raises(InvalidState):
        await approval_service.approve(org_rule.id, "z")

    # Resubmission opens a new round; earlier votes no longer count.
    resubmitted = await rule_service.submit_rule(org_rule.id, "author")
    assert resubmitted.approval_round == 2
    status = await approval_service.get_approval_status(org_rule.id)
    assert status.current_count == 0
    again = await approval_service.approve(org_rule.id, "x")
    assert again.status is RuleStatus.pending


@pytest.mark.asyncio
async def test_only_pending_rules_take_decisions(team, rule_service, approval_service):
    draft = await rule_service.create_rule(
        RuleDraft(name="d", content="c", target_layer=TargetLayer.team, team_id=team.id), "author"
    )

    with pytest.raises(InvalidState):
        await approval_service.approve(draft.id, "x")
    with pytest.raises(NotFound):
        await approval_service.approve("missing", "x")


@pytest.mark.asyncio
async def test_approval_config_overrides_default(session, clock, team, team_rule, approval_service):
    await ApprovalConfigRepository(session).create(
        ApprovalConfig(
            id="cfg-1", scope=TargetLayer.team, team_id=team.id, required_count=2, created_at=clock()
        )
    )
    await session.commit()

    first = await approval_service.approve(team_rule.id, "x")

    assert first.status is RuleStatus.pending
    assert first.required_count == 2


@pytest.mark.asyncio
async def test_list_pending_by_scope(org_rule, team_rule, approval_service):
    assert {r.id for r in await approval_service.list_pending()} == {org_rule.id, team_rule.id}
    assert [r.id for r in await approval_service.list_pending(scope=TargetLayer.team)] == [
        team_rule.id
    ]

    await approval_service.approve(team_rule.id, "x")

    assert [r.id for r in await approval_service.list_pending()] == [org_rule.id]


@pytest.mark.asyncio
async def test_decision_locks_rule_row_before_counting(session, org_rule, approval_service):
    statements = []
    execute = session.execute

    async def recording_execute(statement, *args, **kwargs):
        statements.append(statement)
        return await execute(statement, *args, **kwargs)

    with patch.object(session, "execute", side_effect=recording_execute):
        await approval_service.approve(org_rule.id, "x")

    first = statements[0]
    assert isinstance(first, Select)
    assert "FOR UPDATE" in str(first.compile(dialect=postgresql.dialect()))


@pytest.mark.asyncio
async def test_approvers_in_separate_sessions_reach_quorum(
    session_factory, bus, settings, clock, org_rule
):
    async with session_factory() as first_session, session_factory() as second_session:
        first = ApprovalService(first_session, bus, settings, clock)
        second = ApprovalService(second_session, bus, settings, clock)

        one = await first.approve(org_rule.id, "x")
        two = await second.approve(org_rule.id, "y")

        assert one.status is RuleStatus.pending
        assert two.status is RuleStatus.approved
        assert two.current_count == 2

        with pytest.raises(InvalidState):
            await first.approve(org_rule.id, "z")

    assert [e.event_type for e in bus.events[-2:]] == [
        EventType.approval_recorded,
        EventType.rule_approved,
    ]
