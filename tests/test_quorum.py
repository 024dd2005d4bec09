from datetime import datetime
from itertools import permutations
from unittest.mock import AsyncMock, MagicMock

import pytest

from edictflow.approvals.quorum import QuorumPolicy, derive_status
from edictflow.config import Settings
from edictflow.db.repositories import ApprovalConfigRepository
from edictflow.domain.models import (
    ApprovalConfig,
    ApprovalDecision,
    ApprovalRecord,
    Rule,
    RuleStatus,
    TargetLayer,
)

NOW = datetime(2026, 2, 1)


def vote(user: str, decision: ApprovalDecision) -> ApprovalRecord:
    return ApprovalRecord(
        id=f"vote-{user}",
        rule_id="rule-1",
        user_id=user,
        decision=decision,
        comment="no" if decision is ApprovalDecision.rejected else None,
        created_at=NOW,
    )


APPROVE = ApprovalDecision.approved
REJECT = ApprovalDecision.rejected


def test_required_count_two_scenario():
    first = derive_status([vote("x", APPROVE)], required_count=2)
    assert first.status is RuleStatus.pending
    assert first.current_count == 1

    second = derive_status([vote("x", APPROVE), vote("y", APPROVE)], required_count=2)
    assert second.status is RuleStatus.approved
    assert second.current_count == 2
    assert second.is_final


def test_single_rejection_short_circuits_quorum():
    outcome = derive_status([vote("x", APPROVE), vote("y", REJECT)], required_count=3)

    assert outcome.status is RuleStatus.rejected
    assert outcome.current_count == 1


def test_no_decisions_is_pending():
    outcome = derive_status([], required_count=1)

    assert outcome.status is RuleStatus.pending
    assert not outcome.is_final


@pytest.mark.parametrize(
    "decisions",
    [
        [APPROVE, APPROVE, REJECT],
        [APPROVE, APPROVE, APPROVE],
        [APPROVE, REJECT, REJECT],
        [APPROVE, APPROVE],
    ],
)
@pytest.mark.parametrize("required", [1, 2, 3])
def test_outcome_is_independent_of_order(decisions, required):
    records = [vote(f"user-{i}", d) for i, d in enumerate(decisions)]
    outcomes = {derive_status(list(p), required).status for p in permutations(records)}

    assert len(outcomes) == 1


@pytest.fixture
def configs():
    repo = MagicMock(spec=ApprovalConfigRepository)
    repo.get_for_scope = AsyncMock(return_value=None)
    return repo


def make_rule(layer: TargetLayer, team_id: str | None) -> Rule:
    return Rule(
        id="rule-1",
        name="r",
        content="c",
        target_layer=layer,
        team_id=team_id,
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.mark.asyncio
async def test_policy_falls_back_to_settings_per_scope(configs):
    settings = Settings(_env_file=None, required_approvals_organization=3, required_approvals_team=2)
    policy = QuorumPolicy(configs, settings)

    assert await policy.required_count(make_rule(TargetLayer.organization, None)) == 3
    assert await policy.required_count(make_rule(TargetLayer.team, "team-a")) == 2
    configs.get_for_scope.assert_awaited_with(TargetLayer.team, "team-a")


@pytest.mark.asyncio
async def test_policy_prefers_configured_count(configs):
    configs.get_for_scope.return_value = ApprovalConfig(
        id="cfg-1", scope=TargetLayer.team, team_id="team-a", required_count=4, created_at=NOW
    )
    policy = QuorumPolicy(configs, Settings(_env_file=None))

    assert await policy.required_count(make_rule(TargetLayer.team, "team-a")) == 4
