"""
Quorum accounting.

The status of a rule under review is derived from the decisions of its current
approval round alone. Any rejection rejects; otherwise the rule is approved
once approvals reach the required count. The result depends only on the set
of decisions, never on their order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from edictflow.config import Settings
from edictflow.db.repositories import ApprovalConfigRepository
from edictflow.domain.models import ApprovalDecision, ApprovalRecord, Rule, RuleStatus


@dataclass(frozen=True, slots=True)
class QuorumOutcome:
    status: RuleStatus
    current_count: int
    required_count: int

    @property
    def is_final(self) -> bool:
        return self.status is not RuleStatus.pending


def derive_status(records: Iterable[ApprovalRecord], required_count: int) -> QuorumOutcome:
    approvals = 0
    rejected = False
    for record in records:
        if record.decision is ApprovalDecision.rejected:
            rejected = True
        else:
            approvals += 1

    if rejected:
        status = RuleStatus.rejected
    elif approvals >= required_count:
        status = RuleStatus.approved
    else:
        status = RuleStatus.pending
    return QuorumOutcome(status=status, current_count=approvals, required_count=required_count)


class QuorumPolicy:
    """Required approval count for a rule's scope."""

    def __init__(self, configs: ApprovalConfigRepository, settings: Settings) -> None:
        self.configs = configs
        self.settings = settings

    async def required_count(self, rule: Rule) -> int:
        config = await self.configs.get_for_scope(rule.target_layer, rule.team_id)
        if config is not None:
            return config.required_count
        return self.settings.required_approvals_for(rule.target_layer.value)
