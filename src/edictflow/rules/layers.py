"""
Layered rule resolution.

Merges the approved rules visible to a team or project into the ordered,
effective rule set: organization rules first, then team, then project; inside
a layer by priority weight (descending) and creation time (ascending).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

import structlog

from edictflow.domain.models import Rule
from edictflow.rules.matcher import MatchContext, rule_applies

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class TargetContext:
    """The team/project a rule set is resolved for."""

    team_id: str | None = None
    inherit_global_rules: bool = True
    match: MatchContext = field(default_factory=MatchContext)


def precedence_key(rule: Rule) -> tuple[int, int, datetime, str]:
    return (rule.target_layer.precedence, -rule.priority_weight, rule.created_at, rule.id)


def same_surface(higher: Rule, lower: Rule) -> bool:
    """Whether two rules govern the same thing: same category or same triggers."""
    if higher.category_id is not None and higher.category_id == lower.category_id:
        return True
    return higher.trigger_surface() == lower.trigger_surface()


def is_visible(rule: Rule, target: TargetContext) -> bool:
    if rule.is_global:
        # Forced global rules ignore a team's opt-out.
        return rule.force or target.inherit_global_rules
    return rule.team_id == target.team_id


def overriding_rule(rule: Rule, kept: Iterable[Rule]) -> Rule | None:
    """First higher-precedence, non-overridable rule that shadows `rule`."""
    if rule.is_global:
        return None
    for higher in kept:
        if higher.target_layer.precedence >= rule.target_layer.precedence:
            continue
        if not higher.overridable and same_surface(higher, rule):
            return higher
    return None


def resolve_effective(
    target: TargetContext,
    candidates: Iterable[Rule],
    now: datetime,
) -> list[Rule]:
    """Ordered effective rule set for a target."""
    applicable = [
        rule
        for rule in candidates
        if rule.is_active
        and rule.is_effective(now)
        and is_visible(rule, target)
        and rule_applies(rule, target.match)
    ]

    effective: list[Rule] = []
    for rule in sorted(applicable, key=precedence_key):
        shadow = overriding_rule(rule, effective)
        if shadow is not None:
            logger.debug(
                "rule_overridden",
                rule_id=rule.id,
                overridden_by=shadow.id,
                layer=rule.target_layer.value,
            )
            continue
        effective.append(rule)
    return effective
