"""
Trigger matching for rules.

A rule applies to a target when any of its triggers matches: a path glob
against the file path, a context type against the detected contexts, or a tag
against the project tags. A rule without triggers always applies.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Sequence

from edictflow.domain.models import Rule, Trigger, TriggerType


@dataclass(frozen=True, slots=True)
class MatchContext:
    file_path: str | None = None
    contexts: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a path glob into a regex.

    `*` and `?` stay within one path segment, `**` crosses segments, and
    `**/` or a trailing `/**` may match zero segments.
    """
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern[i:] == "/**":
            parts.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts))


def match_path(pattern: str, path: str) -> bool:
    if not pattern or not path:
        return False
    return _compile_glob(pattern).fullmatch(path) is not None


def _match_any(wanted: Iterable[str], present: Iterable[str]) -> bool:
    present_lower = {p.lower() for p in present}
    return any(w.lower() in present_lower for w in wanted)


def trigger_matches(trigger: Trigger, ctx: MatchContext) -> bool:
    if trigger.type is TriggerType.path:
        return ctx.file_path is not None and match_path(trigger.pattern or "", ctx.file_path)
    if trigger.type is TriggerType.context:
        return _match_any(trigger.context_types, ctx.contexts)
    return _match_any(trigger.tags, ctx.tags)


def rule_applies(rule: Rule, ctx: MatchContext) -> bool:
    if not rule.triggers:
        return True
    return any(trigger_matches(t, ctx) for t in rule.triggers)


class RuleMatcher:
    """Filters a rule set down to the rules applying to one target."""

    def __init__(self, rules: Sequence[Rule]) -> None:
        self.rules = list(rules)

    def match(self, ctx: MatchContext) -> list[Rule]:
        """Matching rules, most specific trigger first."""
        matched = [rule for rule in self.rules if rule_applies(rule, ctx)]
        return sorted(matched, key=lambda r: r.max_specificity(), reverse=True)
