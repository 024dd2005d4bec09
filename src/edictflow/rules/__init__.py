"""Rule model operations: trigger matching, layer resolution, rendering and lifecycle."""

from edictflow.rules.layers import TargetContext, resolve_effective
from edictflow.rules.matcher import MatchContext, RuleMatcher, match_path, rule_applies
from edictflow.rules.merge import (
    ManagedRender,
    detect_tampering,
    merge_with_existing,
    render_managed_section,
)

__all__ = [
    "ManagedRender",
    "MatchContext",
    "RuleMatcher",
    "TargetContext",
    "detect_tampering",
    "match_path",
    "merge_with_existing",
    "render_managed_section",
    "resolve_effective",
    "rule_applies",
]
