"""
Managed section rendering.

The effective rule set is written into agent instruction files as a block
fenced by marker comments. Everything outside the markers belongs to the
file's owner and survives every re-render.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from pydantic import BaseModel

from edictflow.domain.models import Category, Rule

MANAGED_SECTION_START = "<!-- MANAGED BY EDICTFLOW - DO NOT EDIT -->"
MANAGED_SECTION_END = "<!-- END EDICTFLOW -->"
UNCATEGORIZED = "Uncategorized"


class ManagedRender(BaseModel):
    managed_section: str
    content: str
    tampered: bool


def _group_key(category: Category | None) -> tuple[int, int, str]:
    # Uncategorized rules go after every named category.
    if category is None:
        return (1, 0, "")
    return (0, category.display_order, category.name)


def render_managed_section(rules: Sequence[Rule], categories: Iterable[Category]) -> str:
    """
    Render rules as a managed block grouped by category.

    Categories are ordered by display order, then name. Within a category,
    rules are ordered by priority weight (descending); ties keep the order
    they were given in, so a resolved effective set keeps layer precedence.

    Args:
        rules: Effective rules, already filtered and ordered
        categories: Known categories; unknown category ids render as uncategorized

    Returns:
        The managed block including both markers, or "" when there are no rules
    """
    if not rules:
        return ""

    by_id = {category.id: category for category in categories}
    grouped: dict[str | None, list[Rule]] = {}
    for rule in rules:
        key = rule.category_id if rule.category_id in by_id else None
        grouped.setdefault(key, []).append(rule)

    parts = [MANAGED_SECTION_START]
    for key in sorted(grouped, key=lambda k: _group_key(by_id.get(k) if k else None)):
        name = by_id[key].name if key else UNCATEGORIZED
        parts.append(f"\n## {name}\n")
        for rule in sorted(grouped[key], key=lambda r: -r.priority_weight):
            tag = f"[{rule.target_layer.value.capitalize()}]"
            overridable = " (overridable)" if rule.overridable else ""
            parts.append(f"{tag} **{rule.name}**{overridable}\n{rule.content}")
    parts.append("\n" + MANAGED_SECTION_END)
    return "\n".join(parts)


def _section_bounds(content: str) -> tuple[int, int]:
    start = content.find(MANAGED_SECTION_START)
    if start == -1:
        return -1, -1
    return start, content.find(MANAGED_SECTION_END, start)


def merge_with_existing(existing: str, managed_section: str) -> str:
    """Replace the managed block in `existing`, or append one if it has none."""
    start, end = _section_bounds(existing)
    if start == -1:
        if existing and not existing.endswith("\n\n"):
            existing = existing.rstrip("\n") + "\n\n"
        return existing + managed_section

    after = existing[end + len(MANAGED_SECTION_END):] if end != -1 else ""
    return existing[:start] + managed_section + after


def extract_manual_content(content: str) -> tuple[str, str]:
    """Content before and after the managed block."""
    start, end = _section_bounds(content)
    if start == -1:
        return content, ""
    after = content[end + len(MANAGED_SECTION_END):] if end != -1 else ""
    return content[:start], after


def detect_tampering(content: str, expected_section: str) -> bool:
    """True when the managed block in `content` differs from what was rendered."""
    start, end = _section_bounds(content)
    if start == -1 or end == -1:
        return expected_section != ""
    return content[start : end + len(MANAGED_SECTION_END)] != expected_section


def render_into(
    existing: str, rules: Sequence[Rule], categories: Iterable[Category]
) -> ManagedRender:
    section = render_managed_section(rules, categories)
    return ManagedRender(
        managed_section=section,
        content=merge_with_existing(existing, section),
        tampered=detect_tampering(existing, section) if existing else False,
    )
