"""
Audit diff engine.

Computes field-level changes between two snapshots of an entity and renders
them for humans: scalar fields as an old/new pair, multi-line text as a
line diff aligned on the longest common subsequence of lines.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping, Sequence

from edictflow.domain.models import AuditEntry, ChangeValue


class LineKind(StrEnum):
    added = "added"
    removed = "removed"
    context = "context"


@dataclass(frozen=True, slots=True)
class DiffLine:
    kind: LineKind
    content: str


@dataclass(frozen=True, slots=True)
class FieldDiff:
    field: str
    old: Any
    new: Any
    lines: tuple[DiffLine, ...] | None = None

    @property
    def is_multiline(self) -> bool:
        return self.lines is not None


def compute_changes(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> dict[str, ChangeValue]:
    """Old/new pairs for every top-level field whose value differs."""
    before = before or {}
    after = after or {}
    changes: dict[str, ChangeValue] = {}
    for key in [*after.keys(), *(k for k in before.keys() if k not in after)]:
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = ChangeValue(old=old, new=new)
    return changes


def longest_common_subsequence(a: Sequence[str], b: Sequence[str]) -> list[str]:
    m, n = len(a), len(b)
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if a[i - 1] == b[j - 1]:
                dp[i][j] = dp[i - 1][j - 1] + 1
            else:
                dp[i][j] = max(dp[i - 1][j], dp[i][j - 1])

    result: list[str] = []
    i, j = m, n
    while i > 0 and j > 0:
        if a[i - 1] == b[j - 1]:
            result.append(a[i - 1])
            i -= 1
            j -= 1
        elif dp[i - 1][j] > dp[i][j - 1]:
            i -= 1
        else:
            j -= 1
    result.reverse()
    return result


def line_diff(old: str, new: str) -> list[DiffLine]:
    """Line diff of two texts; removals are emitted before additions."""
    old_lines = old.split("\n")
    new_lines = new.split("\n")
    lcs = longest_common_subsequence(old_lines, new_lines)

    out: list[DiffLine] = []
    oi = ni = li = 0
    while oi < len(old_lines) or ni < len(new_lines):
        common = lcs[li] if li < len(lcs) else None
        old_on_lcs = common is not None and oi < len(old_lines) and old_lines[oi] == common
        new_on_lcs = common is not None and ni < len(new_lines) and new_lines[ni] == common

        if old_on_lcs and new_on_lcs:
            out.append(DiffLine(LineKind.context, old_lines[oi]))
            oi += 1
            ni += 1
            li += 1
        elif old_on_lcs and ni < len(new_lines):
            out.append(DiffLine(LineKind.added, new_lines[ni]))
            ni += 1
        elif oi < len(old_lines):
            out.append(DiffLine(LineKind.removed, old_lines[oi]))
            oi += 1
        else:
            out.append(DiffLine(LineKind.added, new_lines[ni]))
            ni += 1
    return out


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def render_field(field: str, old: Any, new: Any) -> FieldDiff:
    old_text, new_text = _as_text(old), _as_text(new)
    if "\n" in old_text or "\n" in new_text:
        return FieldDiff(field, old, new, tuple(line_diff(old_text, new_text)))
    return FieldDiff(field, old, new)


def render_diff(entry: AuditEntry) -> list[FieldDiff]:
    """Human-readable deltas for one audit entry, ordered by field name."""
    return [
        render_field(field, change.old, change.new)
        for field, change in sorted(entry.changes.items())
    ]


def apply_changes(state: Mapping[str, Any], entry: AuditEntry) -> dict[str, Any]:
    """Replay an entry's changes onto a snapshot."""
    result = dict(state)
    for field, change in entry.changes.items():
        result[field] = change.new
    return result


def reconstruct_state(history: Sequence[AuditEntry]) -> dict[str, Any]:
    state: dict[str, Any] = {}
    for entry in history:
        state = apply_changes(state, entry)
    return state


def render_between(
    history: Sequence[AuditEntry],
    older: AuditEntry,
    newer: AuditEntry,
) -> list[FieldDiff]:
    """Deltas between the entity states right after two entries of its history."""
    ids = [entry.id for entry in history]
    start, end = ids.index(older.id), ids.index(newer.id)
    if start > end:
        start, end = end, start
    before = reconstruct_state(history[: start + 1])
    after = reconstruct_state(history[: end + 1])
    return [
        render_field(field, change.old, change.new)
        for field, change in sorted(compute_changes(before, after).items())
    ]
