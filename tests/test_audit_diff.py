from datetime import datetime, timedelta

from edictflow.audit.diff import (
    LineKind,
    apply_changes,
    compute_changes,
    line_diff,
    longest_common_subsequence,
    reconstruct_state,
    render_between,
    render_diff,
)
from edictflow.domain.models import AuditAction, AuditEntityType, AuditEntry

NOW = datetime(2026, 4, 1)


def entry(entry_id: str, before, after, offset: int = 0) -> AuditEntry:
    return AuditEntry(
        id=entry_id,
        entity_type=AuditEntityType.rule,
        entity_id="rule-1",
        action=AuditAction.updated,
        changes=compute_changes(before, after),
        created_at=NOW + timedelta(minutes=offset),
    )


def as_pairs(lines):
    return [(line.kind, line.content) for line in lines]


def test_single_changed_line_renders_remove_then_add():
    assert as_pairs(line_diff("A\nB\nC", "A\nX\nC")) == [
        (LineKind.context, "A"),
        (LineKind.removed, "B"),
        (LineKind.added, "X"),
        (LineKind.context, "C"),
    ]


def test_appended_and_deleted_lines():
    assert as_pairs(line_diff("A\nB", "A\nB\nC")) == [
        (LineKind.context, "A"),
        (LineKind.context, "B"),
        (LineKind.added, "C"),
    ]
    assert as_pairs(line_diff("A\nB\nC", "A\nC")) == [
        (LineKind.context, "A"),
        (LineKind.removed, "B"),
        (LineKind.context, "C"),
    ]


def test_pure_reordering_prefers_removal_first():
    assert as_pairs(line_diff("A\nB", "B\nA")) == [
        (LineKind.removed, "A"),
        (LineKind.context, "B"),
        (LineKind.added, "A"),
    ]


def test_lcs_of_lines():
    assert longest_common_subsequence(["a", "b", "c", "d"], ["b", "x", "d"]) == ["b", "d"]
    assert longest_common_subsequence([], ["a"]) == []


def test_compute_changes_reports_only_differing_fields():
    changes = compute_changes({"name": "a", "status": "draft", "gone": 1}, {"name": "a", "status": "pending"})

    assert set(changes) == {"status", "gone"}
    assert changes["status"].old == "draft"
    assert changes["status"].new == "pending"
    assert changes["gone"].new is None


def test_render_diff_scalar_and_multiline_fields():
    diffs = render_diff(
        entry("e1", {"status": "draft", "content": "A\nB\nC"}, {"status": "pending", "content": "A\nX\nC"})
    )

    assert [d.field for d in diffs] == ["content", "status"]
    content, status = diffs
    assert content.is_multiline
    assert [line.kind for line in content.lines] == [
        LineKind.context,
        LineKind.removed,
        LineKind.added,
        LineKind.context,
    ]
    assert not status.is_multiline
    assert (status.old, status.new) == ("draft", "pending")


def test_applying_changes_reproduces_after_state():
    before = {"name": "rule", "priority_weight": 1, "tags": ["a"], "content": "x\ny"}
    after = {"name": "rule", "priority_weight": 5, "tags": ["a", "b"], "content": "x\nz", "force": True}

    assert apply_changes(before, entry("e1", before, after)) == after


def test_reconstruct_and_render_between_history_points():
    v1 = {"name": "r", "content": "A\nB"}
    v2 = {"name": "r", "content": "A\nB\nC"}
    v3 = {"name": "renamed", "content": "A\nC"}
    history = [
        entry("e1", None, v1, 0),
        entry("e2", v1, v2, 1),
        entry("e3", v2, v3, 2),
    ]

    assert reconstruct_state(history) == v3
    assert reconstruct_state(history[:2]) == v2

    diffs = render_between(history, history[0], history[2])
    assert [d.field for d in diffs] == ["content", "name"]
    assert as_pairs(diffs[0].lines) == [
        (LineKind.context, "A"),
        (LineKind.removed, "B"),
        (LineKind.added, "C"),
    ]
    assert render_between(history, history[2], history[0]) == diffs
