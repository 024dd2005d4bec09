"""Audit trail: recording transitions and rendering their deltas."""

from edictflow.audit.diff import (
    DiffLine,
    FieldDiff,
    LineKind,
    apply_changes,
    compute_changes,
    line_diff,
    reconstruct_state,
    render_between,
    render_diff,
)
from edictflow.audit.recorder import AuditRecorder, snapshot

__all__ = [
    "AuditRecorder",
    "DiffLine",
    "FieldDiff",
    "LineKind",
    "apply_changes",
    "compute_changes",
    "line_diff",
    "reconstruct_state",
    "render_between",
    "render_diff",
    "snapshot",
]
