"""Enforcement state machine helpers for change requests."""

from __future__ import annotations

from datetime import datetime, timedelta

from edictflow.core.errors import InvalidTransition
from edictflow.domain.models import (
    CHANGE_REQUEST_TRANSITIONS,
    ChangeRequest,
    ChangeRequestStatus,
    EnforcementMode,
)

GRANTABLE_STATES = frozenset(
    status
    for status, targets in CHANGE_REQUEST_TRANSITIONS.items()
    if ChangeRequestStatus.exception_granted in targets
)


def ensure_transition(change: ChangeRequest, target: ChangeRequestStatus) -> None:
    if target not in CHANGE_REQUEST_TRANSITIONS[change.status]:
        raise InvalidTransition(
            f"Cannot move change request from '{change.status.value}' to '{target.value}'",
            {
                "change_request_id": change.id,
                "status": change.status.value,
                "target": target.value,
            },
        )


def deadline_for(mode: EnforcementMode, timeout_hours: int | None, start: datetime) -> datetime | None:
    """Auto-revert deadline; only temporary changes have one."""
    if mode is not EnforcementMode.temporary or timeout_hours is None:
        return None
    return start + timedelta(hours=timeout_hours)
