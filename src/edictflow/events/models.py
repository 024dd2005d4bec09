from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from edictflow.core.clock import utcnow


class EventType(StrEnum):
    rule_created = "rule_created"
    rule_updated = "rule_updated"
    rule_deleted = "rule_deleted"
    rule_submitted = "rule_submitted"
    rule_revised = "rule_revised"
    approval_recorded = "approval_recorded"
    rule_approved = "rule_approved"
    rule_rejected = "rule_rejected"
    change_detected = "change_detected"
    change_updated = "change_updated"
    change_approved = "change_approved"
    change_rejected = "change_rejected"
    change_auto_reverted = "change_auto_reverted"
    exception_requested = "exception_requested"
    exception_granted = "exception_granted"
    exception_denied = "exception_denied"
    exception_expired = "exception_expired"
    category_created = "category_created"
    category_deleted = "category_deleted"


class InstructionAction(StrEnum):
    revert = "revert"
    accept = "accept"
    allow = "allow"


def _encode(data: dict[str, Any]) -> str:
    return json.dumps(
        {k: v for k, v in data.items() if v is not None},
        separators=(",", ":"),
        default=lambda v: v.isoformat() if isinstance(v, datetime) else str(v),
    )


@dataclass(slots=True)
class GovernanceEvent:
    """A state change announced to subscribers after it is committed."""

    event_type: EventType
    entity_type: str
    entity_id: str
    team_id: str | None = None
    actor_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_message_body(self) -> str:
        return _encode(asdict(self))


@dataclass(slots=True)
class EnforcementInstruction:
    """What an agent must do with a local file change."""

    action: InstructionAction
    change_request_id: str
    team_id: str
    file_path: str
    agent_id: str | None = None
    revert_to_hash: str | None = None
    issued_at: datetime = field(default_factory=utcnow)

    def to_message_body(self) -> str:
        return _encode(asdict(self))
