"""Change-request enforcement state machine."""

from edictflow.changes.service import ChangeRequestService, DetectedChange
from edictflow.changes.state import deadline_for, ensure_transition

__all__ = ["ChangeRequestService", "DetectedChange", "deadline_for", "ensure_transition"]
