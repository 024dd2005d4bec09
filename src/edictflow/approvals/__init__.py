"""Approval quorum engine for rules under review."""

from edictflow.approvals.quorum import QuorumOutcome, QuorumPolicy, derive_status
from edictflow.approvals.service import ApprovalService

__all__ = ["ApprovalService", "QuorumOutcome", "QuorumPolicy", "derive_status"]
