"""Capability Gate - approval of skill capabilities before a session runs."""

from skillhost.core.gate.approvals import ApprovalStore
from skillhost.core.gate.gate import CapabilityGate
from skillhost.core.gate.models import (
    ApprovalAnswer,
    ApprovalDecision,
    ApprovalRecord,
    ApprovalRequest,
    Decision,
)

__all__ = [
    "ApprovalStore",
    "CapabilityGate",
    "ApprovalAnswer",
    "ApprovalDecision",
    "ApprovalRecord",
    "ApprovalRequest",
    "Decision",
]
