"""
Capability Gate data models
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Protocol

from skillhost.core.errors import CapabilityDeniedError
from skillhost.skills.manifest import Capability


class ApprovalDecision(str, Enum):
    """Persisted decision for a (skill, capability) pair"""
    GRANTED = "granted"
    DENIED = "denied"
    ASK_EACH_TIME = "ask_each_time"


class ApprovalAnswer(str, Enum):
    """Answer to an interactive approval prompt"""
    ALWAYS = "always"
    ONCE = "once"
    DENY = "deny"


# Reason codes for denied capabilities
REASON_STORED_DENIAL = "STORED_DENIAL"
REASON_USER_DENIED = "USER_DENIED"
REASON_APPROVAL_TIMEOUT = "APPROVAL_TIMEOUT"
REASON_NO_PROMPTER = "NO_PROMPTER"
REASON_READ_ONLY_MODE = "READ_ONLY_MODE"


@dataclass(frozen=True)
class ApprovalRecord:
    skill_id: str
    capability: Capability
    decision: ApprovalDecision
    expires_at: Optional[int] = None  # epoch ms
    updated_at: int = 0

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now_ms

    def to_dict(self) -> dict:
        return {
            "skill_id": self.skill_id,
            "capability": self.capability.value,
            "decision": self.decision.value,
            "expires_at": self.expires_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ApprovalRequest:
    """What the user is asked to approve."""

    skill_id: str
    skill_name: str
    capability: Capability
    escalation: bool = False
    session_id: Optional[str] = None


class ApprovalPrompter(Protocol):
    """Interactive approval source (CLI prompt, UI dialog, test double)."""

    async def __call__(self, request: ApprovalRequest) -> ApprovalAnswer:
        ...


@dataclass(frozen=True)
class Decision:
    """
    Outcome of one authorization

    Attributes:
        skill_id: Skill that was authorized
        granted: Capabilities allowed for this session
        denied: Capability -> reason code for every refused capability
        escalated: Requested capabilities the skill never declared
    """

    skill_id: str
    granted: FrozenSet[Capability] = frozenset()
    denied: Dict[Capability, str] = field(default_factory=dict)
    escalated: FrozenSet[Capability] = frozenset()
    session_id: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return not self.denied

    def require(self) -> "Decision":
        """
        Raise unless every requested capability was allowed

        Raises:
            CapabilityDeniedError: Listing each denied capability and why
        """
        if not self.allowed:
            denied = {cap.value: reason for cap, reason in sorted(self.denied.items())}
            summary = ", ".join(f"{cap} ({reason})" for cap, reason in denied.items())
            raise CapabilityDeniedError(
                f"Skill {self.skill_id} was refused: {summary}",
                denied=denied,
            )
        return self
