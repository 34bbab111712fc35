"""
Capability Gate - decides which capabilities a skill session may use

Decision order for each requested capability:
1. Stored denial (unexpired) -> refused without prompting
2. Stored grant (unexpired) for a declared capability -> allowed
3. Otherwise -> interactive prompt (always / once / deny)

Capabilities the skill never declared are escalations: always prompted,
never persisted as granted. The global tool mode is applied last and
vetoes write/execute-class capabilities in read-only mode.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set

from skillhost.core.config import RuntimeSettings, ToolMode
from skillhost.core.gate.approvals import ApprovalStore
from skillhost.core.gate.models import (
    REASON_APPROVAL_TIMEOUT,
    REASON_NO_PROMPTER,
    REASON_READ_ONLY_MODE,
    REASON_STORED_DENIAL,
    REASON_USER_DENIED,
    ApprovalAnswer,
    ApprovalDecision,
    ApprovalPrompter,
    ApprovalRequest,
    Decision,
)
from skillhost.core.storage import now_ms
from skillhost.skills.manifest import Capability, SkillDescriptor, parse_capabilities

logger = logging.getLogger(__name__)


class CapabilityGate:
    """
    Authorizes capability sets before a session starts

    Example:
        gate = CapabilityGate(ApprovalStore(db_path), settings, prompter=ask_user)
        decision = await gate.authorize(descriptor)
        decision.require()
    """

    def __init__(
        self,
        store: ApprovalStore,
        settings: RuntimeSettings,
        prompter: Optional[ApprovalPrompter] = None,
    ):
        self.store = store
        self.settings = settings
        self.prompter = prompter

    async def authorize(
        self,
        skill: SkillDescriptor,
        requested: Optional[Iterable] = None,
        session_id: Optional[str] = None,
    ) -> Decision:
        """
        Decide which of the requested capabilities are allowed

        Args:
            skill: Skill descriptor
            requested: Capabilities wanted for this session (default: declared set)
            session_id: Session being authorized, for prompts and logs

        Returns:
            Decision snapshot for the session
        """
        declared = skill.capabilities
        wanted = declared if requested is None else parse_capabilities(requested)
        read_only = self.settings.tool_mode == ToolMode.READ_ONLY
        now = now_ms()

        granted: Set[Capability] = set()
        denied: Dict[Capability, str] = {}
        escalated = frozenset(wanted - declared)

        for capability in sorted(wanted, key=lambda c: c.value):
            escalation = capability in escalated
            record = self.store.get(skill.skill_id, capability)
            if record is not None and record.is_expired(now):
                record = None

            if record is not None and record.decision == ApprovalDecision.DENIED:
                denied[capability] = REASON_STORED_DENIAL
                continue

            if not escalation and record is not None and record.decision == ApprovalDecision.GRANTED:
                granted.add(capability)
                continue

            if read_only and capability.is_write_class:
                # Vetoed regardless of the answer; no point asking
                denied[capability] = REASON_READ_ONLY_MODE
                continue

            reason = await self._prompt(skill, capability, escalation, session_id)
            if reason is None:
                granted.add(capability)
            else:
                denied[capability] = reason

        if read_only:
            for capability in [c for c in granted if c.is_write_class]:
                granted.discard(capability)
                denied[capability] = REASON_READ_ONLY_MODE

        decision = Decision(
            skill_id=skill.skill_id,
            granted=frozenset(granted),
            denied=denied,
            escalated=escalated,
            session_id=session_id,
        )
        self._log_decision(decision)
        return decision

    async def _prompt(
        self,
        skill: SkillDescriptor,
        capability: Capability,
        escalation: bool,
        session_id: Optional[str],
    ) -> Optional[str]:
        """Ask for one capability. Returns None when allowed, else a reason code."""
        if self.prompter is None:
            return REASON_NO_PROMPTER

        request = ApprovalRequest(
            skill_id=skill.skill_id,
            skill_name=skill.name,
            capability=capability,
            escalation=escalation,
            session_id=session_id,
        )
        timeout = self.settings.approval_timeout_s
        try:
            answer = await asyncio.wait_for(self.prompter(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Approval prompt timed out for {skill.skill_id}/{capability.value} after {timeout}s",
                extra={
                    "security_event": "approval_timeout",
                    "skill_id": skill.skill_id,
                    "capability": capability.value,
                },
            )
            return REASON_APPROVAL_TIMEOUT

        answer = ApprovalAnswer(answer)
        if answer == ApprovalAnswer.DENY:
            self.store.set(skill.skill_id, capability, ApprovalDecision.DENIED)
            return REASON_USER_DENIED

        if escalation:
            # Escalations hold for this session only
            return None

        if answer == ApprovalAnswer.ALWAYS:
            self.store.set(skill.skill_id, capability, ApprovalDecision.GRANTED)
        else:
            self.store.set(skill.skill_id, capability, ApprovalDecision.ASK_EACH_TIME)
        return None

    def revoke(self, skill_id: str, capability: Optional[Capability] = None) -> int:
        """
        Drop stored decisions; running sessions keep their snapshot

        Returns:
            Number of records removed
        """
        removed = self.store.revoke(skill_id, capability)
        logger.info(
            f"Revoked {removed} approval(s) for {skill_id}"
            + (f"/{capability.value}" if capability else ""),
            extra={
                "security_event": "approval_revoked",
                "skill_id": skill_id,
                "capability": capability.value if capability else None,
            },
        )
        return removed

    def _log_decision(self, decision: Decision):
        if decision.escalated:
            logger.warning(
                f"Capability escalation requested by {decision.skill_id}: "
                f"{sorted(c.value for c in decision.escalated)}",
                extra={
                    "security_event": "capability_escalation",
                    "skill_id": decision.skill_id,
                    "session_id": decision.session_id,
                    "capabilities": sorted(c.value for c in decision.escalated),
                },
            )
        if decision.denied:
            denied = {c.value: r for c, r in decision.denied.items()}
            logger.warning(
                f"Capabilities denied for {decision.skill_id}: {denied}",
                extra={
                    "security_event": "capability_denied",
                    "skill_id": decision.skill_id,
                    "session_id": decision.session_id,
                    "denied": denied,
                },
            )
        else:
            logger.debug(
                f"Capabilities granted for {decision.skill_id}: "
                f"{sorted(c.value for c in decision.granted)}"
            )
