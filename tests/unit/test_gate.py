"""Tests for the approval store and the capability gate."""

import asyncio

import pytest

from skillhost.core.config import ToolMode
from skillhost.core.errors import CapabilityDeniedError
from skillhost.core.gate.approvals import ApprovalStore
from skillhost.core.gate.gate import CapabilityGate
from skillhost.core.gate.models import (
    REASON_APPROVAL_TIMEOUT,
    REASON_NO_PROMPTER,
    REASON_READ_ONLY_MODE,
    REASON_STORED_DENIAL,
    REASON_USER_DENIED,
    ApprovalAnswer,
    ApprovalDecision,
)
from skillhost.core.storage import now_ms
from skillhost.skills.manifest import Capability, SkillDescriptor


def skill(*capabilities):
    return SkillDescriptor(
        skill_id="writer",
        name="Writer",
        entry={"command": ["python3", "main.py"]},
        capabilities=list(capabilities),
    )


@pytest.fixture
def store(settings):
    return ApprovalStore(settings.db_path)


class TestApprovalStore:
    """Persistence of decisions."""

    def test_set_get_and_upsert(self, store):
        store.set("writer", Capability.FILE_READ, ApprovalDecision.ASK_EACH_TIME)
        store.set("writer", Capability.FILE_READ, ApprovalDecision.GRANTED)
        record = store.get("writer", Capability.FILE_READ)
        assert record.decision == ApprovalDecision.GRANTED
        assert len(store.list()) == 1

    def test_revoke_one_or_all(self, store):
        store.set("writer", Capability.FILE_READ, ApprovalDecision.GRANTED)
        store.set("writer", Capability.FILE_WRITE, ApprovalDecision.GRANTED)
        store.set("other", Capability.FILE_READ, ApprovalDecision.DENIED)

        assert store.revoke("writer", Capability.FILE_WRITE) == 1
        assert [r.capability for r in store.list("writer")] == [Capability.FILE_READ]
        assert store.revoke("writer") == 1
        assert store.list("writer") == []
        assert len(store.list()) == 1

    def test_expiry(self, store):
        record = store.set("writer", Capability.FILE_READ, ApprovalDecision.GRANTED, expires_at=1000)
        assert record.is_expired(now_ms())
        assert not record.is_expired(999)


class TestAuthorize:
    """Decision order and persistence rules."""

    @pytest.mark.asyncio
    async def test_always_is_persisted_and_not_asked_again(self, store, settings, make_prompter):
        prompter = make_prompter()
        gate = CapabilityGate(store, settings, prompter)
        descriptor = skill("file_read", "file_write")

        decision = await gate.authorize(descriptor)
        assert decision.allowed
        assert decision.granted == {Capability.FILE_READ, Capability.FILE_WRITE}
        assert len(prompter.requests) == 2

        again = await gate.authorize(descriptor)
        assert again.allowed
        assert len(prompter.requests) == 2

    @pytest.mark.asyncio
    async def test_once_asks_every_time(self, store, settings, make_prompter):
        prompter = make_prompter(default=ApprovalAnswer.ONCE)
        gate = CapabilityGate(store, settings, prompter)
        descriptor = skill("file_read")

        await gate.authorize(descriptor)
        await gate.authorize(descriptor)
        assert len(prompter.requests) == 2
        assert store.get("writer", Capability.FILE_READ).decision == ApprovalDecision.ASK_EACH_TIME

    @pytest.mark.asyncio
    async def test_deny_is_persisted(self, store, settings, make_prompter):
        prompter = make_prompter({"shell_exec": ApprovalAnswer.DENY})
        gate = CapabilityGate(store, settings, prompter)
        descriptor = skill("file_read", "shell_exec")

        decision = await gate.authorize(descriptor)
        assert decision.denied == {Capability.SHELL_EXEC: REASON_USER_DENIED}
        assert decision.granted == {Capability.FILE_READ}

        again = await gate.authorize(descriptor)
        assert again.denied == {Capability.SHELL_EXEC: REASON_STORED_DENIAL}
        assert [r.capability for r in prompter.requests].count(Capability.SHELL_EXEC) == 1

    @pytest.mark.asyncio
    async def test_require_raises_with_reasons(self, store, settings, make_prompter):
        gate = CapabilityGate(store, settings, make_prompter(default=ApprovalAnswer.DENY))
        decision = await gate.authorize(skill("file_write"))
        with pytest.raises(CapabilityDeniedError) as exc_info:
            decision.require()
        assert exc_info.value.denied == {"file_write": REASON_USER_DENIED}

    @pytest.mark.asyncio
    async def test_no_prompter_denies_without_persisting(self, store, settings):
        gate = CapabilityGate(store, settings)
        decision = await gate.authorize(skill("file_read"))
        assert decision.denied == {Capability.FILE_READ: REASON_NO_PROMPTER}
        assert store.get("writer", Capability.FILE_READ) is None

    @pytest.mark.asyncio
    async def test_prompt_timeout_is_a_denial(self, store, settings):
        async def never_answers(request):
            await asyncio.sleep(60)

        settings = settings.model_copy(update={"approval_timeout_s": 0.05})
        gate = CapabilityGate(store, settings, never_answers)
        decision = await gate.authorize(skill("file_read"))
        assert decision.denied == {Capability.FILE_READ: REASON_APPROVAL_TIMEOUT}
        assert store.get("writer", Capability.FILE_READ) is None

    @pytest.mark.asyncio
    async def test_escalation_is_prompted_and_never_persisted(self, store, settings, make_prompter):
        prompter = make_prompter()
        gate = CapabilityGate(store, settings, prompter)
        descriptor = skill("file_read")
        store.set("writer", Capability.NETWORK_EGRESS, ApprovalDecision.GRANTED)

        decision = await gate.authorize(descriptor, requested=["file_read", "network_egress"])
        assert decision.allowed
        assert decision.escalated == {Capability.NETWORK_EGRESS}
        escalations = [r for r in prompter.requests if r.escalation]
        assert [r.capability for r in escalations] == [Capability.NETWORK_EGRESS]

        await gate.authorize(descriptor, requested=["network_egress"])
        assert len([r for r in prompter.requests if r.escalation]) == 2

    @pytest.mark.asyncio
    async def test_expired_denial_is_ignored(self, store, settings, make_prompter):
        store.set("writer", Capability.FILE_READ, ApprovalDecision.DENIED, expires_at=1)
        gate = CapabilityGate(store, settings, make_prompter())
        decision = await gate.authorize(skill("file_read"))
        assert decision.allowed


class TestReadOnlyMode:
    """The global tool mode vetoes write-class capabilities."""

    @pytest.mark.asyncio
    async def test_stored_grant_is_vetoed(self, store, settings, make_prompter):
        settings = settings.model_copy(update={"tool_mode": ToolMode.READ_ONLY})
        store.set("writer", Capability.FILE_WRITE, ApprovalDecision.GRANTED)
        prompter = make_prompter()
        gate = CapabilityGate(store, settings, prompter)

        decision = await gate.authorize(skill("file_read", "file_write"))
        assert decision.denied == {Capability.FILE_WRITE: REASON_READ_ONLY_MODE}
        assert decision.granted == {Capability.FILE_READ}

    @pytest.mark.asyncio
    async def test_write_class_is_not_prompted(self, store, settings, make_prompter):
        settings = settings.model_copy(update={"tool_mode": ToolMode.READ_ONLY})
        prompter = make_prompter()
        gate = CapabilityGate(store, settings, prompter)

        decision = await gate.authorize(skill("shell_exec"))
        assert decision.denied == {Capability.SHELL_EXEC: REASON_READ_ONLY_MODE}
        assert prompter.requests == []


class TestRevoke:
    """Revocation."""

    @pytest.mark.asyncio
    async def test_revoke_forces_a_new_prompt(self, store, settings, make_prompter):
        prompter = make_prompter()
        gate = CapabilityGate(store, settings, prompter)
        descriptor = skill("file_read")

        await gate.authorize(descriptor)
        assert gate.revoke("writer") == 1
        await gate.authorize(descriptor)
        assert len(prompter.requests) == 2
