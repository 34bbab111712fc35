"""End-to-end tests for SkillHost with the mock skill process."""

import asyncio
import sys
from pathlib import Path

import pytest

from skillhost.core.config import HealthSettings
from skillhost.core.credentials import StaticCredentialProvider
from skillhost.core.errors import (
    BusyError,
    CapabilityDeniedError,
    CredentialMissingError,
    InvalidTransitionError,
    ProtocolMismatchError,
    RuntimeUnavailableError,
    SkillFailedError,
    SkillNotFoundError,
)
from skillhost.core.gate.models import ApprovalAnswer
from skillhost.core.health import HealthStatus
from skillhost.host import SkillHost
from skillhost.skills.manifest import Capability, CredentialSpec, SkillDescriptor
from skillhost.skills.registry import SkillStatus

MOCK_SKILL = Path(__file__).parent.parent / "fixtures" / "mock_skill.py"


class TestRegistry:
    """Install, list and uninstall."""

    @pytest.mark.asyncio
    async def test_install_list_uninstall(self, settings, make_descriptor):
        async with SkillHost(settings) as host:
            record = await host.install_skill(make_descriptor())
            assert record.status == SkillStatus.ENABLED
            assert [r.skill_id for r in host.list_skills()] == ["mock-skill"]

            assert await host.uninstall_skill("mock-skill") is True
            assert host.list_skills() == []
            assert await host.uninstall_skill("mock-skill") is False

    @pytest.mark.asyncio
    async def test_install_from_manifest_directory(self, settings, tmp_path):
        skill_dir = tmp_path / "echo"
        skill_dir.mkdir()
        (skill_dir / "skill.yaml").write_text(
            "skill_id: echo\n"
            "name: Echo\n"
            "version: 1.0.0\n"
            "entry:\n"
            f"  command: [{sys.executable!r}, {str(MOCK_SKILL)!r}]\n"
            "capabilities: [file_read]\n",
            encoding="utf-8",
        )
        async with SkillHost(settings) as host:
            record = await host.install_skill(skill_dir)
            assert record.descriptor.entry.cwd == str(skill_dir.resolve())

    @pytest.mark.asyncio
    async def test_invalid_manifest_is_rejected(self, settings):
        descriptor = SkillDescriptor(
            skill_id="bad",
            name="Bad",
            entry={"command": ["python3", "main.py"]},
            runtime={"kind": "uv"},
        )
        async with SkillHost(settings) as host:
            with pytest.raises(ValueError, match="runtime kind"):
                await host.install_skill(descriptor)
            assert host.list_skills() == []

    @pytest.mark.asyncio
    async def test_unknown_skill(self, settings):
        async with SkillHost(settings) as host:
            with pytest.raises(SkillNotFoundError):
                await host.invoke("ghost", "hello")


class TestInvoke:
    """Invocation through the host."""

    @pytest.mark.asyncio
    async def test_invoke_with_approval(self, settings, make_descriptor, make_prompter):
        prompter = make_prompter()
        events = []
        async with SkillHost(settings, prompter=prompter) as host:
            await host.install_skill(make_descriptor())
            result = await host.invoke("mock-skill", "list files in /tmp", on_event=events.append)

            assert result.output["output"] == "done: list files in /tmp"
            assert events
            assert [r.capability.value for r in host.list_approvals("mock-skill")] == ["file_read"]

            await host.invoke("mock-skill", "again")
            assert len(prompter.requests) == 1
            assert len(host.pool.supervisors("mock-skill")) == 1

    @pytest.mark.asyncio
    async def test_capability_change_clears_approvals(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor())
            await host.invoke("mock-skill", "warm up")
            supervisor = host.pool.supervisors("mock-skill")[0]

            await host.install_skill(make_descriptor(capabilities=("file_read", "file_write")))
            assert host.list_approvals("mock-skill") == []
            assert host.pool.supervisors("mock-skill") == []
            assert supervisor.state.value == "stopped"

    @pytest.mark.asyncio
    async def test_revoke(self, settings, make_descriptor, make_prompter):
        prompter = make_prompter()
        async with SkillHost(settings, prompter=prompter) as host:
            await host.install_skill(make_descriptor())
            await host.authorize("mock-skill")
            assert host.revoke("mock-skill", "file_read") == 1
            await host.invoke("mock-skill", "after revoke")
            assert len(prompter.requests) == 2

    @pytest.mark.asyncio
    async def test_missing_entry_binary_marks_unavailable(self, settings):
        descriptor = SkillDescriptor(
            skill_id="ghost", name="Ghost", entry={"command": ["definitely-not-a-binary-xyz"]}
        )
        async with SkillHost(settings) as host:
            await host.install_skill(descriptor)
            with pytest.raises(RuntimeUnavailableError):
                await host.invoke("ghost", "hello")
            assert host.registry.get("ghost").status == SkillStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_repeated_handshake_failure_marks_failed(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor(MOCK_HANDSHAKE="wrong_version"))
            for _ in range(2):
                with pytest.raises(ProtocolMismatchError):
                    await host.invoke("mock-skill", "hello")

            record = host.registry.get("mock-skill")
            assert record.status == SkillStatus.FAILED
            with pytest.raises(SkillFailedError):
                await host.invoke("mock-skill", "hello")

            await host.install_skill(make_descriptor())
            result = await host.invoke("mock-skill", "after reinstall")
            assert result.output["output"] == "done: after reinstall"


class TestHealth:
    """Health reporting through the host."""

    @pytest.mark.asyncio
    async def test_health_before_and_after_probe(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor())
            assert host.health("mock-skill").status == HealthStatus.UNKNOWN

            await host.invoke("mock-skill", "warm up")
            result = await host.check_health("mock-skill")
            assert result.status == HealthStatus.OK

    @pytest.mark.asyncio
    async def test_runtime_resolution(self, settings, make_descriptor):
        async with SkillHost(settings) as host:
            await host.install_skill(make_descriptor())
            info = await host.resolve_runtime("mock-skill")
            assert info.path == sys.executable


class TestConcurrentInvoke:
    """Two callers on a skill with one process."""

    @pytest.mark.asyncio
    async def test_second_caller_is_busy_and_events_stay_separate(
        self, settings, make_descriptor, make_prompter
    ):
        events = []
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor(MOCK_TASK_DELAY="2", MOCK_PROGRESS="3"))
            await host.authorize("mock-skill")

            first = asyncio.create_task(
                host.invoke("mock-skill", "first", on_event=events.append)
            )
            for _ in range(100):
                if host.pool.in_use("mock-skill") == 1:
                    break
                await asyncio.sleep(0.05)
            assert host.pool.in_use("mock-skill") == 1

            with pytest.raises(BusyError):
                await host.invoke("mock-skill", "second", on_event=events.append)

            result = await first
            assert result.output["output"] == "done: first"

        assert {e.session_id for e in events} == {result.session_id}
        assert [e.kind.value for e in events] == ["progress", "progress", "progress", "completed"]
        assert [e.payload["seq"] for e in events[:3]] == [0, 1, 2]
        assert result.event_count == 4

    @pytest.mark.asyncio
    async def test_waiting_caller_gets_the_process_when_it_frees_up(
        self, settings, make_descriptor, make_prompter
    ):
        settings = settings.model_copy(update={"busy_retries": 20, "busy_retry_delay_s": 0.2})
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor(MOCK_TASK_DELAY="1"))
            await host.authorize("mock-skill")

            results = await asyncio.gather(
                host.invoke("mock-skill", "first"),
                host.invoke("mock-skill", "second"),
            )
            assert sorted(r.output["output"] for r in results) == ["done: first", "done: second"]
            assert results[0].session_id != results[1].session_id


def credential_descriptor(make_descriptor, **env):
    return make_descriptor(
        capabilities=("file_read", "credential_read"), MOCK_ECHO_ENV="AGENT_API_TOKEN", **env
    ).model_copy(
        update={"credentials": (CredentialSpec(name="api_token", env_var="AGENT_API_TOKEN"),)}
    )


class TestCredentials:
    """Credentials passed to the skill process."""

    @pytest.mark.asyncio
    async def test_granted_credentials_reach_the_process(self, settings, make_descriptor, make_prompter):
        provider = StaticCredentialProvider({("mock-skill", "api_token"): "s3cret"})
        async with SkillHost(settings, prompter=make_prompter(), credentials=provider) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            result = await host.invoke("mock-skill", "use the token")
            assert result.output["env"] == {"AGENT_API_TOKEN": "s3cret"}

    @pytest.mark.asyncio
    async def test_not_requested_means_not_passed(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter(), credentials=StaticCredentialProvider()) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            result = await host.invoke("mock-skill", "no token", capabilities=["file_read"])
            assert result.output["env"] == {"AGENT_API_TOKEN": None}

    @pytest.mark.asyncio
    async def test_missing_required_credential(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter(), credentials=StaticCredentialProvider()) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            with pytest.raises(CredentialMissingError):
                await host.invoke("mock-skill", "use the token")
            assert host.pool.supervisors("mock-skill") == []

    @pytest.mark.asyncio
    async def test_denied_skill_with_credentials_never_starts(self, settings, make_descriptor, make_prompter):
        provider = StaticCredentialProvider({("mock-skill", "api_token"): "s3cret"})
        prompter = make_prompter({"credential_read": ApprovalAnswer.DENY})
        async with SkillHost(settings, prompter=prompter, credentials=provider) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            with pytest.raises(CapabilityDeniedError):
                await host.invoke("mock-skill", "use the token")
            assert host.pool.supervisors("mock-skill") == []

    @pytest.mark.asyncio
    async def test_changed_credentials_restart_the_process(self, settings, make_descriptor, make_prompter):
        provider = StaticCredentialProvider({("mock-skill", "api_token"): "one"})
        async with SkillHost(settings, prompter=make_prompter(), credentials=provider) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            await host.invoke("mock-skill", "first")
            pid = host.pool.supervisors("mock-skill")[0].handle.pid

            provider.set("mock-skill", "api_token", "two")
            result = await host.invoke("mock-skill", "second")
            assert result.output["env"] == {"AGENT_API_TOKEN": "two"}
            assert host.pool.supervisors("mock-skill")[0].handle.pid != pid

    @pytest.mark.asyncio
    async def test_credential_status(self, settings, make_descriptor):
        provider = StaticCredentialProvider({("mock-skill", "api_token"): "s3cret"})
        async with SkillHost(settings, credentials=provider) as host:
            await host.install_skill(credential_descriptor(make_descriptor))
            [status] = host.credential_status("mock-skill")
            assert status.env_var == "AGENT_API_TOKEN"
            assert status.available


class TestLifecycle:
    """Disable, activate, quarantine and rollback."""

    @pytest.mark.asyncio
    async def test_disabled_skill_is_not_invocable(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor())
            await host.invoke("mock-skill", "warm up")
            supervisor = host.pool.supervisors("mock-skill")[0]

            record = await host.disable_skill("mock-skill")
            assert record.status == SkillStatus.DISABLED
            assert supervisor.state.value == "stopped"
            with pytest.raises(SkillFailedError) as exc_info:
                await host.invoke("mock-skill", "hello")
            assert exc_info.value.reason_code == "SKILL_DISABLED"

            assert (await host.activate_skill("mock-skill")).status == SkillStatus.ENABLED
            result = await host.invoke("mock-skill", "after activate")
            assert result.output["output"] == "done: after activate"

    @pytest.mark.asyncio
    async def test_quarantine_needs_disable_before_activate(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor())
            await host._quarantine("mock-skill", "5 consecutive failed health checks")

            with pytest.raises(SkillFailedError) as exc_info:
                await host.invoke("mock-skill", "hello")
            assert exc_info.value.reason_code == "SKILL_QUARANTINED"

            with pytest.raises(InvalidTransitionError):
                await host.activate_skill("mock-skill")
            assert host.registry.get("mock-skill").status == SkillStatus.QUARANTINED

            await host.disable_skill("mock-skill")
            await host.activate_skill("mock-skill")
            result = await host.invoke("mock-skill", "back in service")
            assert result.output["output"] == "done: back in service"

    @pytest.mark.asyncio
    async def test_failing_health_checks_quarantine_the_skill(self, settings, make_descriptor, make_prompter):
        settings = settings.model_copy(
            update={
                "health": HealthSettings(
                    probe_timeout_s=0.3, failure_threshold=10, quarantine_threshold=2
                )
            }
        )
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor(MOCK_HEALTH="silent"))
            await host.invoke("mock-skill", "warm up")

            await host.check_health("mock-skill")
            assert host.registry.get("mock-skill").status == SkillStatus.ENABLED
            await host.check_health("mock-skill")

            record = host.registry.get("mock-skill")
            assert record.status == SkillStatus.QUARANTINED
            assert "2 consecutive failed" in record.last_error
            assert host.pool.supervisors("mock-skill") == []

    @pytest.mark.asyncio
    async def test_rollback(self, settings, make_descriptor, make_prompter):
        async with SkillHost(settings, prompter=make_prompter()) as host:
            await host.install_skill(make_descriptor())
            await host.invoke("mock-skill", "v1")
            await host.install_skill(
                make_descriptor(capabilities=("file_read", "file_write")).model_copy(
                    update={"version": "2.0.0"}
                )
            )
            await host.authorize("mock-skill")
            assert len(host.list_approvals("mock-skill")) == 2

            record = await host.rollback_skill("mock-skill")
            assert record.descriptor.version == "1.0.0"
            assert record.descriptor.capabilities == frozenset({Capability.FILE_READ})
            assert host.list_approvals("mock-skill") == []

    @pytest.mark.asyncio
    async def test_rollback_without_previous_version(self, settings, make_descriptor):
        async with SkillHost(settings) as host:
            await host.install_skill(make_descriptor())
            with pytest.raises(InvalidTransitionError):
                await host.rollback_skill("mock-skill")
