"""
Skill Host - the single entry point embedding applications use

Wires the registry, bootstrapper, supervisor pool, capability gate,
credential provider and health monitor together. Every operation is keyed by skill id.

Example:
    async with SkillHost(settings, prompter=ask_user) as host:
        await host.install_skill(Path("skills/coding-agent"))
        result = await host.invoke("coding-agent", "list files in /tmp", on_event=print)
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ulid import ULID

from skillhost.core.config import RuntimeSettings, load_settings
from skillhost.core.credentials import (
    CredentialProvider,
    CredentialStatus,
    EnvironmentCredentialProvider,
    collect_credentials,
    credential_status,
)
from skillhost.core.errors import (
    InvalidTransitionError,
    RuntimeUnavailableError,
    SkillFailedError,
    SkillNotFoundError,
)
from skillhost.core.gate.approvals import ApprovalStore
from skillhost.core.gate.gate import CapabilityGate
from skillhost.core.gate.models import ApprovalPrompter, ApprovalRecord, Decision
from skillhost.core.health import HealthCheckResult, HealthMonitor
from skillhost.core.runtime.bootstrap import EnvironmentBootstrapper, RuntimeInfo
from skillhost.core.session import EventCallback, InvocationSession, SessionResult
from skillhost.core.supervisor.models import SupervisorState
from skillhost.core.supervisor.pool import SupervisorPool
from skillhost.core.supervisor.supervisor import ProcessSupervisor
from skillhost.skills.manifest import (
    Capability,
    SkillDescriptor,
    load_manifest,
    validate_manifest,
)
from skillhost.skills.registry import InstallResult, SkillRecord, SkillRegistry, SkillStatus

logger = logging.getLogger(__name__)


class SkillHost:
    """
    Facade over the skill runtime

    Lifecycle:
    - start(): begin background health monitoring
    - shutdown(): stop monitoring and every skill process
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        prompter: Optional[ApprovalPrompter] = None,
        credentials: Optional[CredentialProvider] = None,
    ):
        """
        Initialize host

        Args:
            settings: Runtime settings (default: loaded from <home>/config.yaml)
            prompter: Interactive approval source; without one every
                capability that needs a decision is denied
            credentials: Source of skill credentials (default: the host's
                environment, see EnvironmentCredentialProvider)
        """
        self.settings = settings or load_settings()
        self.registry = SkillRegistry(self.settings.db_path)
        self.approvals = ApprovalStore(self.settings.db_path)
        self.gate = CapabilityGate(self.approvals, self.settings, prompter=prompter)
        self.bootstrapper = EnvironmentBootstrapper(self.settings)
        self.pool = SupervisorPool(self.settings, on_state_change=self._on_state_change)
        self.credentials = credentials or EnvironmentCredentialProvider()
        self.monitor = HealthMonitor(self.pool, self.settings.health, on_quarantine=self._quarantine)

    async def __aenter__(self) -> "SkillHost":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    async def start(self):
        await self.monitor.start()
        logger.info(f"Skill host started (home={self.settings.home}, tool_mode={self.settings.tool_mode.value})")

    async def shutdown(self):
        await self.monitor.stop()
        await self.pool.shutdown()
        logger.info("Skill host shut down")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def list_skills(self, status: Optional[SkillStatus] = None) -> List[SkillRecord]:
        return self.registry.list(status)

    async def install_skill(self, descriptor: Union[SkillDescriptor, str, Path]) -> SkillRecord:
        """
        Register a skill from a descriptor or manifest path

        Replacing a skill stops its running processes. A changed capability
        declaration clears the skill's approvals.

        Raises:
            ValueError: If the manifest is invalid
        """
        if not isinstance(descriptor, SkillDescriptor):
            descriptor = load_manifest(descriptor)

        is_valid, errors = validate_manifest(descriptor)
        if not is_valid:
            raise ValueError(f"Invalid skill manifest for {descriptor.skill_id}: {'; '.join(errors)}")

        result = self.registry.install(descriptor)
        await self._after_replace(descriptor.skill_id, result)
        return result.record

    async def _after_replace(self, skill_id: str, result: InstallResult):
        if result.replaced:
            await self.pool.discard(skill_id)
        if result.capabilities_changed:
            removed = self.approvals.revoke(skill_id)
            logger.info(
                f"Capabilities of {skill_id} changed, cleared {removed} approval(s)",
                extra={"security_event": "capabilities_changed", "skill_id": skill_id},
            )

    async def uninstall_skill(self, skill_id: str) -> bool:
        """Stop, forget and unregister a skill. Returns False if it was not installed."""
        await self.pool.discard(skill_id)
        self.approvals.revoke(skill_id)
        return self.registry.uninstall(skill_id)

    async def disable_skill(self, skill_id: str) -> SkillRecord:
        """Stop a skill and refuse invocations until it is activated again."""
        self.registry.require(skill_id)
        self.registry.set_status(skill_id, SkillStatus.DISABLED, "disabled by user")
        await self.pool.discard(skill_id)
        return self.registry.require(skill_id)

    async def activate_skill(self, skill_id: str) -> SkillRecord:
        """
        Make a disabled or failed skill invocable again

        Raises:
            InvalidTransitionError: If the skill is quarantined; it has to be
                disabled (acknowledged) first
        """
        record = self.registry.require(skill_id)
        if record.status == SkillStatus.QUARANTINED:
            raise InvalidTransitionError(
                f"Skill {skill_id} is quarantined: {record.last_error}",
                hint=f"Disable it first (skillhost skills disable {skill_id}), then activate it",
            )
        if record.status != SkillStatus.ENABLED:
            # Failed supervisors stay failed; start from fresh ones
            await self.pool.discard(skill_id)
            self.registry.set_status(skill_id, SkillStatus.ENABLED)
            logger.info(f"Activated skill {skill_id} (was {record.status.value})")
        return self.registry.require(skill_id)

    async def rollback_skill(self, skill_id: str) -> SkillRecord:
        """
        Reinstall the version the last reinstall replaced

        Raises:
            InvalidTransitionError: If there is no previous version
        """
        result = self.registry.rollback(skill_id)
        await self._after_replace(skill_id, result)
        return result.record

    async def _quarantine(self, skill_id: str, reason: str):
        try:
            self.registry.set_status(skill_id, SkillStatus.QUARANTINED, reason)
        except SkillNotFoundError:
            logger.debug(f"Quarantine of uninstalled skill {skill_id} ignored")
            return
        logger.warning(
            f"Skill {skill_id} quarantined: {reason}",
            extra={"security_event": "skill_quarantined", "skill_id": skill_id},
        )
        await self.pool.discard(skill_id)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        skill_id: str,
        task: str,
        on_event: Optional[EventCallback] = None,
        timeout: Optional[float] = None,
        capabilities: Optional[Iterable] = None,
    ) -> SessionResult:
        """
        Run one task on a skill

        The process is leased (started if needed) and the capability set
        authorized. A skill that declares credentials is authorized before
        its process starts; its credentials are looked up only when
        ``credential_read`` was granted. A busy skill is retried a bounded
        number of times.

        Raises:
            SkillNotFoundError: Unknown skill id
            SkillFailedError: Skill has failed, is disabled or quarantined
            RuntimeUnavailableError: Runtime could not be resolved
            CapabilityDeniedError: Authorization refused (no task is sent)
            CredentialMissingError: A required credential has no value
            ProtocolMismatchError: Handshake failed
            BusyError: Every process of the skill stayed in use
            TaskTimeoutError / SessionCancelledError / SkillTaskError /
            ProcessCrashedError / MalformedMessageError /
            EventBacklogError: Task failures
        """
        record = self.registry.require(skill_id)
        self._check_invocable(record)

        descriptor = record.descriptor
        info = await self._resolve(record)
        command = self.bootstrapper.command_for(descriptor, info)

        session_id = str(ULID())
        decision = None
        credentials = {}
        if descriptor.credentials:
            # The process environment is fixed at spawn, so authorize first
            decision = await self.gate.authorize(descriptor, requested=capabilities, session_id=session_id)
            decision.require()
            if Capability.CREDENTIAL_READ in decision.granted:
                credentials = collect_credentials(descriptor, self.credentials)

        async with self.pool.lease(descriptor, command, credentials=credentials) as supervisor:
            session = InvocationSession(supervisor, self.gate, self.settings, session_id=session_id)
            return await session.run(
                task, on_event=on_event, capabilities=capabilities, timeout=timeout, decision=decision
            )

    @staticmethod
    def _check_invocable(record: SkillRecord):
        skill_id = record.skill_id
        if record.status == SkillStatus.FAILED:
            raise SkillFailedError(
                f"Skill {skill_id} has failed: {record.last_error}",
                hint="Reinstall or activate the skill to reset it",
            )
        if record.status == SkillStatus.DISABLED:
            raise SkillFailedError(f"Skill {skill_id} is disabled", reason_code="SKILL_DISABLED")
        if record.status == SkillStatus.QUARANTINED:
            raise SkillFailedError(
                f"Skill {skill_id} is quarantined: {record.last_error}",
                reason_code="SKILL_QUARANTINED",
                hint=f"Check the skill, then disable and activate it (skillhost skills disable {skill_id})",
            )

    async def _resolve(self, record: SkillRecord, recheck: bool = False) -> RuntimeInfo:
        try:
            info = await self.bootstrapper.resolve(record.descriptor, recheck=recheck)
        except RuntimeUnavailableError as e:
            self.registry.set_status(record.skill_id, SkillStatus.UNAVAILABLE, e.message)
            raise
        if record.status == SkillStatus.UNAVAILABLE:
            self.registry.set_status(record.skill_id, SkillStatus.ENABLED)
        return info

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def authorize(self, skill_id: str, capabilities: Optional[Iterable] = None) -> Decision:
        """Run the approval flow ahead of time (e.g. right after install)."""
        record = self.registry.require(skill_id)
        return await self.gate.authorize(record.descriptor, requested=capabilities)

    def revoke(self, skill_id: str, capability: Optional[Union[Capability, str]] = None) -> int:
        if capability is not None:
            capability = Capability(capability)
        return self.gate.revoke(skill_id, capability)

    def list_approvals(self, skill_id: Optional[str] = None) -> List[ApprovalRecord]:
        return self.approvals.list(skill_id)

    def credential_status(self, skill_id: str) -> List[CredentialStatus]:
        """Which declared credentials currently have a value (values are not returned)."""
        return credential_status(self.registry.require(skill_id).descriptor, self.credentials)

    # ------------------------------------------------------------------
    # Runtime and health
    # ------------------------------------------------------------------

    async def resolve_runtime(self, skill_id: str, recheck: bool = False) -> RuntimeInfo:
        return await self._resolve(self.registry.require(skill_id), recheck=recheck)

    async def pre_warm(self, skill_id: str) -> bool:
        record = self.registry.require(skill_id)
        info = await self._resolve(record)
        return await self.bootstrapper.pre_warm(record.descriptor, info)

    def health(self, skill_id: str) -> HealthCheckResult:
        self.registry.require(skill_id)
        return self.monitor.status(skill_id)

    async def check_health(self, skill_id: str) -> HealthCheckResult:
        """Probe the skill's running processes now instead of waiting for the monitor."""
        self.registry.require(skill_id)
        for supervisor in self.pool.supervisors(skill_id):
            await self.monitor.check(supervisor)
        return self.monitor.status(skill_id)

    def _on_state_change(self, supervisor: ProcessSupervisor, old: SupervisorState, new: SupervisorState):
        if new != SupervisorState.FAILED:
            return
        try:
            self.registry.set_status(supervisor.skill_id, SkillStatus.FAILED, supervisor.last_error)
        except SkillNotFoundError:
            logger.debug(f"Failed supervisor for uninstalled skill {supervisor.skill_id}")
