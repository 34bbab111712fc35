"""
Supervisor Pool - bounded set of supervisors per skill

acquire()/release() mutate the pool under a threading.Lock that is never
held across an await. lease() wraps both in an async context manager that
releases exactly once, whatever the outcome of the body, and retries a
busy skill a bounded number of times.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence

from skillhost.core.config import RuntimeSettings
from skillhost.core.errors import BusyError
from skillhost.core.supervisor.models import SupervisorState
from skillhost.core.supervisor.supervisor import ProcessSupervisor, StateListener
from skillhost.skills.manifest import SkillDescriptor

logger = logging.getLogger(__name__)


class SupervisorPool:
    """
    Pool of process supervisors keyed by skill id

    Example:
        pool = SupervisorPool(settings)
        async with pool.lease(descriptor) as supervisor:
            result = await supervisor.request("get_state", {})
        await pool.shutdown()
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        on_state_change: Optional[StateListener] = None,
    ):
        self.settings = settings
        self.pool_size = settings.pool_size
        self.on_state_change = on_state_change
        self._lock = threading.Lock()
        self._supervisors: Dict[str, List[ProcessSupervisor]] = {}
        self._leased: set = set()

    def acquire(
        self,
        descriptor: SkillDescriptor,
        command: Optional[Sequence[str]] = None,
    ) -> ProcessSupervisor:
        """
        Lease a supervisor for ``descriptor``

        Prefers an idle warm supervisor, then any idle one, then creates a
        new supervisor if the skill is below ``pool_size``.

        Raises:
            BusyError: If every supervisor of the skill is leased
        """
        with self._lock:
            supervisors = self._supervisors.setdefault(descriptor.skill_id, [])
            idle = [s for s in supervisors if s.supervisor_id not in self._leased]
            idle.sort(key=lambda s: s.state != SupervisorState.READY)

            if idle:
                supervisor = idle[0]
            elif len(supervisors) < self.pool_size:
                supervisor = ProcessSupervisor(
                    descriptor,
                    self.settings,
                    command=command,
                    on_state_change=self.on_state_change,
                )
                supervisors.append(supervisor)
                logger.debug(
                    f"Created supervisor {supervisor.supervisor_id} for {descriptor.skill_id} "
                    f"({len(supervisors)}/{self.pool_size})"
                )
            else:
                raise BusyError(
                    f"Skill {descriptor.skill_id} is busy "
                    f"({self.pool_size} process(es) in use)",
                    hint="Retry when the current task finishes",
                )

            if command is not None:
                supervisor.command = tuple(command)
            self._leased.add(supervisor.supervisor_id)
            return supervisor

    def release(self, supervisor: ProcessSupervisor):
        with self._lock:
            self._leased.discard(supervisor.supervisor_id)

    async def _acquire_with_retry(
        self,
        descriptor: SkillDescriptor,
        command: Optional[Sequence[str]],
    ) -> ProcessSupervisor:
        attempts = self.settings.busy_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.acquire(descriptor, command)
            except BusyError:
                if attempt == attempts:
                    raise
                logger.debug(
                    f"Skill {descriptor.skill_id} busy, retrying in {self.settings.busy_retry_delay_s}s "
                    f"(attempt {attempt}/{attempts})"
                )
                await asyncio.sleep(self.settings.busy_retry_delay_s)

    @asynccontextmanager
    async def lease(
        self,
        descriptor: SkillDescriptor,
        command: Optional[Sequence[str]] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[ProcessSupervisor]:
        """
        Lease a ready supervisor for the duration of the block

        A busy skill is retried ``busy_retries`` times before BusyError.
        When ``credentials`` differ from those the process was started
        with, the process is restarted with the new environment.

        On exit the supervisor is kept warm (``keep_warm``) or stopped, and
        released back to the pool.
        """
        supervisor = await self._acquire_with_retry(descriptor, command)
        try:
            if credentials is not None and credentials != supervisor.credentials:
                if supervisor.state != SupervisorState.NOT_STARTED:
                    logger.info(f"Restarting {descriptor.skill_id} with a different credential set")
                    await supervisor.stop()
                supervisor.credentials = dict(credentials)
            await supervisor.ensure_ready()
            yield supervisor
        finally:
            try:
                if not self.settings.keep_warm:
                    await supervisor.stop()
            finally:
                self.release(supervisor)

    def supervisors(self, skill_id: Optional[str] = None) -> List[ProcessSupervisor]:
        """Snapshot of the pool (all skills when ``skill_id`` is None)."""
        with self._lock:
            if skill_id is not None:
                return list(self._supervisors.get(skill_id, []))
            return [s for group in self._supervisors.values() for s in group]

    def in_use(self, skill_id: str) -> int:
        with self._lock:
            return sum(1 for s in self._supervisors.get(skill_id, []) if s.supervisor_id in self._leased)

    async def discard(self, skill_id: str):
        """Stop and forget every supervisor of a skill."""
        with self._lock:
            supervisors = self._supervisors.pop(skill_id, [])
            for supervisor in supervisors:
                self._leased.discard(supervisor.supervisor_id)
        for supervisor in supervisors:
            await supervisor.stop()
        if supervisors:
            logger.info(f"Discarded {len(supervisors)} supervisor(s) for {skill_id}")

    async def shutdown(self):
        """Stop every supervisor in the pool."""
        supervisors = self.supervisors()
        if not supervisors:
            return
        logger.info(f"Shutting down {len(supervisors)} skill process(es)")
        results = await asyncio.gather(*(s.stop() for s in supervisors), return_exceptions=True)
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping {supervisor.skill_id}: {result}", exc_info=result)
