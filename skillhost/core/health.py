"""
Health Monitor - periodic liveness probes for running skills

This module provides health monitoring for skill processes:
- ``health`` probes against ready/busy supervisors only
- Slow / unresponsive classification
- Forced restart after repeated unresponsive probes
- Quarantine of a skill whose probes keep failing across restarts

Health Status:
- OK: Answered within the slow threshold
- SLOW: Answered late, or reported a non-ok status
- UNRESPONSIVE: No answer in time, or the channel failed
- UNKNOWN: Not probed yet
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union

from skillhost.core.config import HealthSettings
from skillhost.core.errors import SkillHostError
from skillhost.core.supervisor.models import LIVE_STATES
from skillhost.core.supervisor.pool import SupervisorPool
from skillhost.core.supervisor.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

QuarantineCallback = Callable[[str, str], Union[None, Awaitable[None]]]


class HealthStatus(str, Enum):
    """Health status enumeration"""
    OK = "ok"
    SLOW = "slow"
    UNRESPONSIVE = "unresponsive"
    UNKNOWN = "unknown"


# Worst first
_SEVERITY = {
    HealthStatus.UNRESPONSIVE: 3,
    HealthStatus.SLOW: 2,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.OK: 0,
}


class HealthCheckResult:
    """
    Result of a health check

    Attributes:
        status: Current health status
        timestamp: When the check was performed
        message: Human-readable status message
        response_time_ms: Response time in milliseconds
        consecutive_failures: Number of consecutive failures
    """

    def __init__(
        self,
        status: HealthStatus,
        message: str,
        response_time_ms: Optional[int] = None,
        consecutive_failures: int = 0
    ):
        self.status = status
        self.timestamp = datetime.now()
        self.message = message
        self.response_time_ms = response_time_ms
        self.consecutive_failures = consecutive_failures

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "response_time_ms": self.response_time_ms,
            "consecutive_failures": self.consecutive_failures,
        }

    def __repr__(self):
        return (
            f"HealthCheckResult(status={self.status}, message={self.message}, "
            f"response_time_ms={self.response_time_ms})"
        )


class HealthMonitor:
    """
    Health monitor over every supervisor in a pool

    Example:
        monitor = HealthMonitor(pool, settings.health)
        await monitor.start()
        print(monitor.status("coding-agent").status)
        await monitor.stop()
    """

    def __init__(
        self,
        pool: SupervisorPool,
        settings: HealthSettings,
        on_quarantine: Optional[QuarantineCallback] = None,
    ):
        self.pool = pool
        self.settings = settings
        self.on_quarantine = on_quarantine
        self._results: Dict[str, HealthCheckResult] = {}
        # Keyed by supervisor id
        self._failures: Dict[str, int] = {}
        # Keyed by skill id; survives restarts of the skill's processes
        self._skill_failures: Dict[str, int] = {}
        self._monitoring_task: Optional[asyncio.Task] = None

    async def check(self, supervisor: ProcessSupervisor) -> HealthCheckResult:
        """
        Probe one supervisor

        Supervisors that are not ready or busy are reported UNKNOWN and
        not counted as failures.
        """
        key = supervisor.supervisor_id
        if supervisor.state not in LIVE_STATES:
            result = HealthCheckResult(
                HealthStatus.UNKNOWN,
                f"Not probed (state={supervisor.state.value})",
                consecutive_failures=self._failures.get(key, 0),
            )
            self._results[key] = result
            return result

        started = time.monotonic()
        try:
            reply = await supervisor.ping(timeout=self.settings.probe_timeout_s)
        except SkillHostError as e:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            logger.warning(
                f"Health probe failed for {supervisor.skill_id}: {e} "
                f"(failures: {failures})"
            )
            result = HealthCheckResult(
                HealthStatus.UNRESPONSIVE,
                f"Health check error: {e}",
                consecutive_failures=failures,
            )
            self._results[key] = result
            if failures >= self.settings.failure_threshold:
                logger.error(
                    f"Skill {supervisor.skill_id} unresponsive for {failures} probes, restarting"
                )
                self._failures[key] = 0
                supervisor.schedule_restart(f"{failures} consecutive failed health probes")
            await self._count_skill_failure(supervisor.skill_id, str(e))
            return result

        response_time_ms = int((time.monotonic() - started) * 1000)
        self._failures[key] = 0
        self._skill_failures.pop(supervisor.skill_id, None)

        if reply.status != "ok":
            status = HealthStatus.SLOW
            message = f"Skill reported {reply.status}" + (f": {reply.detail}" if reply.detail else "")
            logger.warning(f"Skill {supervisor.skill_id} degraded - {message}")
        elif response_time_ms > self.settings.slow_threshold_ms:
            status = HealthStatus.SLOW
            message = f"Skill responding slowly ({response_time_ms}ms)"
            logger.warning(f"Skill {supervisor.skill_id} slow - {message}")
        else:
            status = HealthStatus.OK
            message = "Skill healthy"
            logger.debug(f"Skill healthy: {supervisor.skill_id} ({response_time_ms}ms)")

        result = HealthCheckResult(status, message, response_time_ms=response_time_ms)
        self._results[key] = result
        return result

    async def _count_skill_failure(self, skill_id: str, reason: str):
        failures = self._skill_failures.get(skill_id, 0) + 1
        self._skill_failures[skill_id] = failures
        if not self.settings.auto_quarantine or failures < self.settings.quarantine_threshold:
            return
        self._skill_failures.pop(skill_id, None)
        logger.error(f"Quarantining skill {skill_id} after {failures} failed health checks: {reason}")
        if self.on_quarantine is None:
            return
        outcome = self.on_quarantine(skill_id, f"{failures} consecutive failed health checks: {reason}")
        if inspect.isawaitable(outcome):
            await outcome

    async def check_all(self) -> Dict[str, HealthCheckResult]:
        """Probe every live supervisor in the pool, keyed by supervisor id."""
        supervisors = self.pool.supervisors()
        self._prune(supervisors)
        results = {}
        for supervisor in supervisors:
            if supervisor.state in LIVE_STATES:
                results[supervisor.supervisor_id] = await self.check(supervisor)
        return results

    def _prune(self, supervisors):
        """Forget supervisors and skills that left the pool."""
        live_ids = {s.supervisor_id for s in supervisors}
        live_skills = {s.skill_id for s in supervisors}
        for key in [k for k in self._results if k not in live_ids]:
            del self._results[key]
        for key in [k for k in self._failures if k not in live_ids]:
            del self._failures[key]
        for skill_id in [k for k in self._skill_failures if k not in live_skills]:
            del self._skill_failures[skill_id]

    def status(self, skill_id: str) -> HealthCheckResult:
        """Worst status across the skill's supervisors (UNKNOWN if none)."""
        worst: Optional[HealthCheckResult] = None
        for supervisor in self.pool.supervisors(skill_id):
            result = self._results.get(supervisor.supervisor_id)
            if result is None:
                continue
            if worst is None or _SEVERITY[result.status] > _SEVERITY[worst.status]:
                worst = result
        if worst is None:
            return HealthCheckResult(HealthStatus.UNKNOWN, "No health data")
        return worst

    async def start(self, interval: Optional[float] = None):
        """Start periodic monitoring in the background."""
        if self._monitoring_task and not self._monitoring_task.done():
            logger.warning("Health monitoring already running")
            return
        interval = self.settings.interval_seconds if interval is None else interval
        self._monitoring_task = asyncio.create_task(self._monitoring_loop(interval))
        logger.info(f"Started health monitoring (interval: {interval}s)")

    async def stop(self):
        """Stop periodic monitoring."""
        if not self._monitoring_task or self._monitoring_task.done():
            return
        self._monitoring_task.cancel()
        try:
            await self._monitoring_task
        except asyncio.CancelledError:
            pass
        self._monitoring_task = None
        logger.info("Stopped health monitoring")

    async def _monitoring_loop(self, interval: float):
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.check_all()
                except Exception as e:
                    logger.error(f"Error in health monitoring loop: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug("Health monitoring cancelled")
            raise
