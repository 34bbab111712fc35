"""
Invocation Session - one task sent to a skill, start to finish

A session:
1. Authorizes the capability set through the gate (snapshot for its lifetime)
2. Marks the supervisor busy and opens an event channel
3. Sends the skill's prompt-class request
4. Forwards events to the caller in arrival order until the response
5. Aborts on timeout or cancellation

Every session ends in exactly one outcome: a result, a typed error, or
cancellation.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Union

from ulid import ULID

from skillhost.core.config import RuntimeSettings
from skillhost.core.errors import (
    ProcessCrashedError,
    SessionCancelledError,
    SkillHostError,
    SkillTaskError,
    TaskTimeoutError,
)
from skillhost.core.gate.gate import CapabilityGate
from skillhost.core.gate.models import Decision
from skillhost.core.rpc.messages import Event
from skillhost.core.supervisor.channel import EventChannel
from skillhost.core.supervisor.supervisor import ProcessSupervisor
from skillhost.skills.manifest import Capability

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class SessionResult:
    """Final result of a completed session"""

    session_id: str
    skill_id: str
    output: Any
    granted: FrozenSet[Capability] = frozenset()
    event_count: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "skill_id": self.skill_id,
            "output": self.output,
            "granted": sorted(c.value for c in self.granted),
            "event_count": self.event_count,
            "duration_ms": self.duration_ms,
        }


class InvocationSession:
    """
    One task run on a leased supervisor

    Example:
        async with pool.lease(descriptor) as supervisor:
            session = InvocationSession(supervisor, gate, settings)
            result = await session.run("list files in /tmp", on_event=print)
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        gate: CapabilityGate,
        settings: RuntimeSettings,
        session_id: Optional[str] = None,
    ):
        self.supervisor = supervisor
        self.gate = gate
        self.settings = settings
        self.session_id = session_id or str(ULID())
        self.descriptor = supervisor.descriptor
        self.handle_id: Optional[str] = supervisor.handle.handle_id if supervisor.handle else None

        self.decision: Optional[Decision] = None
        self.event_count = 0
        self.abort_sent = False
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def skill_id(self) -> str:
        return self.descriptor.skill_id

    async def run(
        self,
        task: str,
        on_event: Optional[EventCallback] = None,
        capabilities: Optional[Iterable] = None,
        timeout: Optional[float] = None,
        decision: Optional[Decision] = None,
    ) -> SessionResult:
        """
        Run a task to completion

        Args:
            task: Task text for the skill
            on_event: Called with each event in arrival order (sync or async)
            capabilities: Capabilities to request (default: the declared set)
            timeout: Seconds before the task is aborted (default: settings)
            decision: Authorization already made for this session; the gate
                is not asked again

        Returns:
            SessionResult

        Raises:
            CapabilityDeniedError: If authorization fails (nothing is sent)
            BusyError: If the supervisor is serving another task
            TaskTimeoutError: If the deadline passes (after one abort)
            SessionCancelledError: If cancel() was called
            SkillTaskError: If the skill answers with an error
            ProcessCrashedError: If the process exits mid-task
            MalformedMessageError: If the skill writes an undecodable line
        """
        timeout = self.settings.default_timeout_s if timeout is None else timeout
        started = time.monotonic()

        if decision is None:
            decision = await self.gate.authorize(
                self.descriptor, requested=capabilities, session_id=self.session_id
            )
        self.decision = decision
        self.decision.require()

        self.supervisor.begin_task()
        channel = self.supervisor.open_channel(self.session_id)
        logger.info(
            f"Session {self.session_id} started on {self.skill_id}",
            extra={
                "skill_id": self.skill_id,
                "session_id": self.session_id,
                "capabilities": sorted(c.value for c in self.decision.granted),
            },
        )
        try:
            output = await self._run_bounded(task, channel, on_event, timeout)
        finally:
            self.supervisor.close_channel(self.session_id)
            self.supervisor.end_task()

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Session {self.session_id} completed on {self.skill_id} ({duration_ms}ms, {self.event_count} events)",
            extra={"skill_id": self.skill_id, "session_id": self.session_id, "success": True},
        )
        return SessionResult(
            session_id=self.session_id,
            skill_id=self.skill_id,
            output=output,
            granted=self.decision.granted,
            event_count=self.event_count,
            duration_ms=duration_ms,
        )

    async def _run_bounded(self, task: str, channel: EventChannel, on_event, timeout: float) -> Any:
        self._pump_task = asyncio.ensure_future(self._pump(task, channel, on_event))
        try:
            done, _ = await asyncio.wait({self._pump_task}, timeout=timeout)
        except asyncio.CancelledError:
            self._pump_task.cancel()
            logger.info(f"Session {self.session_id} cancelled by its caller")
            await self._abort_closed()
            raise

        if not done:
            self._pump_task.cancel()
            logger.warning(f"Session {self.session_id} timed out after {timeout}s")
            await self._abort_closed()
            raise TaskTimeoutError(f"Task on {self.skill_id} timed out after {timeout}s", timeout)

        if self._pump_task.cancelled():
            await self._abort_closed()
            raise SessionCancelledError(f"Session {self.session_id} was cancelled")

        try:
            return self._pump_task.result()
        except (SkillTaskError, ProcessCrashedError):
            # The skill already ended the task (or is gone)
            raise
        except Exception:
            await self._abort_closed()
            raise

    async def _pump(self, task: str, channel: EventChannel, on_event) -> Any:
        """Send the task, forward events, return the response result."""
        method = self.descriptor.prompt_method
        params = {
            "session_id": self.session_id,
            "task": task,
            "capabilities": sorted(c.value for c in self.decision.granted),
        }
        request_id = await self.supervisor.send(method, params)
        response = asyncio.ensure_future(self.supervisor.wait_response(request_id))
        getter: Optional[asyncio.Future] = None

        try:
            while True:
                getter = asyncio.ensure_future(channel.get())
                done, _ = await asyncio.wait({getter, response}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    break
                await self._deliver(getter.result(), on_event)

            # Events that arrived ahead of the response
            while not channel.empty():
                await self._deliver(channel.get_nowait(), on_event)

            return response.result()
        finally:
            for future in (getter, response):
                if future is not None and not future.done():
                    future.cancel()

    async def _deliver(self, item, on_event):
        if isinstance(item, BaseException):
            raise item
        self.event_count += 1
        if on_event is None:
            return
        result = on_event(item)
        if inspect.isawaitable(result):
            await result

    async def _abort_closed(self):
        """Stop event delivery, then abort."""
        self.supervisor.close_channel(self.session_id)
        await self._abort()

    async def _abort(self):
        """Send one abort; force-stop the process if it is not acknowledged."""
        if self.abort_sent:
            return
        self.abort_sent = True

        grace = self.settings.abort_grace_s
        try:
            await self.supervisor.request("abort", {"session_id": self.session_id}, timeout=grace)
            logger.info(f"Abort acknowledged for session {self.session_id}")
            return
        except SkillTaskError as e:
            logger.info(f"Skill answered abort for {self.session_id} with an error: {e}")
            return
        except (TaskTimeoutError, ProcessCrashedError) as e:
            logger.warning(f"Abort not acknowledged for session {self.session_id}: {e}; stopping process")
        except SkillHostError as e:
            logger.warning(f"Abort failed for session {self.session_id}: {e}; stopping process")

        await self.supervisor.stop()

    def cancel(self):
        """Cancel the running task; run() raises SessionCancelledError."""
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Send a skill-category request (e.g. ``get_state``) on this session's process."""
        return await self.supervisor.request(method, params, timeout=timeout)
