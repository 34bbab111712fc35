"""
Process Supervisor - lifecycle of one skill child process

This module provides:
- Spawning the skill with a minimal inherited environment
- The protocol handshake
- A single read loop that routes responses and session events
- Graceful stop with terminate/kill escalation over the process tree
- Restart with exponential backoff and a sliding-window restart budget

The supervisor is the only owner of its ProcessHandle. Sessions borrow it
through begin_task()/end_task() and never touch the streams directly.
"""

import asyncio
import logging
import os
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

import psutil
from ulid import ULID

from skillhost import __version__
from skillhost.core.config import RuntimeSettings
from skillhost.core.errors import (
    BusyError,
    InvalidTransitionError,
    MalformedMessageError,
    ProcessCrashedError,
    ProtocolMismatchError,
    RuntimeUnavailableError,
    SkillFailedError,
    SkillHostError,
    TaskTimeoutError,
)
from skillhost.core.rpc.codec import ProtocolCodec
from skillhost.core.rpc.messages import (
    MAX_LINE_BYTES,
    PROTOCOL_VERSION,
    Event,
    HandshakeResult,
    Response,
)
from skillhost.core.supervisor.channel import EventChannel
from skillhost.core.supervisor.models import (
    LIVE_STATES,
    ProcessHandle,
    SupervisorState,
    can_transition,
)
from skillhost.skills.manifest import SkillDescriptor

logger = logging.getLogger(__name__)

# Variables a skill inherits from the host; everything else is dropped
INHERITED_ENV_VARS = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "SYSTEMROOT")

# Handshake failures in a row that mark the skill failed
MAX_HANDSHAKE_FAILURES = 2

StateListener = Callable[["ProcessSupervisor", SupervisorState, SupervisorState], None]


def build_environment(
    overrides: Optional[Dict[str, str]] = None,
    credentials: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Minimal child environment

    A few inherited variables, then the entry point's own variables, then
    mediated credentials (only passed when the session was granted
    ``credential_read``).
    """
    env = {name: os.environ[name] for name in INHERITED_ENV_VARS if name in os.environ}
    env.update(overrides or {})
    env.update(credentials or {})
    return env


def default_cwd(command: Sequence[str]) -> Optional[str]:
    """Directory of the entry script if the command names one, else None."""
    for part in command[1:]:
        candidate = Path(part)
        if candidate.suffix and candidate.is_file():
            return str(candidate.resolve().parent)
    return None


def kill_process_tree(pid: int):
    """Kill ``pid``'s descendants (the process itself is killed by the caller)."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(children, timeout=1.0)


class ProcessSupervisor:
    """
    Supervisor for one skill child process

    Example:
        supervisor = ProcessSupervisor(descriptor, settings)
        await supervisor.start()
        supervisor.begin_task()
        try:
            result = await supervisor.request("health", {}, timeout=5.0)
        finally:
            supervisor.end_task()
        await supervisor.stop()
    """

    def __init__(
        self,
        descriptor: SkillDescriptor,
        settings: RuntimeSettings,
        command: Optional[Sequence[str]] = None,
        on_state_change: Optional[StateListener] = None,
    ):
        """
        Initialize supervisor

        Args:
            descriptor: Skill to run
            settings: Runtime settings (timeouts, restart policy)
            command: Resolved command line (default: the descriptor's entry command)
            on_state_change: Callback invoked after every state transition
        """
        self.descriptor = descriptor
        self.settings = settings
        self.command: Tuple[str, ...] = tuple(command or descriptor.entry.command)
        self.supervisor_id = str(ULID())
        self.on_state_change = on_state_change

        self.state = SupervisorState.NOT_STARTED
        self.history: List[Tuple[SupervisorState, SupervisorState]] = []
        self.handle: Optional[ProcessHandle] = None
        self.codec: Optional[ProtocolCodec] = None
        self.handshake: Optional[HandshakeResult] = None
        self.handshake_count = 0
        self.last_error: Optional[str] = None

        self._consecutive_handshake_failures = 0
        self._restart_times: Deque[float] = deque()
        self._restart_attempt = 0
        self._read_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._lifecycle_lock = asyncio.Lock()
        self._event_channels: Dict[str, EventChannel] = {}
        # Mediated credentials for the next launch; see SupervisorPool.lease()
        self.credentials: Dict[str, str] = {}

    @property
    def skill_id(self) -> str:
        return self.descriptor.skill_id

    @property
    def is_ready(self) -> bool:
        return self.state == SupervisorState.READY

    @property
    def is_alive(self) -> bool:
        return self.state in LIVE_STATES and self.handle is not None and self.handle.is_running()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: SupervisorState):
        current = self.state
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Invalid supervisor transition for {self.skill_id}: {current.value} -> {target.value}"
            )
        self.state = target
        self.history.append((current, target))
        logger.debug(f"Supervisor {self.skill_id}: {current.value} -> {target.value}")
        if self.on_state_change:
            try:
                self.on_state_change(self, current, target)
            except Exception as e:
                logger.error(f"State listener failed for {self.skill_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """
        Spawn the skill process and perform the handshake

        No-op when the process is already ready or busy.

        Raises:
            SkillFailedError: If the supervisor has failed
            RuntimeUnavailableError: If the process cannot be spawned
            ProtocolMismatchError: If the handshake fails
        """
        async with self._lifecycle_lock:
            if self.state in LIVE_STATES:
                return
            if self.state == SupervisorState.FAILED:
                raise SkillFailedError(
                    f"Skill {self.skill_id} has failed: {self.last_error}",
                    hint="Reinstall the skill or check its logs",
                )
            if self.state in (SupervisorState.STARTING, SupervisorState.HANDSHAKING):
                raise InvalidTransitionError(f"Supervisor {self.skill_id} is already starting")
            if self.state == SupervisorState.RESTARTING:
                raise BusyError(f"Skill {self.skill_id} is restarting")
            self._transition(SupervisorState.STARTING)
            await self._launch()

    async def ensure_ready(self):
        """Wait out a background restart, then start() if not running."""
        if self._restart_task and not self._restart_task.done():
            await self._restart_task
        await self.start()

    async def _launch(self):
        """Spawn + handshake from the STARTING state."""
        logger.info(f"Starting skill process: {self.skill_id}")
        logger.debug(f"Command: {' '.join(self.command)}")

        cwd = self.descriptor.entry.cwd or default_cwd(self.command)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=build_environment(self.descriptor.entry.env, self.credentials),
                limit=MAX_LINE_BYTES * 2,
            )
        except OSError as e:
            self.last_error = f"spawn failed: {e}"
            logger.error(f"Failed to spawn skill {self.skill_id}: {e}")
            self._transition(SupervisorState.STOPPING)
            self._transition(SupervisorState.STOPPED)
            raise RuntimeUnavailableError(
                f"Cannot start skill {self.skill_id}: {e}",
                hint="Check the skill's entry command and runtime",
            ) from e

        handle = ProcessHandle(process=process)
        codec = ProtocolCodec(process.stdout, process.stdin, name=self.skill_id)
        self.handle = handle
        self.codec = codec
        self._read_task = asyncio.create_task(self._read_loop(handle, codec))
        self._stderr_task = asyncio.create_task(self._drain_stderr(handle))
        logger.info(f"Skill process started: {self.skill_id} (pid={handle.pid})")

        self._transition(SupervisorState.HANDSHAKING)
        try:
            self.handshake = await self._handshake(codec)
        except ProtocolMismatchError as e:
            self.last_error = e.message
            self._consecutive_handshake_failures += 1
            logger.error(
                f"Handshake failed for {self.skill_id} "
                f"({self._consecutive_handshake_failures} in a row): {e.message}"
            )
            self._transition(SupervisorState.STOPPING)
            await self._teardown_process()
            self._transition(SupervisorState.STOPPED)
            if self._consecutive_handshake_failures >= MAX_HANDSHAKE_FAILURES:
                self._transition(SupervisorState.FAILED)
            raise

        self._consecutive_handshake_failures = 0
        self.handshake_count += 1
        self._transition(SupervisorState.READY)
        logger.info(f"Skill ready: {self.skill_id} (handle={handle.handle_id})")

    async def _handshake(self, codec: ProtocolCodec) -> HandshakeResult:
        timeout = self.settings.handshake_timeout_s
        try:
            request_id = await codec.write_request(
                "handshake",
                {
                    "protocol_version": PROTOCOL_VERSION,
                    "skill_id": self.skill_id,
                    "host_version": __version__,
                },
            )
            result = await codec.wait_response(request_id, timeout=timeout)
        except asyncio.TimeoutError:
            raise ProtocolMismatchError(f"No handshake response from {self.skill_id} within {timeout}s")
        except (SkillHostError, OSError) as e:
            raise ProtocolMismatchError(f"Handshake with {self.skill_id} failed: {e}") from e

        if result.protocol_version != PROTOCOL_VERSION:
            raise ProtocolMismatchError(
                f"Protocol version mismatch for {self.skill_id}: "
                f"host speaks {PROTOCOL_VERSION}, skill speaks {result.protocol_version}"
            )
        if result.skill_id != self.skill_id:
            raise ProtocolMismatchError(
                f"Skill id mismatch: expected {self.skill_id}, process reported {result.skill_id}"
            )
        declared = {c.value for c in self.descriptor.capabilities}
        undeclared = sorted(set(result.capabilities) - declared)
        if undeclared:
            raise ProtocolMismatchError(
                f"Skill {self.skill_id} announced undeclared capabilities: {', '.join(undeclared)}"
            )
        return result

    async def stop(self):
        """
        Stop the skill process

        Sends ``shutdown``, waits the stop grace period, then terminates and
        finally kills the process tree. Idempotent.
        """
        if self._restart_task and not self._restart_task.done() and self._restart_task is not asyncio.current_task():
            self._restart_task.cancel()
            try:
                await self._restart_task
            except asyncio.CancelledError:
                pass
            except SkillHostError as e:
                logger.debug(f"Pending restart of {self.skill_id} ended with: {e}")

        async with self._lifecycle_lock:
            if self.state in (SupervisorState.NOT_STARTED, SupervisorState.STOPPED):
                return
            logger.info(f"Stopping skill process: {self.skill_id}")
            self._transition(SupervisorState.STOPPING)
            await self._teardown_process(graceful=True)
            self._transition(SupervisorState.STOPPED)
            logger.info(f"Skill process stopped: {self.skill_id}")

    async def _teardown_process(self, graceful: bool = False):
        """Bring the current process down and release its resources."""
        handle, codec = self.handle, self.codec
        if handle is None:
            return

        if graceful and codec is not None and handle.is_running():
            try:
                request_id = await codec.write_request("shutdown", {})
                await codec.wait_response(request_id, timeout=self.settings.stop_grace_s)
            except (asyncio.TimeoutError, SkillHostError, OSError) as e:
                logger.debug(f"Shutdown request to {self.skill_id} not acknowledged: {e}")

        if codec is not None:
            codec.close()

        process = handle.process
        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.stop_grace_s)
            except asyncio.TimeoutError:
                logger.debug(f"Terminating skill process {self.skill_id} (pid={handle.pid})")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.settings.stop_grace_s)
                except asyncio.TimeoutError:
                    logger.warning(f"Process did not terminate gracefully, killing: {self.skill_id}")
                    kill_process_tree(handle.pid)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        if codec is not None:
            codec.fail_pending(ProcessCrashedError(f"Skill {self.skill_id} stopped", process.returncode))

        for task in (self._read_task, self._stderr_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._read_task = None
        self._stderr_task = None
        self.handle = None
        self.codec = None

    async def restart(self, reason: str):
        """
        Restart the skill process after a backoff delay

        Attempts are counted in a sliding window; exhausting the budget
        moves the supervisor to FAILED.

        Raises:
            SkillFailedError: If the restart budget is exhausted
            ProtocolMismatchError: If the new process fails its handshake
        """
        async with self._lifecycle_lock:
            if self.state not in (SupervisorState.READY, SupervisorState.BUSY):
                logger.debug(f"Ignoring restart of {self.skill_id} in state {self.state.value}")
                return

            policy = self.settings.restart
            self._transition(SupervisorState.RESTARTING)
            self.last_error = reason

            now = time.monotonic()
            while self._restart_times and now - self._restart_times[0] > policy.window_seconds:
                self._restart_times.popleft()
            if not self._restart_times:
                self._restart_attempt = 0

            if len(self._restart_times) >= policy.max_restarts:
                logger.error(
                    f"Restart budget exhausted for {self.skill_id} "
                    f"({policy.max_restarts} in {policy.window_seconds}s): {reason}"
                )
                await self._teardown_process()
                self._transition(SupervisorState.FAILED)
                raise SkillFailedError(f"Skill {self.skill_id} exceeded its restart budget: {reason}")

            self._restart_times.append(now)
            delay = policy.backoff_for_attempt(self._restart_attempt)
            self._restart_attempt += 1
            logger.warning(
                f"Restarting skill {self.skill_id} in {delay:.1f}s "
                f"(attempt {len(self._restart_times)}/{policy.max_restarts}): {reason}"
            )

            await self._teardown_process()
            if delay > 0:
                await asyncio.sleep(delay)
            self._transition(SupervisorState.STARTING)
            await self._launch()

    def schedule_restart(self, reason: str) -> asyncio.Task:
        """Run restart() in the background (used by the read loop and health monitor)."""
        if self._restart_task and not self._restart_task.done():
            return self._restart_task
        self._restart_task = asyncio.create_task(self._run_restart(reason))
        return self._restart_task

    async def _run_restart(self, reason: str):
        try:
            await self.restart(reason)
        except SkillHostError as e:
            logger.error(f"Background restart of {self.skill_id} failed: {e}")

    # ------------------------------------------------------------------
    # Tasks and requests
    # ------------------------------------------------------------------

    def begin_task(self):
        """
        Mark the process busy with a task

        Raises:
            BusyError: If another task is in progress or the process is not ready
        """
        if self.state == SupervisorState.BUSY:
            raise BusyError(f"Skill {self.skill_id} is busy with another task")
        if self.state != SupervisorState.READY:
            raise BusyError(f"Skill {self.skill_id} is not ready (state={self.state.value})")
        self._transition(SupervisorState.BUSY)

    def end_task(self):
        """Return to READY after a task; a no-op if the process was stopped meanwhile."""
        if self.state == SupervisorState.BUSY:
            self._transition(SupervisorState.READY)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """
        Send a request and wait for its response

        Raises:
            ProcessCrashedError: If no process is running or it exits
            TaskTimeoutError: If the response does not arrive in time
            SkillTaskError: If the skill answers with an error
        """
        codec = self._require_codec()
        timeout = self.settings.request_timeout_s if timeout is None else timeout
        request_id = await self.send(method, params)
        try:
            return await codec.wait_response(request_id, timeout=timeout)
        except asyncio.TimeoutError:
            raise TaskTimeoutError(f"Request {method} to {self.skill_id} timed out after {timeout}s", timeout)

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Write a request without waiting; returns the request id."""
        codec = self._require_codec()
        try:
            return await codec.write_request(method, params)
        except (ConnectionResetError, BrokenPipeError) as e:
            raise ProcessCrashedError(f"Channel to {self.skill_id} is closed: {e}") from e

    async def wait_response(self, request_id: int, timeout: Optional[float] = None) -> Any:
        """Wait for the response to a request written with send()."""
        return await self._require_codec().wait_response(request_id, timeout=timeout)

    async def ping(self, timeout: float) -> Any:
        """Send a ``health`` request and record the probe time."""
        result = await self.request("health", {}, timeout=timeout)
        if self.handle is not None:
            self.handle.last_health_check = time.time()
        return result

    def _require_codec(self) -> ProtocolCodec:
        if self.codec is None or self.handle is None:
            raise ProcessCrashedError(f"Skill {self.skill_id} is not running (state={self.state.value})")
        return self.codec

    # ------------------------------------------------------------------
    # Event channels
    # ------------------------------------------------------------------

    def open_channel(self, session_id: str) -> EventChannel:
        """Register a bounded event channel for a session."""
        channel = EventChannel(
            session_id,
            depth=self.settings.event_queue_depth,
            backlog_limit=self.settings.event_backlog_limit,
        )
        self._event_channels[session_id] = channel
        return channel

    def channel(self, session_id: str) -> Optional[EventChannel]:
        return self._event_channels.get(session_id)

    def close_channel(self, session_id: str):
        """Unregister and close a session's channel; later events are dropped."""
        channel = self._event_channels.pop(session_id, None)
        if channel is not None:
            channel.close()

    def _signal_channels(self, exc: BaseException):
        for channel in self._event_channels.values():
            channel.fail(exc)

    # ------------------------------------------------------------------
    # Background readers
    # ------------------------------------------------------------------

    async def _read_loop(self, handle: ProcessHandle, codec: ProtocolCodec):
        """
        Read loop for one process

        The only reader of the process's stdout. Routes responses to the
        codec and events to their session channel.
        """
        try:
            while True:
                try:
                    message = await codec.read_message()
                except MalformedMessageError as e:
                    logger.warning(f"Malformed line from {self.skill_id}: {e.message}")
                    self._signal_channels(e)
                    continue

                if message is None:
                    break
                if isinstance(message, Response):
                    codec.dispatch_response(message)
                elif isinstance(message, Event):
                    channel = self._event_channels.get(message.session_id)
                    if channel is None:
                        logger.debug(f"Dropping event for unknown session {message.session_id} from {self.skill_id}")
                        continue
                    # Never waits: responses behind this event must keep flowing
                    channel.offer(message)
                else:
                    logger.warning(f"Ignoring request from skill {self.skill_id}: {message.method}")

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.error(f"Error in read loop for {self.skill_id}: {e}", exc_info=True)

        await self._on_stdout_closed(handle, codec)

    async def _on_stdout_closed(self, handle: ProcessHandle, codec: ProtocolCodec):
        if handle is not self.handle:
            return
        if self.state in (SupervisorState.STOPPING, SupervisorState.STOPPED, SupervisorState.RESTARTING):
            return

        try:
            returncode = await asyncio.wait_for(handle.process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            returncode = None

        stderr = handle.stderr_text()
        logger.warning(
            f"Skill process {self.skill_id} exited unexpectedly (code={returncode})"
            + (f"; stderr tail:\n{stderr}" if stderr else "")
        )
        exc = ProcessCrashedError(f"Skill process {self.skill_id} exited unexpectedly", exit_code=returncode)
        codec.fail_pending(exc)
        self._signal_channels(exc)

        if self.state in LIVE_STATES:
            self.schedule_restart(f"process exited with code {returncode}")

    async def _drain_stderr(self, handle: ProcessHandle):
        """Keep the diagnostic stream flowing into the tail buffer."""
        stream = handle.process.stderr
        if stream is None:
            return
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                handle.stderr_tail.append(text)
                logger.debug(f"[{self.skill_id} stderr] {text}")
        except ValueError as e:
            logger.debug(f"stderr reader stopped for {self.skill_id}: {e}")
