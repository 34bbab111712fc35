"""
Supervisor data models

Lifecycle states of a supervised skill process and the handle describing
one live child.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, FrozenSet, Optional

import psutil
from ulid import ULID


class SupervisorState(str, Enum):
    """Lifecycle state of a supervised skill process"""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    BUSY = "busy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    RESTARTING = "restarting"
    FAILED = "failed"


_S = SupervisorState

ALLOWED_TRANSITIONS: Dict[SupervisorState, FrozenSet[SupervisorState]] = {
    _S.NOT_STARTED: frozenset({_S.STARTING}),
    _S.STARTING: frozenset({_S.HANDSHAKING, _S.STOPPING}),
    _S.HANDSHAKING: frozenset({_S.READY, _S.STOPPING}),
    _S.READY: frozenset({_S.BUSY, _S.STOPPING, _S.RESTARTING}),
    _S.BUSY: frozenset({_S.READY, _S.STOPPING, _S.RESTARTING}),
    _S.RESTARTING: frozenset({_S.STARTING, _S.STOPPING, _S.FAILED}),
    _S.STOPPING: frozenset({_S.STOPPED}),
    _S.STOPPED: frozenset({_S.STARTING, _S.FAILED}),
    _S.FAILED: frozenset({_S.STOPPING}),
}

# States in which a process is expected to be alive and answering
LIVE_STATES = frozenset({_S.READY, _S.BUSY})


def can_transition(current: SupervisorState, target: SupervisorState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class ProcessHandle:
    """
    One live skill child process

    Exclusively owned by a single supervisor; discarded once the process
    has exited and teardown completed.
    """

    process: asyncio.subprocess.Process
    handle_id: str = field(default_factory=lambda: str(ULID()))
    started_at: float = field(default_factory=time.time)
    last_health_check: Optional[float] = None
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=200))

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_running(self) -> bool:
        if self.process.returncode is not None:
            return False
        try:
            return psutil.Process(self.pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def stderr_text(self, lines: int = 20) -> str:
        """Last ``lines`` lines of the diagnostic stream."""
        return "\n".join(list(self.stderr_tail)[-lines:])
