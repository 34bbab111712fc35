"""Process supervision - lifecycle, restart policy and pooling."""

from skillhost.core.supervisor.models import ProcessHandle, SupervisorState
from skillhost.core.supervisor.pool import SupervisorPool
from skillhost.core.supervisor.supervisor import ProcessSupervisor

__all__ = [
    "ProcessHandle",
    "SupervisorState",
    "SupervisorPool",
    "ProcessSupervisor",
]
