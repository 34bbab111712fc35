"""Exception classes for the skill runtime

Every error carries a ``category`` so the host can tell the user whether a
skill is unavailable, a task failed, or a permission was refused. The
remediation differs for each: install a runtime, retry the task, or change
settings.
"""

from typing import Optional


CATEGORY_UNAVAILABLE = "unavailable"
CATEGORY_TASK_FAILED = "task_failed"
CATEGORY_PERMISSION_REFUSED = "permission_refused"


class SkillHostError(Exception):
    """Base exception for all skill runtime errors"""

    category = CATEGORY_TASK_FAILED
    default_reason_code = "SKILL_ERROR"

    def __init__(
        self,
        message: str,
        reason_code: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason_code = reason_code or self.default_reason_code
        self.hint = hint

    def to_dict(self) -> dict:
        """Convert error to dictionary for display or serialization."""
        return {
            "error": type(self).__name__,
            "category": self.category,
            "reason_code": self.reason_code,
            "message": self.message,
            "hint": self.hint,
        }


class RuntimeUnavailableError(SkillHostError):
    """Raised when no usable runtime could be found or installed"""

    category = CATEGORY_UNAVAILABLE
    default_reason_code = "RUNTIME_UNAVAILABLE"


class RuntimeTooOldError(RuntimeUnavailableError):
    """Raised when the only runtimes found are older than required"""

    default_reason_code = "RUNTIME_TOO_OLD"

    def __init__(self, kind: str, found: str, minimum: str, path: Optional[str] = None):
        super().__init__(
            f"{kind} {found} is older than the required {minimum}"
            + (f" ({path})" if path else ""),
            hint=f"Upgrade {kind} to {minimum} or newer, or configure runtime_paths.{kind}",
        )
        self.kind = kind
        self.found = found
        self.minimum = minimum


class ProtocolMismatchError(SkillHostError):
    """Raised when the handshake with a skill process fails"""

    category = CATEGORY_UNAVAILABLE
    default_reason_code = "PROTOCOL_MISMATCH"


class MalformedMessageError(SkillHostError):
    """Raised when a protocol line cannot be decoded"""

    default_reason_code = "MALFORMED_MESSAGE"

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line


class BusyError(SkillHostError):
    """Raised when a skill process is already serving another task"""

    default_reason_code = "SKILL_BUSY"


class TaskTimeoutError(SkillHostError):
    """Raised when a task exceeds its deadline"""

    default_reason_code = "TASK_TIMEOUT"

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message, hint="Retry the task or raise its timeout")
        self.timeout_seconds = timeout_seconds


class CapabilityDeniedError(SkillHostError):
    """Raised when capability authorization fails"""

    category = CATEGORY_PERMISSION_REFUSED
    default_reason_code = "CAPABILITY_DENIED"

    def __init__(self, message: str, denied: Optional[dict] = None):
        super().__init__(
            message,
            hint="Change the skill's permissions or the tool mode in settings",
        )
        self.denied = dict(denied or {})


class ProcessCrashedError(SkillHostError):
    """Raised when a skill process exits unexpectedly"""

    default_reason_code = "PROCESS_CRASHED"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class SkillFailedError(SkillHostError):
    """Raised when a skill exhausted its restart budget or was taken out of service"""

    category = CATEGORY_UNAVAILABLE
    default_reason_code = "SKILL_FAILED"


class SkillTaskError(SkillHostError):
    """Raised when a skill answers a request with an error response"""

    default_reason_code = "SKILL_TASK_ERROR"

    def __init__(self, code: str, message: str):
        super().__init__(f"skill error {code}: {message}")
        self.code = code
        self.skill_message = message


class SessionCancelledError(SkillHostError):
    """Raised when the caller cancels a session before completion"""

    default_reason_code = "SESSION_CANCELLED"


class SkillNotFoundError(SkillHostError):
    """Raised when a skill id is not registered"""

    category = CATEGORY_UNAVAILABLE
    default_reason_code = "SKILL_NOT_FOUND"


class InvalidTransitionError(SkillHostError):
    """Raised on an illegal supervisor or skill lifecycle transition"""

    default_reason_code = "INVALID_TRANSITION"


class RuntimeInstallError(RuntimeUnavailableError):
    """Raised when downloading or running a runtime installer fails"""

    default_reason_code = "RUNTIME_INSTALL_FAILED"


class EventBacklogError(SkillHostError):
    """Raised when a session consumes its events too slowly to keep up"""

    default_reason_code = "EVENT_BACKLOG_OVERFLOW"

    def __init__(self, message: str):
        super().__init__(message, hint="Handle events faster or raise event_backlog_limit")


class CredentialMissingError(SkillHostError):
    """Raised when a required skill credential has no value"""

    category = CATEGORY_UNAVAILABLE
    default_reason_code = "CREDENTIAL_MISSING"

    def __init__(self, skill_id: str, name: str, hint: Optional[str] = None):
        super().__init__(f"Required credential '{name}' of skill {skill_id} is missing", hint=hint)
        self.skill_id = skill_id
        self.name = name
