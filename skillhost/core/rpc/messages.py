"""
Skill Protocol Messages - line-delimited JSON over stdio

Every line carries exactly one message, one of three shapes:
- Request:  {"id": <int>, "method": <string>, "params": <object>}
- Response: {"id": <int>, "result": <any>}
            {"id": <int>, "error": {"code": <string|int>, "message": <string>}}
- Event:    {"session_id": <string>, "kind": <string>, "payload": <any>}

Requests flow host -> skill; responses and events flow skill -> host.
Ids are assigned by the host and are unique per process.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    ValidationError,
    field_validator,
    model_validator,
)

from skillhost.core.errors import MalformedMessageError

PROTOCOL_VERSION = "1"
MAX_LINE_BYTES = 100 * 1024


class EventKind(str, Enum):
    """Kinds of events a skill may stream during a session"""
    PROGRESS = "progress"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_RESULT = "tool_call_result"
    PARTIAL_OUTPUT = "partial_output"
    COMPLETED = "completed"
    ABORTED = "aborted"
    LOG = "log"


class ErrorPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str

    @field_validator("code", mode="before")
    @classmethod
    def coerce_code(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, str)):
            raise ValueError("error code must be a string or integer")
        return str(v)


class Request(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: StrictInt
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "method": self.method, "params": self.params}


class Response(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: StrictInt
    result: Any = None
    error: Optional[ErrorPayload] = None

    @model_validator(mode="after")
    def check_result_or_error(self):
        has_result = "result" in self.model_fields_set
        has_error = "error" in self.model_fields_set and self.error is not None
        if has_result == has_error:
            raise ValueError("response must carry exactly one of 'result' or 'error'")
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": self.error.model_dump()}
        return {"id": self.id, "result": self.result}


class Event(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    kind: EventKind
    payload: Any = None

    def to_wire(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "kind": self.kind.value, "payload": self.payload}


RpcMessage = Union[Request, Response, Event]


# ============================================================================
# Method table
# ============================================================================


class HandshakeParams(BaseModel):
    protocol_version: str = PROTOCOL_VERSION
    skill_id: str
    host_version: str


class HandshakeResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    protocol_version: str
    skill_id: str
    capabilities: List[str] = Field(default_factory=list)


class TaskParams(BaseModel):
    """Params of the prompt-class methods (``invoke`` and ``prompt``)."""

    session_id: str
    task: str
    capabilities: List[str] = Field(default_factory=list)


class SessionParams(BaseModel):
    session_id: str


class OptionalSessionParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: Optional[str] = None


class EmptyParams(BaseModel):
    model_config = ConfigDict(extra="allow")


class AbortResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    aborted: bool = True


class HealthResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str = "ok"
    detail: Optional[str] = None


class OpenResult(BaseModel):
    """Result of methods whose answer is skill-defined."""

    model_config = ConfigDict(extra="allow")


class NewSessionResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: Optional[str] = None


@dataclass(frozen=True)
class MethodSchema:
    """Params/result models for one protocol method.

    A ``result`` of None accepts any JSON value (task results are
    skill-defined).
    """

    params: Type[BaseModel]
    result: Optional[Type[BaseModel]]


METHOD_SCHEMAS: Dict[str, MethodSchema] = {
    "handshake": MethodSchema(HandshakeParams, HandshakeResult),
    "invoke": MethodSchema(TaskParams, None),
    "prompt": MethodSchema(TaskParams, None),
    "abort": MethodSchema(SessionParams, AbortResult),
    "health": MethodSchema(EmptyParams, HealthResult),
    "shutdown": MethodSchema(EmptyParams, OpenResult),
    "get_state": MethodSchema(OptionalSessionParams, OpenResult),
    "new_session": MethodSchema(EmptyParams, NewSessionResult),
}


def validate_params(method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate request params against the method table.

    Raises:
        ValueError: If the method is unknown or the params do not match
    """
    schema = METHOD_SCHEMAS.get(method)
    if schema is None:
        raise ValueError(f"Unknown protocol method: {method}")
    try:
        model = schema.params(**(params or {}))
    except ValidationError as e:
        raise ValueError(f"Invalid params for {method}: {e}") from e
    return model.model_dump(exclude_none=True)


def validate_result(method: str, result: Any) -> Any:
    """Validate a response result against the result model of ``method``.

    Returns the validated model, or the raw value for skill-defined results.

    Raises:
        MalformedMessageError: If the result does not match
    """
    schema = METHOD_SCHEMAS.get(method)
    if schema is None or schema.result is None:
        return result
    if result is None:
        result = {}
    if not isinstance(result, dict):
        raise MalformedMessageError(f"Result of {method} must be an object, got {type(result).__name__}")
    try:
        return schema.result(**result)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid result for {method}: {e}") from e


# ============================================================================
# Line encoding
# ============================================================================


def encode_message(message: RpcMessage) -> bytes:
    """Serialize a message to one newline-terminated UTF-8 line."""
    line = json.dumps(message.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return line.encode("utf-8") + b"\n"


def decode_message(line: Union[str, bytes], max_line_bytes: int = MAX_LINE_BYTES) -> RpcMessage:
    """Parse one protocol line into a Request, Response or Event.

    Args:
        line: Raw line, with or without the trailing newline
        max_line_bytes: Upper bound on the encoded line length

    Returns:
        The decoded message

    Raises:
        MalformedMessageError: On oversized lines, invalid JSON, unknown
            shapes, unknown event kinds or non-integer ids
    """
    raw = line.encode("utf-8") if isinstance(line, str) else line
    if len(raw) > max_line_bytes:
        raise MalformedMessageError(
            f"Line of {len(raw)} bytes exceeds the {max_line_bytes} byte limit"
        )

    text = raw.decode("utf-8", errors="replace").strip()
    preview = text[:200]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(f"Invalid JSON: {e}", line=preview) from e

    if not isinstance(data, dict):
        raise MalformedMessageError("Message must be a JSON object", line=preview)

    if "method" in data:
        model: Type[BaseModel] = Request
    elif "session_id" in data and "kind" in data:
        model = Event
    elif "id" in data:
        model = Response
    else:
        raise MalformedMessageError("Unrecognized message shape", line=preview)

    try:
        return model(**data)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid {model.__name__.lower()}: {e}", line=preview) from e
