"""Line-delimited JSON protocol spoken with skill processes."""

from skillhost.core.rpc.codec import ProtocolCodec
from skillhost.core.rpc.messages import (
    METHOD_SCHEMAS,
    PROTOCOL_VERSION,
    Event,
    EventKind,
    Request,
    Response,
    RpcMessage,
    decode_message,
    encode_message,
)

__all__ = [
    "ProtocolCodec",
    "METHOD_SCHEMAS",
    "PROTOCOL_VERSION",
    "Event",
    "EventKind",
    "Request",
    "Response",
    "RpcMessage",
    "decode_message",
    "encode_message",
]
