"""
Protocol Codec - framing and request/response correlation

The codec owns the byte-level side of one skill process's stdio channel:
- Writes are serialized through a single asyncio.Lock
- Request ids are allocated monotonically per codec
- Responses resolve the future registered for their id; an unmatched
  response is dropped with a warning

Reading is driven by the supervisor's read loop, which is the only reader
of the stream.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from skillhost.core.errors import MalformedMessageError, SkillTaskError
from skillhost.core.rpc.messages import (
    MAX_LINE_BYTES,
    Request,
    Response,
    RpcMessage,
    decode_message,
    encode_message,
    validate_params,
    validate_result,
)

logger = logging.getLogger(__name__)


class _PendingRequest:
    __slots__ = ("method", "future")

    def __init__(self, method: str, future: asyncio.Future):
        self.method = method
        self.future = future


class ProtocolCodec:
    """
    Line codec over an asyncio stream pair

    Example:
        codec = ProtocolCodec(process.stdout, process.stdin)
        request_id = await codec.write_request("health", {})
        result = await codec.wait_response(request_id, timeout=5.0)
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer,
        max_line_bytes: int = MAX_LINE_BYTES,
        name: str = "skill",
    ):
        """
        Initialize codec

        Args:
            reader: Stream the skill writes to (its stdout)
            writer: Stream the skill reads from (its stdin)
            max_line_bytes: Maximum accepted line length
            name: Label used in log messages
        """
        self.reader = reader
        self.writer = writer
        self.max_line_bytes = max_line_bytes
        self.name = name
        self._next_id = 0
        self._write_lock = asyncio.Lock()
        self._pending: Dict[int, _PendingRequest] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register(self, request_id: int, method: str) -> asyncio.Future:
        """Register interest in the response to ``request_id``."""
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingRequest(method, future)
        return future

    async def write_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> int:
        """
        Send a request and register its response future

        The future is registered before the line is written so a fast
        response can never race the registration.

        Args:
            method: Protocol method name (must be in the method table)
            params: Method parameters

        Returns:
            The allocated request id

        Raises:
            ValueError: If the method is unknown or params are invalid
            ConnectionResetError: If the channel is closed
        """
        validated = validate_params(method, params)

        async with self._write_lock:
            if self._closed:
                raise ConnectionResetError(f"Channel to {self.name} is closed")
            self._next_id += 1
            request_id = self._next_id
            self.register(request_id, method)
            try:
                await self._write_line(encode_message(Request(id=request_id, method=method, params=validated)))
            except BaseException:
                self._pending.pop(request_id, None)
                raise

        logger.debug(f"Sent request to {self.name}: {method} (id={request_id})")
        return request_id

    async def write_message(self, message: RpcMessage):
        """Write an already-built message (responses and events)."""
        async with self._write_lock:
            if self._closed:
                raise ConnectionResetError(f"Channel to {self.name} is closed")
            await self._write_line(encode_message(message))

    async def wait_response(self, request_id: int, timeout: Optional[float] = None) -> Any:
        """
        Wait for the response to a previously written request

        The pending entry is dropped on every exit path, so a response
        arriving after a timeout is treated as unmatched.

        Raises:
            asyncio.TimeoutError: If no response arrives in time
            SkillTaskError: If the skill answered with an error
            MalformedMessageError: If the result does not match its method
        """
        pending = self._pending.get(request_id)
        if pending is None:
            raise KeyError(f"No pending request with id {request_id}")
        try:
            if timeout is None:
                return await pending.future
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        finally:
            self._pending.pop(request_id, None)

    async def read_message(self) -> Optional[RpcMessage]:
        """
        Read the next message from the skill

        Returns:
            The decoded message, or None on end of stream

        Raises:
            MalformedMessageError: If a line cannot be decoded
        """
        while True:
            try:
                line = await self.reader.readline()
            except ValueError as e:
                # StreamReader limit overrun; the reader discards the line
                raise MalformedMessageError(f"Line exceeds stream limit: {e}") from e

            if not line:
                return None
            if not line.strip():
                continue
            return decode_message(line, self.max_line_bytes)

    def dispatch_response(self, response: Response) -> bool:
        """
        Resolve the future waiting for ``response``

        Returns:
            True if a waiter was found, False if the response was dropped
        """
        pending = self._pending.get(response.id)
        if pending is None or pending.future.done():
            logger.warning(f"Dropping unmatched response from {self.name} (id={response.id})")
            return False

        if response.error is not None:
            pending.future.set_exception(SkillTaskError(response.error.code, response.error.message))
            return True

        try:
            pending.future.set_result(validate_result(pending.method, response.result))
        except MalformedMessageError as e:
            pending.future.set_exception(e)
        return True

    def fail_pending(self, exc: BaseException):
        """Fail every outstanding request with ``exc``."""
        for request_id, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(exc)
                # Retrieved here so an abandoned future does not log "never retrieved"
                pending.future.exception()
        if self._pending:
            logger.debug(f"Failed {len(self._pending)} pending request(s) for {self.name}: {exc}")

    def close(self):
        """Close the write side; further writes raise ConnectionResetError."""
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug(f"Error closing channel to {self.name}: {e}")

    async def _write_line(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()
