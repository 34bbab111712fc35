"""
Event Channel - per-session delivery from the read loop to the session

The read loop hands events over with offer(), which never waits: the
process's responses (abort, health, shutdown) share the same stdout and
must keep flowing while a session consumes slowly.

Events first fill a queue of ``depth`` items. While the consumer is behind,
further events wait in a backlog of at most ``backlog_limit`` items. A
consumer that falls further behind gets an EventBacklogError after the
events already accepted, and everything offered afterwards is dropped.

Closing the channel discards undelivered events; the read loop sees the
closed flag and drops whatever it offers from then on.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Union

from skillhost.core.errors import EventBacklogError
from skillhost.core.rpc.messages import Event

logger = logging.getLogger(__name__)

ChannelItem = Union[Event, BaseException]


class EventChannel:
    """Bounded event channel for one session"""

    def __init__(self, session_id: str, depth: int, backlog_limit: int):
        self.session_id = session_id
        self.backlog_limit = backlog_limit
        self.closed = False
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=depth)
        self._backlog: Deque[ChannelItem] = deque()
        self._overflowed = False

    @property
    def depth(self) -> int:
        return self._queue.maxsize

    @property
    def pending(self) -> int:
        """Items accepted but not yet taken by the consumer."""
        return self._queue.qsize() + len(self._backlog)

    def offer(self, event: Event) -> bool:
        """
        Hand an event to the channel without waiting

        Returns:
            False if the event was dropped (channel closed or overflowed)
        """
        if self.closed or self._overflowed:
            self.dropped += 1
            return False
        if len(self._backlog) >= self.backlog_limit and self._queue.full():
            self._overflowed = True
            self.dropped += 1
            logger.warning(
                f"Event backlog of session {self.session_id} exceeded {self.backlog_limit} items"
            )
            self._backlog.append(
                EventBacklogError(
                    f"Session {self.session_id} fell more than "
                    f"{self.depth + self.backlog_limit} events behind"
                )
            )
            return False
        self._put(event)
        return True

    def fail(self, exc: BaseException):
        """Deliver a terminal error after the items already accepted."""
        if self.closed:
            return
        self._put(exc)

    def _put(self, item: ChannelItem):
        if not self._backlog and not self._queue.full():
            self._queue.put_nowait(item)
        else:
            self._backlog.append(item)

    async def get(self) -> ChannelItem:
        item = await self._queue.get()
        self._refill()
        return item

    def get_nowait(self) -> ChannelItem:
        """Raises asyncio.QueueEmpty when nothing is waiting."""
        item = self._queue.get_nowait()
        self._refill()
        return item

    def empty(self) -> bool:
        return self._queue.empty() and not self._backlog

    def _refill(self):
        while self._backlog and not self._queue.full():
            self._queue.put_nowait(self._backlog.popleft())

    def close(self):
        """Stop accepting events and discard the undelivered ones."""
        if self.closed:
            return
        self.closed = True
        discarded = len(self._backlog)
        self._backlog.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
            discarded += 1
        if discarded:
            logger.debug(f"Discarded {discarded} undelivered event(s) of session {self.session_id}")
