from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

from common.schemas import ChannelState

logger = logging.getLogger(__name__)

SendFn = Callable[[bytes], Awaitable[None]]


class ChunkDispatcher:
    """FIFO of captured audio chunks drained one at a time into the live channel.

    A chunk is sent only while the channel is open and no other dispatch is in
    flight. After each send the in-flight flag is held for ``interval`` seconds
    so the recognizer is never fed faster than that, regardless of how quickly
    the socket accepts the frame. While the channel is not open, chunks pile up
    and are replayed oldest first once it opens again.
    """

    def __init__(
        self,
        send: Optional[SendFn] = None,
        interval: float = 0.25,
        warn_depth: int = 50,
    ) -> None:
        self._send = send
        self._interval = interval
        self._warn_depth = warn_depth
        self._queue: deque[bytes] = deque()
        self._state = ChannelState.closed
        self._in_flight = False
        self._holding = False
        self._stopped = False
        self._task: asyncio.Task | None = None
        self._sent = 0
        self._over_depth = False

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def channel_state(self) -> ChannelState:
        return self._state

    def attach(self, send: Optional[SendFn]) -> None:
        """Point the dispatcher at a new channel's send coroutine (None detaches)."""
        self._send = send
        self.pump()

    def enqueue(self, chunk: bytes) -> None:
        if self._stopped:
            return
        self._queue.append(chunk)
        depth = len(self._queue)
        if depth > self._warn_depth and not self._over_depth:
            self._over_depth = True
            logger.warning("Audio backlog at %d chunks; channel is %s", depth, self._state.value)
        elif depth <= self._warn_depth:
            self._over_depth = False
        self.pump()

    def set_channel_state(self, state: ChannelState) -> None:
        if state is not self._state:
            logger.debug("Dispatcher sees channel %s (%d pending)", state.value, len(self._queue))
        self._state = state
        self.pump()

    def pump(self) -> bool:
        """Run one dispatch cycle. Returns True if a chunk was handed to the channel."""
        if (
            self._stopped
            or self._in_flight
            or not self._queue
            or self._state is not ChannelState.open
            or self._send is None
        ):
            return False
        chunk = self._queue.popleft()
        self._in_flight = True
        self._task = asyncio.get_running_loop().create_task(self._dispatch(chunk))
        return True

    async def _dispatch(self, chunk: bytes) -> None:
        try:
            try:
                await self._send(chunk)
                self._sent += 1
            except Exception:
                # Back to the head so ordering survives; retried at the next cycle.
                self._queue.appendleft(chunk)
                logger.warning(
                    "Chunk send failed, requeued (%d pending)", len(self._queue), exc_info=True
                )
            if not self._stopped:
                self._holding = True
                await asyncio.sleep(self._interval)
        finally:
            self._holding = False
            self._in_flight = False
        self.pump()

    async def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the queue to empty while the channel stays open."""

        async def idle() -> None:
            while (self._queue or self._in_flight) and self._state is ChannelState.open:
                await asyncio.sleep(self._interval / 5 or 0.01)

        try:
            await asyncio.wait_for(idle(), timeout)
        except asyncio.TimeoutError:
            pass
        return not self._queue

    async def stop(self) -> int:
        """Stop dispatching and return how many queued chunks were discarded.

        A send already under way is allowed to finish.
        """
        self._stopped = True
        task = self._task
        if task is not None and not task.done():
            # Only the hold is cancelled; a popped chunk is always handed to send.
            if self._holding:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        discarded = len(self._queue)
        if discarded:
            logger.debug("Discarding %d undispatched chunks", discarded)
            self._queue.clear()
        return discarded
