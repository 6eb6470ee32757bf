"""
Live queries: cancellable asynchronous streams over a change feed channel.

A live query listens to its channel first, then reads the current state from
storage, so nothing published in between is missed. Transient failures of
the channel or the store are never surfaced to the consumer: the query drops
its listener, waits with exponential backoff, and resynchronizes from
storage.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Deque, Generic, List, Optional, TypeVar

from dmchat.core.errors import BackendUnavailable
from dmchat.services.change_feed import FeedListener, IChangeFeed, Payload

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Closed(Exception):
    pass


class LiveQuery(ABC, Generic[T]):
    """
    Base class for live queries. Iterate with `async for`; call close() to
    unsubscribe. Closing never touches stored data.
    """

    def __init__(
        self,
        feed: IChangeFeed,
        channel: str,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
    ):
        self.feed = feed
        self.channel = channel
        self.initial_delay = initial_delay
        self.max_delay = max_delay

        self._listener: Optional[FeedListener] = None
        self._pending: Deque[T] = deque()
        self._closed = asyncio.Event()
        self._delay = initial_delay
        self.reconnects = 0

    @abstractmethod
    def _resync(self) -> List[T]:
        """Items to deliver right after (re)connecting."""

    @abstractmethod
    def _on_change(self, payload: Payload) -> List[T]:
        """Items to deliver for one change notification."""

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __aiter__(self) -> "LiveQuery[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self._next()
        except _Closed:
            raise StopAsyncIteration from None

    async def __aenter__(self) -> "LiveQuery[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _next(self) -> T:
        while True:
            if self.closed:
                raise _Closed()

            if self._pending:
                return self._pending.popleft()

            if self._listener is None:
                await self._connect()
                continue

            try:
                payload = await self._wait_or_closed(self._listener.get())
                self._pending.extend(self._on_change(payload))
            except BackendUnavailable as e:
                logger.warning("Live query on %s lost its channel: %s", self.channel, e)
                await self._drop_listener()
                await self._backoff()

    async def _connect(self) -> None:
        try:
            self._listener = await self._wait_or_closed(self.feed.subscribe(self.channel))
            self._pending.extend(self._resync())
        except BackendUnavailable as e:
            logger.info("Live query on %s could not (re)connect: %s", self.channel, e)
            await self._drop_listener()
            await self._backoff()
            return

        if self.reconnects:
            logger.info("Live query on %s resynchronized", self.channel)
        self._delay = self.initial_delay

    async def _drop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            await listener.close()

    async def _backoff(self) -> None:
        self.reconnects += 1
        delay = self._delay
        self._delay = min(self._delay * 2, self.max_delay)
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_or_closed(self, awaitable: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(awaitable)
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({task, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (task, closed):
                if not fut.done():
                    fut.cancel()

        if self.closed:
            if task.done() and not task.cancelled() and task.exception() is None:
                result = task.result()
                if isinstance(result, FeedListener):
                    await result.close()
            raise _Closed()
        return task.result()

    async def close(self) -> None:
        """Cancels the subscription. Safe to call more than once."""
        if self.closed:
            return
        self._closed.set()
        self._pending.clear()
        await self._drop_listener()
        logger.debug("Live query on %s closed", self.channel)
