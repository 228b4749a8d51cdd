"""Unbounded actor mailbox.

Wraps an ``asyncio.Queue``. Delivery never blocks and never drops, so a
burst of concurrent callers is simply serialized in arrival order.
"""

from __future__ import annotations

import asyncio


class Mailbox[M]:
    """Async FIFO message queue for actor message delivery.

    Examples
    --------
    >>> mb = Mailbox[str]()
    >>> mb.put("hello")
    >>> mb.size()
    1
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[M] = asyncio.Queue()

    def put(self, msg: M) -> None:
        """Enqueue a message without waiting."""
        self._queue.put_nowait(msg)

    async def get(self) -> M:
        """Dequeue the next message, waiting if the mailbox is empty."""
        return await self._queue.get()

    def size(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def drain(self) -> list[M]:
        """Remove and return every queued message."""
        pending: list[M] = []
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        return pending
