"""In-memory FIFO buffer for live events that arrive during catch-up."""
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


class EventQueue(Generic[T]):
    """
    Single-consumer FIFO.

    Only one ``process`` drain runs at a time; a call made while a drain is
    active returns immediately, and the active drain picks up anything enqueued
    in the meantime. A failing handler is logged and the drain moves on.
    """

    def __init__(self):
        self._items: Deque[T] = deque()
        self._processing = False

    def enqueue(self, item: T):
        self._items.append(item)

    async def process(self, handler: Callable[[T], Awaitable[None]]) -> int:
        if self._processing:
            return 0

        self._processing = True
        handled = 0
        try:
            while len(self._items) > 0:
                item = self._items.popleft()
                try:
                    await handler(item)
                    handled += 1
                except Exception as e:
                    log.error("queued_event_failed", error=str(e), event=repr(item))
        finally:
            self._processing = False
        return handled

    def __len__(self) -> int:
        return len(self._items)
