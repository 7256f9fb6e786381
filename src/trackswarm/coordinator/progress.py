"""Progress observable.

Snapshots are immutable, so every subscriber can be handed the same object.
Async streams are lossy: each keeps only the most recent snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from trackswarm.protocol.models import ProgressSnapshot

logger = logging.getLogger(__name__)

_CLOSED = object()


class ProgressBus:
    def __init__(self) -> None:
        self._subscribers: list[Callable[[ProgressSnapshot], Any]] = []
        self._queues: list[asyncio.Queue[object]] = []
        self._latest: ProgressSnapshot | None = None
        self._closed = False

    @property
    def latest(self) -> ProgressSnapshot | None:
        return self._latest

    def subscribe(self, callback: Callable[[ProgressSnapshot], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[ProgressSnapshot], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    def publish(self, snapshot: ProgressSnapshot) -> None:
        self._latest = snapshot
        for cb in list(self._subscribers):
            try:
                cb(snapshot)
            except Exception as exc:
                logger.debug("Progress subscriber error: %s", exc)
        for queue in self._queues:
            _replace(queue, snapshot)

    def close(self) -> None:
        """End every open stream.  Further publishes still reach callbacks."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            _replace(queue, _CLOSED)

    def reopen(self) -> None:
        self._closed = False
        self._latest = None

    async def stream(self) -> AsyncIterator[ProgressSnapshot]:
        """Yield snapshots until :meth:`close` is called."""
        if self._closed:
            if self._latest is not None:
                yield self._latest
            return
        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=1)
        if self._latest is not None:
            queue.put_nowait(self._latest)
        self._queues.append(queue)
        last: object = None
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    # The close marker may have displaced the final snapshot.
                    if self._latest is not None and self._latest is not last:
                        yield self._latest
                    return
                last = item
                yield item  # type: ignore[misc]
        finally:
            self._queues.remove(queue)


def _replace(queue: asyncio.Queue[object], item: object) -> None:
    # Keep only the newest item; a pending close marker is never dropped.
    if queue.full():
        pending = queue.get_nowait()
        if pending is _CLOSED:
            queue.put_nowait(pending)
            return
    queue.put_nowait(item)
