"""Bounded progress channel between transaction workers and observers.

Producers call :meth:`ProgressChannel.publish`, which never blocks. Each
subscriber owns a bounded buffer; when it is full, pending download-progress
updates for the same node are coalesced, then the oldest progress update is
dropped, and only if the buffer holds nothing but state events is the oldest
event discarded. Order of retained events is preserved.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Deque, List


class EventKind(Enum):
    """Progress event types."""

    PLAN_RESOLVED = "plan_resolved"
    TRANSACTION_STATE = "transaction_state"
    NODE_STATE = "node_state"
    DOWNLOAD_STARTED = "download_started"
    DOWNLOAD_PROGRESS = "download_progress"
    DOWNLOAD_CACHED = "download_cached"
    DOWNLOAD_FINISHED = "download_finished"
    DOWNLOAD_FAILED = "download_failed"
    WARNING = "warning"


COALESCIBLE = {EventKind.DOWNLOAD_PROGRESS}


@dataclass
class ProgressEvent:
    """One message on the progress channel."""

    kind: EventKind
    node: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.monotonic)

    @property
    def coalescible(self) -> bool:
        return self.kind in COALESCIBLE


class Subscription:
    """One observer's view of the channel. Iterate with ``async for``."""

    def __init__(self, maxsize: int) -> None:
        self.maxsize = max(1, maxsize)
        self.dropped = 0
        self._buffer: Deque[ProgressEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    def _offer(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        if event.coalescible:
            for i, queued in enumerate(self._buffer):
                if queued.kind is event.kind and queued.node == event.node:
                    self._buffer[i] = event
                    self._ready.set()
                    return
        if len(self._buffer) >= self.maxsize:
            victim = next((e for e in self._buffer if e.coalescible), None)
            if victim is None and event.coalescible:
                self.dropped += 1
                return
            if victim is None:
                victim = self._buffer[0]
            self._buffer.remove(victim)
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def _close(self) -> None:
        self._closed = True
        self._ready.set()

    def drain(self) -> List[ProgressEvent]:
        events = list(self._buffer)
        self._buffer.clear()
        return events

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the channel is closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressChannel:
    """Fan-out channel with one bounded buffer per subscriber."""

    def __init__(self, maxsize: int = 256) -> None:
        self.maxsize = maxsize
        self._subscribers: List[Subscription] = []
        self._closed = False

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        sub = Subscription(maxsize or self.maxsize)
        if self._closed:
            sub._close()
        self._subscribers.append(sub)
        return sub

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        for sub in self._subscribers:
            sub._offer(event)

    def emit(self, kind: EventKind, node: str | None = None, **data: Any) -> None:
        self.publish(ProgressEvent(kind=kind, node=node, data=data))

    def close(self) -> None:
        self._closed = True
        for sub in self._subscribers:
            sub._close()

    @property
    def closed(self) -> bool:
        return self._closed
