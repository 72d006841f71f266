"""
Progress Events
===============
Outbound channel from a run to the presentation layer.

Each run owns one ``EventChannel``. Consumers either iterate
``channel.subscribe()`` or register a plain callback with ``add_listener``.
Events carry the run's sequence number so consumers can detect staleness.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from loguru import logger


class EventType(str, Enum):
    RUN_START = "run:start"
    RUN_PAUSED = "run:paused"
    RUN_RESUMED = "run:resumed"
    PHASE_START = "phase:start"
    ACTION_RESULT = "action:result"
    PHASE_COMPLETE = "phase:complete"
    PHASE_FAILED = "phase:failed"
    GAVEL_REQUESTED = "gavel:requested"
    GAVEL_RESOLVED = "gavel:resolved"
    RUN_COMPLETE = "run:complete"
    RUN_FAILED = "run:failed"
    RUN_ABORTED = "run:aborted"


TERMINAL_EVENTS = frozenset({EventType.RUN_COMPLETE, EventType.RUN_FAILED, EventType.RUN_ABORTED})


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    run_id: str
    seq: int
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "seq": self.seq,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
        }


_CLOSED = object()


class EventChannel:
    """Fan-out of progress events to any number of subscribers."""

    def __init__(self, run_id: str = ""):
        self.run_id = run_id
        self.history: List[ProgressEvent] = []
        self._queues: List[asyncio.Queue] = []
        self._listeners: List[Callable[[ProgressEvent], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        self._listeners.append(listener)

    def publish(self, event_type: EventType, seq: int, **payload: Any) -> ProgressEvent:
        event = ProgressEvent(type=EventType(event_type), run_id=self.run_id, seq=seq, payload=payload)
        self.history.append(event)

        for queue in self._queues:
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {event.type.value}: {e}")

        if event.type in TERMINAL_EVENTS:
            self.close()
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    async def subscribe(self, replay: bool = False) -> AsyncIterator[ProgressEvent]:
        """Yield events until the run reaches a terminal status.

        Args:
            replay: Yield events published before subscribing first
        """
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self.history:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_CLOSED)
        self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._queues.remove(queue)

    def of_type(self, event_type: EventType) -> List[ProgressEvent]:
        return [e for e in self.history if e.type == EventType(event_type)]

    def last(self) -> Optional[ProgressEvent]:
        return self.history[-1] if self.history else None
