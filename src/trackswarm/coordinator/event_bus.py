"""Event bus for track lifecycle events.

Events are emitted by the scheduler, the orchestrator and the merge flow,
fanned out to subscribers and optionally persisted to a JSONL file.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from trackswarm.protocol.io import append_jsonl

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackEvent:
    """A single lifecycle event."""

    event_type: str  # "plan" | "spawn" | "retry" | "complete" | "fail" | "stall" | "cancel" | "merge"
    unit_id: str = ""
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventBus:
    """In-process pub/sub for lifecycle events."""

    def __init__(self, persist_path: Path | None = None) -> None:
        self._subscribers: list[Callable[[TrackEvent], Any]] = []
        self._persist_path = persist_path
        self._history: list[TrackEvent] = []

    def emit(self, event: TrackEvent) -> None:
        self._history.append(event)

        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

        if self._persist_path is not None:
            try:
                append_jsonl(self._persist_path, asdict(event))
            except OSError as exc:
                logger.warning("EventBus persist error: %s", exc)

    def publish(self, event_type: str, unit_id: str = "", message: str = "", **data: Any) -> TrackEvent:
        event = TrackEvent(event_type=event_type, unit_id=unit_id, message=message, data=data)
        self.emit(event)
        return event

    def subscribe(self, callback: Callable[[TrackEvent], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[TrackEvent], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[TrackEvent]:
        return list(self._history)

    def of_type(self, event_type: str) -> list[TrackEvent]:
        return [e for e in self._history if e.event_type == event_type]
