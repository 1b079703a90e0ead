from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Deque, Dict, List, Protocol

log = logging.getLogger("confnorm.pipeline")


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One step of a conversion: started | alerts | completed | error."""

    event: str
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": dict(self.data), "at": self.at.isoformat()}


class ProgressChannel(Protocol):
    def publish(self, stream_id: str, event: ProgressEvent) -> None: ...


class LoggingProgressChannel:
    """Publishes progress as structured log records only."""

    def publish(self, stream_id: str, event: ProgressEvent) -> None:
        log.info("progress_event", extra={"stream_id": stream_id, "progress_event": event.event})


class InMemoryProgressChannel:
    """Bounded per-stream event buffer read by the progress polling endpoint.

    Oldest streams are evicted once `max_streams` is exceeded.

    """

    def __init__(self, *, max_streams: int = 1000, max_events_per_stream: int = 100):
        self._max_streams = max_streams
        self._max_events = max_events_per_stream
        self._streams: Dict[str, Deque[ProgressEvent]] = {}
        self._lock = threading.Lock()

    def publish(self, stream_id: str, event: ProgressEvent) -> None:
        with self._lock:
            events = self._streams.get(stream_id)
            if events is None:
                while len(self._streams) >= self._max_streams:
                    self._streams.pop(next(iter(self._streams)))
                events = deque(maxlen=self._max_events)
                self._streams[stream_id] = events
            events.append(event)
        log.debug("progress_event", extra={"stream_id": stream_id, "progress_event": event.event})

    def events(self, stream_id: str) -> List[ProgressEvent]:
        with self._lock:
            return list(self._streams.get(stream_id, ()))
