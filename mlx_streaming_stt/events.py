# Copyright 2024-2026 Andrew Yates
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Transcription events and the session event stream.

A session pushes events from its decode worker; callers consume them by
iterating (blocking), async iterating, or registering callbacks:

    for event in session.events:
        if event.event_type == EventType.DISPLAY_UPDATE:
            render(event.confirmed_text, event.provisional_text)
        elif event.event_type == EventType.ENDED:
            print(event.full_text)

    async for event in session.events:
        ...

The stream closes exactly once: right after ENDED, or silently on cancel.
Events emitted after close are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Type of transcription event."""
    DISPLAY_UPDATE = "display_update"  # Confirmed + provisional text for display
    CONFIRMED = "confirmed"            # Confirmed text grew (will not change)
    STATS = "stats"                    # Performance statistics
    ENDED = "ended"                    # Session finished with full text
    ERROR = "error"                    # A detached task failed; session continues


@dataclass
class StreamingStats:
    """Performance statistics for a decode pass."""
    encoded_window_count: int = 0
    total_audio_seconds: float = 0.0
    tokens_per_second: float = 0.0
    real_time_factor: float = 0.0   # decode time / audio covered (< 1 is faster than real time)
    peak_memory_gb: float = 0.0


@dataclass
class TranscriptionEvent:
    """Event emitted by a streaming inference session."""
    event_type: EventType
    timestamp: float = field(default_factory=time.time)

    # DISPLAY_UPDATE
    confirmed_text: str = ""
    provisional_text: str = ""

    # CONFIRMED
    text: str = ""

    # STATS
    stats: StreamingStats | None = None

    # ENDED
    full_text: str = ""

    # ERROR
    error_code: str | None = None
    error: str | None = None

    @classmethod
    def display_update(cls, confirmed_text: str, provisional_text: str) -> TranscriptionEvent:
        return cls(
            EventType.DISPLAY_UPDATE,
            confirmed_text=confirmed_text,
            provisional_text=provisional_text,
        )

    @classmethod
    def confirmed(cls, text: str) -> TranscriptionEvent:
        return cls(EventType.CONFIRMED, text=text)

    @classmethod
    def stats_update(cls, stats: StreamingStats) -> TranscriptionEvent:
        return cls(EventType.STATS, stats=stats)

    @classmethod
    def ended(cls, full_text: str) -> TranscriptionEvent:
        return cls(EventType.ENDED, full_text=full_text)

    @classmethod
    def failure(cls, error_code: str, error: str) -> TranscriptionEvent:
        return cls(EventType.ERROR, error_code=error_code, error=error)

    @property
    def display_text(self) -> str:
        """Confirmed and provisional text joined for rendering."""
        if not self.provisional_text:
            return self.confirmed_text
        if not self.confirmed_text:
            return self.provisional_text
        return f"{self.confirmed_text} {self.provisional_text}"


def event_to_dict(event: TranscriptionEvent) -> dict[str, Any]:
    """
    Convert an event to a JSON-serializable dict.

    Only the fields relevant to the event type are included.
    """
    result: dict[str, Any] = {
        "type": event.event_type.value,
        "timestamp": event.timestamp,
    }
    if event.event_type == EventType.DISPLAY_UPDATE:
        result["confirmed_text"] = event.confirmed_text
        result["provisional_text"] = event.provisional_text
    elif event.event_type == EventType.CONFIRMED:
        result["text"] = event.text
    elif event.event_type == EventType.STATS and event.stats is not None:
        result["stats"] = asdict(event.stats)
    elif event.event_type == EventType.ENDED:
        result["full_text"] = event.full_text
    elif event.event_type == EventType.ERROR:
        result["error_code"] = event.error_code
        result["error"] = event.error
    return result


_CLOSED = object()


class EventStream:
    """
    Ordered, push-based, thread-safe event channel.

    Producers call emit() from any thread; consumers iterate. Closing
    wakes every blocked consumer.
    """

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._callbacks: list[Callable[[TranscriptionEvent], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def add_callback(self, callback: Callable[[TranscriptionEvent], None]) -> None:
        """Invoke callback (on the producer thread) for each emitted event."""
        self._callbacks.append(callback)

    def emit(self, event: TranscriptionEvent) -> bool:
        """
        Push an event.

        Returns:
            False if the stream is already closed (event dropped)
        """
        with self._lock:
            if self._closed:
                return False
            self._queue.put(event)

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")
        return True

    def close(self) -> bool:
        """
        Close the stream. Idempotent.

        Returns:
            True if this call closed it
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._queue.put(_CLOSED)
        return True

    def get(self, timeout: float | None = None) -> TranscriptionEvent | None:
        """
        Next event, blocking.

        Returns:
            The event, or None once the stream is closed and drained

        Raises:
            queue.Empty: if timeout elapses first
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the marker for other consumers
            self._queue.put(_CLOSED)
            return None
        return item

    def drain_nowait(self) -> list[TranscriptionEvent]:
        """All events available right now, without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                break
            events.append(item)
        return events

    def __iter__(self) -> Iterator[TranscriptionEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    async def __aiter__(self) -> AsyncIterator[TranscriptionEvent]:
        while True:
            event = await asyncio.to_thread(self.get)
            if event is None:
                return
            yield event
