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
Tests for transcription events and the event stream.

Tests:
1. Event constructors and serialization
2. Ordered delivery and close semantics
3. Callbacks
4. Async iteration
"""

import asyncio
import json
import queue
import threading
from unittest.mock import MagicMock

import pytest

from mlx_streaming_stt.errors import ErrorCode
from mlx_streaming_stt.events import (
    EventStream,
    EventType,
    StreamingStats,
    TranscriptionEvent,
    event_to_dict,
)


class TestTranscriptionEvent:
    """Test event construction and serialization."""

    def test_display_update(self):
        """Test display update construction and joined text."""
        event = TranscriptionEvent.display_update("hello", "world")
        assert event.event_type == EventType.DISPLAY_UPDATE
        assert event.display_text == "hello world"

    def test_display_text_partial(self):
        """Test display text with one side empty."""
        assert TranscriptionEvent.display_update("", "world").display_text == "world"
        assert TranscriptionEvent.display_update("hello", "").display_text == "hello"

    def test_event_to_dict_display(self):
        """Test display update serialization."""
        d = event_to_dict(TranscriptionEvent.display_update("a", "b"))
        assert d["type"] == "display_update"
        assert d["confirmed_text"] == "a"
        assert d["provisional_text"] == "b"
        assert "full_text" not in d

    def test_event_to_dict_stats(self):
        """Test stats serialization."""
        stats = StreamingStats(encoded_window_count=2, total_audio_seconds=3.5, tokens_per_second=40.0)
        d = event_to_dict(TranscriptionEvent.stats_update(stats))
        assert d["stats"]["encoded_window_count"] == 2
        assert d["stats"]["total_audio_seconds"] == 3.5

    def test_event_to_dict_error(self):
        """Test error serialization."""
        d = event_to_dict(TranscriptionEvent.failure(ErrorCode.INFERENCE_FAILED, "boom"))
        assert d["type"] == "error"
        assert d["error_code"] == "inference_failed"
        assert d["error"] == "boom"

    def test_json_serializable(self):
        """Test every event type serializes to JSON."""
        for event in (
            TranscriptionEvent.display_update("a", "b"),
            TranscriptionEvent.confirmed("a"),
            TranscriptionEvent.stats_update(StreamingStats()),
            TranscriptionEvent.ended("done"),
            TranscriptionEvent.failure(ErrorCode.STOP_FAILED, "x"),
        ):
            json.dumps(event_to_dict(event))


class TestEventStream:
    """Test ordering and close semantics."""

    def test_ordered_delivery(self):
        """Test events are delivered in emit order."""
        stream = EventStream()
        for i in range(5):
            stream.emit(TranscriptionEvent.confirmed(str(i)))
        stream.close()

        assert [e.text for e in stream] == ["0", "1", "2", "3", "4"]

    def test_emit_after_close_dropped(self):
        """Test events emitted after close are dropped."""
        stream = EventStream()
        stream.close()
        assert stream.emit(TranscriptionEvent.confirmed("late")) is False
        assert list(stream) == []

    def test_close_idempotent(self):
        """Test closing twice is harmless."""
        stream = EventStream()
        assert stream.close() is True
        assert stream.close() is False
        assert stream.closed

    def test_get_timeout(self):
        """Test get raises queue.Empty on timeout."""
        stream = EventStream()
        with pytest.raises(queue.Empty):
            stream.get(timeout=0.01)

    def test_close_wakes_blocked_consumer(self):
        """Test close wakes a consumer blocked on get."""
        stream = EventStream()
        received = []

        def consume():
            received.extend(stream)

        thread = threading.Thread(target=consume)
        thread.start()
        stream.emit(TranscriptionEvent.confirmed("x"))
        stream.close()
        thread.join(timeout=2.0)

        assert not thread.is_alive()
        assert [e.text for e in received] == ["x"]

    def test_multiple_consumers_all_terminate(self):
        """Test every consumer sees the end of the stream."""
        stream = EventStream()
        stream.close()
        assert stream.get() is None
        assert stream.get() is None

    def test_drain_nowait(self):
        """Test draining returns available events without blocking."""
        stream = EventStream()
        stream.emit(TranscriptionEvent.confirmed("a"))
        stream.emit(TranscriptionEvent.confirmed("b"))
        assert [e.text for e in stream.drain_nowait()] == ["a", "b"]
        assert stream.drain_nowait() == []


class TestCallbacks:
    """Test callback delivery."""

    def test_callback_receives_events(self):
        """Test callbacks receive each emitted event."""
        stream = EventStream()
        callback = MagicMock()
        stream.add_callback(callback)

        event = TranscriptionEvent.confirmed("hi")
        stream.emit(event)
        callback.assert_called_once_with(event)

    def test_callback_error_does_not_break_stream(self):
        """Test a failing callback does not affect delivery."""
        stream = EventStream()
        stream.add_callback(MagicMock(side_effect=RuntimeError("bad callback")))

        assert stream.emit(TranscriptionEvent.confirmed("hi")) is True
        stream.close()
        assert [e.text for e in stream] == ["hi"]

    def test_no_callback_after_close(self):
        """Test callbacks are not called after close."""
        stream = EventStream()
        callback = MagicMock()
        stream.add_callback(callback)
        stream.close()
        stream.emit(TranscriptionEvent.confirmed("late"))
        callback.assert_not_called()


class TestAsyncIteration:
    """Test async iteration over the stream."""

    def test_async_for(self):
        """Test async iteration yields events until close."""
        stream = EventStream()
        stream.emit(TranscriptionEvent.confirmed("a"))
        stream.emit(TranscriptionEvent.ended("a"))
        stream.close()

        async def collect():
            return [e async for e in stream]

        events = asyncio.run(collect())
        assert [e.event_type for e in events] == [EventType.CONFIRMED, EventType.ENDED]
