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
StreamingEncoder - incremental window encoding.

Accumulates mel frames until a full window (800 frames = ~8s audio) is
ready, then encodes it with the window encoder. Each window yields ~104
encoder tokens. Consecutive windows may overlap by a configurable number
of mel frames: after encoding, the pending buffer advances by the stride
(window_size - overlap), so the tail of one window starts the next.

Cache layout:
- cached windows: bounded, oldest-first eviction; used for concatenated
  output only
- newly encoded queue: full windows completed since the last drain
- total encoded counter: monotonic, unaffected by eviction

Not thread-safe; the session serialises access under its lock.
"""

import logging

import mlx.core as mx

from .errors import ConfigurationError, ModelInvocationError
from .interfaces import WindowEncoder

logger = logging.getLogger(__name__)


class StreamingEncoder:
    """
    Window accumulator around a WindowEncoder.

    Example:
        encoder = StreamingEncoder(model.audio_tower, overlap_frames=100)
        new_windows = encoder.feed(mel_frames)
        features = encoder.get_full_encoder_output()   # cached + pending
    """

    def __init__(
        self,
        encoder: WindowEncoder,
        max_cached_windows: int = 60,
        overlap_frames: int = 0,
        window_size: int | None = None,
    ):
        """
        Args:
            encoder: Window encoder to call on each full window
            max_cached_windows: Cache bound (oldest evicted first)
            overlap_frames: Mel frames shared by consecutive windows,
                clamped to [0, window_size - 1]
            window_size: Frames per window (default: encoder.window_size)
        """
        window_size = encoder.window_size if window_size is None else window_size
        if window_size <= 0:
            raise ConfigurationError(f"window_size must be > 0, got {window_size}")
        if max_cached_windows < 1:
            raise ConfigurationError(
                f"max_cached_windows must be >= 1, got {max_cached_windows}",
            )

        self.encoder = encoder
        self.max_cached_windows = max_cached_windows
        self._window_size = window_size
        clamped_overlap = max(0, min(overlap_frames, window_size - 1))
        self._window_stride = max(1, window_size - clamped_overlap)

        self.reset()

    def reset(self) -> None:
        """Clear all state for a new session."""
        self._cached_windows: list[mx.array] = []
        self._newly_encoded: list[mx.array] = []
        self._total_encoded_windows = 0
        self._pending: mx.array | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def window_stride(self) -> int:
        return self._window_stride

    @property
    def encoded_window_count(self) -> int:
        """Full windows encoded since reset (monotonic)."""
        return self._total_encoded_windows

    @property
    def pending_frame_count(self) -> int:
        return 0 if self._pending is None else self._pending.shape[0]

    @property
    def has_pending_frames(self) -> bool:
        return self.pending_frame_count > 0

    @property
    def cached_window_count(self) -> int:
        return len(self._cached_windows)

    @property
    def total_cached_tokens(self) -> int:
        """Encoder tokens across all cached windows."""
        return sum(w.shape[0] for w in self._cached_windows)

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def feed(self, mel_frames: mx.array) -> int:
        """
        Append mel frames and encode every full window now available.

        Args:
            mel_frames: New frames, shape (n_frames, n_mels)

        Returns:
            Number of full windows encoded by this call
        """
        if mel_frames is None or mel_frames.shape[0] == 0:
            return 0

        if self._pending is None:
            self._pending = mel_frames
        else:
            self._pending = mx.concatenate([self._pending, mel_frames], axis=0)

        new_windows = 0
        while self.pending_frame_count >= self._window_size:
            encoded = self._encode(self._pending[:self._window_size])

            self._cached_windows.append(encoded)
            self._newly_encoded.append(encoded)
            self._total_encoded_windows += 1
            new_windows += 1

            if self.pending_frame_count > self._window_stride:
                self._pending = self._pending[self._window_stride:]
            else:
                self._pending = None

            self._evict()

        if new_windows:
            logger.debug(
                f"Encoded {new_windows} window(s), total={self._total_encoded_windows}, "
                f"pending={self.pending_frame_count} frames",
            )
        return new_windows

    def flush_partial(self) -> int:
        """
        Encode the remaining undersized window at session end.

        The result goes to the cache only, not to the newly encoded queue.

        Returns:
            1 if pending frames were encoded, else 0
        """
        if not self.has_pending_frames:
            return 0

        encoded = self._encode(self._pending)
        self._cached_windows.append(encoded)
        self._pending = None
        self._evict()
        return 1

    def encode_pending(self) -> mx.array | None:
        """
        Encode the current partial window without consuming it.

        Pending frames stay buffered and are re-encoded as part of the full
        window when it completes. Idempotent; costs one encoder call.

        Returns:
            Encoded partial window, shape (n_tokens, hidden_dim), or None
        """
        if not self.has_pending_frames:
            return None
        return self._encode(self._pending)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def get_cached_encoder_output(self, from_window: int | None = None) -> mx.array | None:
        """
        Concatenate cached windows in temporal order.

        Args:
            from_window: Optional cache index of the first window to include

        Returns:
            shape (total_tokens, hidden_dim), or None if nothing cached
        """
        start = 0 if from_window is None else max(0, from_window)
        windows = self._cached_windows[start:]
        if not windows:
            return None
        if len(windows) == 1:
            return windows[0]
        return mx.concatenate(windows, axis=0)

    def get_full_encoder_output(self, from_window: int | None = None) -> mx.array | None:
        """Cached output followed by a fresh encoding of the pending frames."""
        cached = self.get_cached_encoder_output(from_window)
        pending = self.encode_pending()

        if cached is None:
            return pending
        if pending is None:
            return cached
        return mx.concatenate([cached, pending], axis=0)

    def drain_newly_encoded_windows(self) -> list[mx.array]:
        """Return and clear the full windows encoded since the last drain."""
        drained = self._newly_encoded
        self._newly_encoded = []
        return drained

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode(self, frames: mx.array) -> mx.array:
        try:
            encoded = self.encoder.encode_single_window(frames)
            mx.eval(encoded)
        except Exception as e:
            raise ModelInvocationError(f"Window encoder failed: {e}") from e
        return encoded

    def _evict(self) -> None:
        while len(self._cached_windows) > self.max_cached_windows:
            self._cached_windows.pop(0)
