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
Streaming inference session.

Orchestrates live speech-to-text: audio chunks from a capture callback go
through the incremental mel front-end into the window encoder; decode
passes are scheduled on a worker pool and their output is reconciled into
confirmed and provisional text, pushed to the caller as events.

Usage:
    session = StreamingInferenceSession(model, get_streaming_config("agent"))

    # audio thread
    session.feed_audio(chunk)

    # consumer thread
    for event in session.events:
        if event.event_type == EventType.DISPLAY_UPDATE:
            print(event.confirmed_text, "|", event.provisional_text)

    session.stop()      # drain, final decode, ENDED
    session.cancel()    # or: drop everything, close silently

Decode policies (StreamingConfig.finalize_completed_windows):
    True  - each completed ~8s window gets its own decode to completion,
            appended to the completed text; streaming passes only cover the
            current partial window.
    False - streaming passes only; when a window completes, its confirmed
            and provisional text is frozen into the completed text.

Boundary boost:
    Right after a window completes the model has the least right-context,
    so for boundary_boost_seconds the decode interval tightens to
    boundary_decode_interval_seconds and promotion requires
    boundary_min_agreement_passes. Finalize passes neither arm nor reset the
    boost and do not count as the last streaming decode.

Locking:
    _session_lock guards structural state (mel, encoder, timing, boost,
    lifecycle). _state_lock guards SessionSharedState (text and tokens).
    Order is always session lock then state lock; events are never emitted
    while holding the state lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import AsyncIterator, Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from enum import Enum

import mlx.core as mx

from . import memory
from .audio import IncrementalMelSpectrogram, to_float32_audio
from .config import MIN_DECODE_INTERVAL, StreamingConfig
from .decoding import DecodeOutput, generate_tokens
from .encoder import StreamingEncoder
from .errors import ConfigurationError, ErrorCode
from .events import EventStream, StreamingStats, TranscriptionEvent
from .interfaces import DecoderModel, WindowEncoder
from .reconciliation import ProvisionalToken, concat_text, reconcile_tokens

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of a streaming session."""
    ACTIVE = "active"        # Accepting audio, may decode
    STOPPING = "stopping"    # Draining and running final decodes
    ENDED = "ended"          # Terminal, ENDED emitted, stream closed
    CANCELLED = "cancelled"  # Terminal, stream closed silently


@dataclass
class SessionSharedState:
    """Token/text state shared between the orchestrator and decode passes."""
    # Text of completed windows, frozen, never re-decoded
    completed_text: str = ""
    # Streaming state for the current (not yet completed) window
    confirmed_token_ids: list[int] = field(default_factory=list)
    confirmed_text: str = ""
    provisional: list[ProvisionalToken] = field(default_factory=list)
    is_decoding: bool = False

    @property
    def display_prefix(self) -> str:
        return concat_text(self.completed_text, self.confirmed_text)

    def reset_window(self) -> None:
        self.confirmed_token_ids = []
        self.confirmed_text = ""
        self.provisional = []


@dataclass
class DecodePassParams:
    """Snapshot handed to a streaming decode pass."""
    audio_features: mx.array
    confirmed_token_ids: list[int]
    display_prefix: str
    prev_provisional: list[ProvisionalToken]
    min_agreement_passes: int
    total_samples: int
    encoded_window_count: int


@dataclass
class FinalizeWindowsParams:
    """Completed windows to decode to completion, in order."""
    windows: list[mx.array]
    total_samples: int
    encoded_window_count: int


class StreamingInferenceSession:
    """
    Live transcription session over a DecoderModel.

    At most one decode pass is in flight; triggers that arrive while one is
    running are skipped, not queued. feed_audio never waits on a decode.
    """

    def __init__(
        self,
        model: DecoderModel,
        config: StreamingConfig | None = None,
        *,
        window_encoder: WindowEncoder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            model: Decoder model with tokenizer (and audio_tower unless
                window_encoder is given)
            config: Session configuration (defaults if None)
            window_encoder: Overrides model.audio_tower
            clock: Monotonic time source in seconds
        """
        self.model = model
        self.config = config or StreamingConfig()
        self._clock = clock

        if model.tokenizer is None:
            raise ConfigurationError("Decoder model has no tokenizer")
        audio_tower = window_encoder if window_encoder is not None else model.audio_tower
        if audio_tower is None:
            raise ConfigurationError("No window encoder: pass window_encoder or set model.audio_tower")

        self._mel = IncrementalMelSpectrogram(
            sample_rate=model.sample_rate,
            n_fft=self.config.n_fft,
            hop_length=self.config.hop_length,
            n_mels=audio_tower.n_mels,
        )
        self._encoder = StreamingEncoder(
            audio_tower,
            max_cached_windows=self.config.max_cached_windows,
            overlap_frames=self.config.overlap_frames(model.sample_rate),
        )

        self._session_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._shared = SessionSharedState()

        self._state = SessionState.ACTIVE
        self._cancelled = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="stt-session")
        self._decode_future: Future | None = None
        self._stop_future: Future | None = None

        self._total_samples = 0
        self._last_decode_time: float | None = None
        self._boundary_fast_decode_until: float | None = None
        self._has_new_encoder_content = False
        # Encoder windows whose text is already in completed_text
        self._frozen_window_count = 0

        self.events = EventStream()

        logger.info(
            f"Streaming session started: window={self._encoder.window_size} frames, "
            f"stride={self._encoder.window_stride}, "
            f"finalize_windows={self.config.finalize_completed_windows}, "
            f"delay={self.config.delay_ms}ms",
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE

    @property
    def is_decoding(self) -> bool:
        with self._state_lock:
            return self._shared.is_decoding

    @property
    def encoded_window_count(self) -> int:
        return self._encoder.encoded_window_count

    @property
    def total_audio_seconds(self) -> float:
        return self._total_samples / self.model.sample_rate

    @property
    def transcript(self) -> str:
        """Completed plus confirmed text so far."""
        with self._state_lock:
            return self._shared.display_prefix

    def set_callback(self, callback: Callable[[TranscriptionEvent], None]) -> None:
        """Receive every event on the emitting thread, in addition to iteration."""
        self.events.add_callback(callback)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Wait for the in-flight decode pass, if any.

        Returns:
            True if no decode pass is running when this returns
        """
        future = self._decode_future
        if future is not None:
            wait_futures([future], timeout=timeout)
            return future.done()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """
        Wait for stop() to finish.

        Returns:
            True if the session reached a terminal state
        """
        future = self._stop_future
        if future is not None:
            wait_futures([future], timeout=timeout)
        return self._state in (SessionState.ENDED, SessionState.CANCELLED)

    # ------------------------------------------------------------------
    # Audio input
    # ------------------------------------------------------------------

    def feed_audio(self, samples) -> None:
        """
        Push captured audio. Safe to call from a real-time capture thread.

        Args:
            samples: float32 samples in [-1, 1] (or int16 PCM) at
                model.sample_rate

        Raises:
            ModelInvocationError: if the window encoder fails. The session
                stays active and the unencoded frames stay pending, so the
                next call retries them. Windows already encoded by the
                failing call stay queued for finalize but do not arm the
                boundary boost.
        """
        with self._session_lock:
            if self._state != SessionState.ACTIVE:
                return

            audio = to_float32_audio(samples)
            self._total_samples += audio.size

            mel_frames = self._mel.process(audio)
            if mel_frames is None:
                return

            new_windows = self._encoder.feed(mel_frames)
            if new_windows > 0 or self._encoder.has_pending_frames:
                self._has_new_encoder_content = True

            now = self._clock()
            if new_windows > 0:
                self._arm_boundary_boost(now)
            interval = self._effective_decode_interval(now)

            is_boundary_finalize = self.config.finalize_completed_windows and new_windows > 0
            if is_boundary_finalize:
                should_decode = True
            elif self._last_decode_time is not None:
                should_decode = now - self._last_decode_time >= interval
            else:
                should_decode = self._has_new_encoder_content

            if not (should_decode and self._has_new_encoder_content):
                return

            with self._state_lock:
                if self._shared.is_decoding:
                    logger.debug("Decode pass in flight, skipping trigger")
                    return
                self._shared.is_decoding = True

            self._has_new_encoder_content = False
            if not is_boundary_finalize:
                self._last_decode_time = now

            try:
                self._launch_decode_pass_locked()
            except BaseException:
                with self._state_lock:
                    self._shared.is_decoding = False
                raise

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _is_boosted(self, now: float) -> bool:
        until = self._boundary_fast_decode_until
        return until is not None and now < until

    def _arm_boundary_boost(self, now: float) -> None:
        boost = max(0.0, self.config.boundary_boost_seconds)
        self._boundary_fast_decode_until = now + boost if boost > 0 else None

    def _effective_decode_interval(self, now: float) -> float:
        normal = max(MIN_DECODE_INTERVAL, self.config.decode_interval_seconds)
        if self._is_boosted(now):
            fast = max(MIN_DECODE_INTERVAL, self.config.boundary_decode_interval_seconds)
            return min(fast, normal)
        self._boundary_fast_decode_until = None
        return normal

    def _required_agreement_passes(self, now: float) -> int:
        if self._is_boosted(now):
            return max(1, self.config.min_agreement_passes, self.config.boundary_min_agreement_passes)
        return max(1, self.config.min_agreement_passes)

    def _launch_decode_pass_locked(self) -> None:
        """Start a decode task. Caller holds the session lock and set is_decoding."""
        if self.config.finalize_completed_windows:
            windows = self._encoder.drain_newly_encoded_windows()
            if windows:
                self._frozen_window_count = self._encoder.encoded_window_count
                params = FinalizeWindowsParams(
                    windows=windows,
                    total_samples=self._total_samples,
                    encoded_window_count=self._encoder.encoded_window_count,
                )
                logger.debug(f"Launching finalize pass for {len(windows)} window(s)")
                self._submit(self._run_finalize_completed_windows, params, ErrorCode.FINALIZE_FAILED)
                return
        else:
            self._freeze_completed_windows_locked()

        # Streaming passes only cover the current partial window
        audio_features = self._encoder.encode_pending()
        if audio_features is None:
            with self._state_lock:
                self._shared.is_decoding = False
            return

        with self._state_lock:
            state = self._shared
            confirmed_token_ids = list(state.confirmed_token_ids)
            display_prefix = state.display_prefix
            prev_provisional = list(state.provisional)

        params = DecodePassParams(
            audio_features=audio_features,
            confirmed_token_ids=confirmed_token_ids,
            display_prefix=display_prefix,
            prev_provisional=prev_provisional,
            min_agreement_passes=self._required_agreement_passes(self._clock()),
            total_samples=self._total_samples,
            encoded_window_count=self._encoder.encoded_window_count,
        )
        self._submit(self._run_decode_pass, params, ErrorCode.INFERENCE_FAILED)

    def _submit(self, task: Callable, params, error_code: str) -> None:
        self._decode_future = self._executor.submit(self._run_guarded, task, params, error_code)

    def _run_guarded(self, task: Callable, params, error_code: str) -> None:
        """Run a decode task; failures become ERROR events, is_decoding is always released."""
        try:
            task(params)
        except Exception as e:
            logger.exception(f"Decode task failed: {e}")
            if not self._cancelled.is_set():
                self.events.emit(TranscriptionEvent.failure(error_code, str(e)))
        finally:
            with self._state_lock:
                self._shared.is_decoding = False

    def _freeze_completed_windows_locked(self) -> None:
        """Move confirmed + provisional text of completed windows into completed_text."""
        current = self._encoder.encoded_window_count
        if current <= self._frozen_window_count:
            return

        tokenizer = self.model.tokenizer
        with self._state_lock:
            state = self._shared
            tokens = state.confirmed_token_ids + [t.token_id for t in state.provisional]
            if tokens:
                state.completed_text = concat_text(state.completed_text, tokenizer.decode(tokens))
            state.reset_window()

        logger.debug(f"Froze text for windows {self._frozen_window_count}..{current - 1}")
        self._frozen_window_count = current

    # ------------------------------------------------------------------
    # Decode tasks (worker threads)
    # ------------------------------------------------------------------

    def _decode(self, audio_features: mx.array, prefix_token_ids=(), on_token=None) -> DecodeOutput | None:
        return generate_tokens(
            self.model,
            audio_features,
            language=self.config.language,
            prefix_token_ids=prefix_token_ids,
            temperature=self.config.temperature,
            max_tokens_per_pass=self.config.max_tokens_per_pass,
            audio_tokens_per_second=self.config.audio_tokens_per_second,
            is_cancelled=self._cancelled.is_set,
            on_token=on_token,
        )

    def _run_decode_pass(self, params: DecodePassParams) -> None:
        """Streaming pass over the partial window, then reconciliation."""
        if self._cancelled.is_set():
            return

        tokenizer = self.model.tokenizer
        confirmed_count = len(params.confirmed_token_ids)

        def on_token(all_token_ids: list[int]) -> None:
            provisional_text = tokenizer.decode(all_token_ids[confirmed_count:])
            self.events.emit(TranscriptionEvent.display_update(params.display_prefix, provisional_text))

        output = self._decode(params.audio_features, params.confirmed_token_ids, on_token)
        memory.clear_cache()

        if output is None or self._cancelled.is_set() or output.num_audio_tokens == 0:
            return

        self._promote_tokens(output, params)
        self._emit_stats(
            decode_time=output.decode_time,
            token_count=len(output.token_ids),
            audio_seconds=output.num_audio_tokens / self.config.audio_tokens_per_second,
            total_samples=params.total_samples,
            encoded_window_count=params.encoded_window_count,
        )

    def _promote_tokens(self, output: DecodeOutput, params: DecodePassParams) -> None:
        tokenizer = self.model.tokenizer
        confirmed_count = len(params.confirmed_token_ids)
        new_provisional = output.token_ids[confirmed_count:]

        result = reconcile_tokens(
            params.prev_provisional,
            new_provisional,
            now=self._clock(),
            delay_seconds=self.config.delay_seconds,
            required_agreement_passes=params.min_agreement_passes,
        )

        confirmed_event = None
        with self._state_lock:
            state = self._shared
            if result.promoted_ids:
                state.confirmed_token_ids.extend(result.promoted_ids)
                state.confirmed_text = tokenizer.decode(state.confirmed_token_ids)
                confirmed_event = TranscriptionEvent.confirmed(state.display_prefix)
            state.provisional = result.remaining
            display_prefix = state.display_prefix

        if confirmed_event is not None:
            self.events.emit(confirmed_event)
        self.events.emit(TranscriptionEvent.display_update(
            display_prefix, tokenizer.decode(result.remaining_ids),
        ))
        logger.debug(
            f"Reconciled pass: match={result.match_length}, promoted={len(result.promoted_ids)}, "
            f"provisional={len(result.remaining)}, required={params.min_agreement_passes}",
        )

    def _run_finalize_completed_windows(self, params: FinalizeWindowsParams) -> None:
        """Decode each completed window to completion and append its text."""
        tokenizer = self.model.tokenizer
        total_decode_time = 0.0
        total_tokens = 0
        total_audio = 0.0

        for audio_features in params.windows:
            if self._cancelled.is_set():
                return
            if audio_features.shape[0] <= 0:
                continue

            output = self._decode(audio_features)
            if output is None or self._cancelled.is_set():
                return

            total_decode_time += output.decode_time
            total_tokens += len(output.token_ids)
            total_audio += output.num_audio_tokens / self.config.audio_tokens_per_second

            window_text = tokenizer.decode(output.token_ids)
            if not window_text.strip():
                continue

            with self._state_lock:
                state = self._shared
                state.completed_text = concat_text(state.completed_text, window_text)
                state.reset_window()
                completed_text = state.completed_text

            self.events.emit(TranscriptionEvent.confirmed(completed_text))
            self.events.emit(TranscriptionEvent.display_update(completed_text, ""))

        memory.clear_cache()
        self._emit_stats(
            decode_time=total_decode_time,
            token_count=total_tokens,
            audio_seconds=total_audio,
            total_samples=params.total_samples,
            encoded_window_count=params.encoded_window_count,
        )

    def _emit_stats(
        self,
        decode_time: float,
        token_count: int,
        audio_seconds: float,
        total_samples: int,
        encoded_window_count: int,
    ) -> None:
        stats = StreamingStats(
            encoded_window_count=encoded_window_count,
            total_audio_seconds=total_samples / self.model.sample_rate,
            tokens_per_second=token_count / decode_time if decode_time > 0 else 0.0,
            real_time_factor=decode_time / audio_seconds if audio_seconds > 0 else 0.0,
            peak_memory_gb=memory.get_peak_memory_gb(),
        )
        self.events.emit(TranscriptionEvent.stats_update(stats))

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def stop(self) -> Future | None:
        """
        Stop accepting audio and finish asynchronously.

        The drain task waits for the in-flight decode, flushes remaining
        audio, finalizes completed windows, runs one last decode over the
        partial window, then emits ENDED and closes the stream. Do not call
        stop() twice; call cancel() to abandon a stuck drain.

        Returns:
            Future of the drain task, or None if the session was not active
        """
        with self._session_lock:
            if self._state != SessionState.ACTIVE:
                return None
            self._state = SessionState.STOPPING

            in_flight = self._decode_future
            self._decode_future = None
            self._stop_future = self._executor.submit(self._finish_stop, in_flight)
            logger.info(
                f"Stopping session: {self.total_audio_seconds:.1f}s audio, "
                f"{self._encoder.encoded_window_count} window(s)",
            )
            return self._stop_future

    def _finish_stop(self, in_flight: Future | None) -> None:
        try:
            self._drain_and_end(in_flight)
        except Exception as e:
            logger.exception(f"Stop drain failed: {e}")
            if not self._cancelled.is_set():
                self.events.emit(TranscriptionEvent.failure(ErrorCode.STOP_FAILED, str(e)))

    def _drain_and_end(self, in_flight: Future | None) -> None:
        if in_flight is not None:
            wait_futures([in_flight])
        if self._cancelled.is_set():
            return

        with self._session_lock:
            if self._cancelled.is_set():
                return

            mel_frames = self._mel.flush()
            if mel_frames is not None:
                self._encoder.feed(mel_frames)

            if self.config.finalize_completed_windows:
                completed_windows = self._encoder.drain_newly_encoded_windows()
                self._frozen_window_count = self._encoder.encoded_window_count
            else:
                completed_windows = []
                self._freeze_completed_windows_locked()

            pending_features = self._encoder.encode_pending()
            total_samples = self._total_samples
            encoded_window_count = self._encoder.encoded_window_count

        if completed_windows:
            self._run_finalize_completed_windows(FinalizeWindowsParams(
                windows=completed_windows,
                total_samples=total_samples,
                encoded_window_count=encoded_window_count,
            ))
            if self._cancelled.is_set():
                return

        tokenizer = self.model.tokenizer
        if pending_features is not None and pending_features.shape[0] > 0:
            with self._state_lock:
                confirmed_token_ids = list(self._shared.confirmed_token_ids)

            output = self._decode(pending_features, confirmed_token_ids)
            memory.clear_cache()
            if output is None or self._cancelled.is_set():
                return

            with self._state_lock:
                state = self._shared
                state.confirmed_token_ids = output.token_ids
                state.provisional = []
                state.confirmed_text = tokenizer.decode(output.token_ids)
                final_text = state.display_prefix

            self._emit_stats(
                decode_time=output.decode_time,
                token_count=len(output.token_ids),
                audio_seconds=output.num_audio_tokens / self.config.audio_tokens_per_second,
                total_samples=total_samples,
                encoded_window_count=encoded_window_count,
            )
        else:
            with self._state_lock:
                state = self._shared
                if state.provisional:
                    state.confirmed_token_ids.extend(t.token_id for t in state.provisional)
                    state.provisional = []
                if state.confirmed_token_ids:
                    state.confirmed_text = tokenizer.decode(state.confirmed_token_ids)
                final_text = state.display_prefix

        with self._session_lock:
            if self._cancelled.is_set():
                return
            self._state = SessionState.ENDED
            self.events.emit(TranscriptionEvent.ended(final_text))
            self.events.close()
            self._encoder.reset()
            self._mel.reset()
            self._boundary_fast_decode_until = None
            self._executor.shutdown(wait=False)

        memory.clear_cache()
        logger.info(f"Session ended: {len(final_text)} chars")

    def cancel(self) -> None:
        """
        Abandon the session immediately.

        In-flight work is cancelled cooperatively, the event stream closes
        without ENDED, and no final decode runs.
        """
        with self._session_lock:
            if self._state in (SessionState.ENDED, SessionState.CANCELLED):
                return
            self._state = SessionState.CANCELLED
            self._cancelled.set()

            for future in (self._decode_future, self._stop_future):
                if future is not None:
                    future.cancel()

            self.events.close()
            self._encoder.reset()
            self._mel.reset()
            self._boundary_fast_decode_until = None
            self._executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Session cancelled")


async def transcribe_stream(
    model: DecoderModel,
    audio_source: AsyncIterator,
    config: StreamingConfig | None = None,
) -> AsyncIterator[TranscriptionEvent]:
    """
    Transcribe an async audio source, yielding events.

    Feeds every chunk, yields whatever events are ready between chunks,
    then stops the session and yields the remaining events through ENDED.
    If the consumer stops iterating early the session is cancelled.

    Example:
        async for event in transcribe_stream(model, mic_chunks()):
            if event.event_type == EventType.ENDED:
                print(event.full_text)
    """
    session = StreamingInferenceSession(model, config)
    try:
        async for chunk in audio_source:
            session.feed_audio(chunk)
            for event in session.events.drain_nowait():
                yield event

        session.stop()
        async for event in session.events:
            yield event
    finally:
        if session.state in (SessionState.ACTIVE, SessionState.STOPPING):
            session.cancel()
