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
Incremental log-mel front-end for streaming transcription.

Frame k covers stream samples [k * hop_length, k * hop_length + n_fft).
A frame is emitted as soon as all of its samples have arrived, so the frame
sequence does not depend on how the stream was chunked. Normalisation uses
a fixed offset instead of Whisper's per-utterance max, which would make
early frames depend on later audio.
"""

import math
from functools import lru_cache

import mlx.core as mx
import numpy as np

from .config import HOP_LENGTH, N_FFT, N_MELS, SAMPLE_RATE
from .errors import ConfigurationError


@lru_cache(maxsize=4)
def get_hanning_window(size: int) -> np.ndarray:
    """Periodic Hann window of the given size (cached)."""
    return np.hanning(size + 1)[:-1].astype(np.float32)


@lru_cache(maxsize=4)
def get_mel_filters(
    sample_rate: int = SAMPLE_RATE,
    n_fft: int = N_FFT,
    n_mels: int = N_MELS,
) -> np.ndarray:
    """
    Mel filterbank matrix (cached).

    Triangular filters on the Slaney mel scale (linear below 1 kHz,
    logarithmic above) with area normalisation, as in the Whisper
    front-end. Every band spans at least one FFT bin at 128 mels.

    Returns:
        Filterbank, shape (n_mels, n_fft // 2 + 1)
    """
    n_freqs = n_fft // 2 + 1
    freqs = np.linspace(0, sample_rate / 2, n_freqs)

    f_sp = 200.0 / 3          # Hz per mel in the linear region
    min_log_hz = 1000.0
    min_log_mel = min_log_hz / f_sp
    logstep = np.log(6.4) / 27.0

    def hz_to_mel(hz):
        hz = np.asarray(hz, dtype=np.float64)
        mel = hz / f_sp
        log_region = hz >= min_log_hz
        return np.where(
            log_region,
            min_log_mel + np.log(np.maximum(hz, min_log_hz) / min_log_hz) / logstep,
            mel,
        )

    def mel_to_hz(mel):
        mel = np.asarray(mel, dtype=np.float64)
        log_region = mel >= min_log_mel
        return np.where(
            log_region,
            min_log_hz * np.exp(logstep * (mel - min_log_mel)),
            f_sp * mel,
        )

    mel_points = np.linspace(hz_to_mel(0), hz_to_mel(sample_rate / 2), n_mels + 2)
    hz_points = mel_to_hz(mel_points)

    left = hz_points[:-2, np.newaxis]
    center = hz_points[1:-1, np.newaxis]
    right = hz_points[2:, np.newaxis]
    rising = (freqs - left) / (center - left)
    falling = (right - freqs) / (right - center)
    filters = np.maximum(0, np.minimum(rising, falling))

    enorm = 2.0 / (hz_points[2:n_mels + 2] - hz_points[:n_mels])
    filters *= enorm[:, np.newaxis]

    return filters.astype(np.float32)


def to_float32_audio(samples) -> np.ndarray:
    """
    Normalize an audio chunk to a 1-D float32 numpy array.

    int16 PCM is scaled to [-1, 1); lists and mx arrays are converted.
    """
    audio = np.asarray(samples)
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype != np.float32:
        audio = audio.astype(np.float32)
    return audio.reshape(-1)


class IncrementalMelSpectrogram:
    """
    Stateful log-mel extractor for chunked audio.

    Example:
        mel = IncrementalMelSpectrogram(n_mels=128)
        for chunk in microphone_chunks:
            frames = mel.process(chunk)     # (n_frames, n_mels) or None
            if frames is not None:
                encoder.feed(frames)
        tail = mel.flush()                  # zero-padded final frame(s)
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        n_fft: int = N_FFT,
        hop_length: int = HOP_LENGTH,
        n_mels: int = N_MELS,
    ):
        if n_mels <= 0:
            raise ConfigurationError(f"n_mels must be > 0, got {n_mels}")
        if sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be > 0, got {sample_rate}")
        if n_fft <= 0 or hop_length <= 0:
            raise ConfigurationError("n_fft and hop_length must be > 0")
        if hop_length > n_fft:
            raise ConfigurationError(
                f"hop_length ({hop_length}) must not exceed n_fft ({n_fft})",
            )

        self.sample_rate = sample_rate
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.n_mels = n_mels

        self._window = get_hanning_window(n_fft)
        # Nyquist bin dropped, like mlx-whisper
        self._filters = get_mel_filters(sample_rate, n_fft, n_mels)[:, :-1].T

        self.reset()

    def reset(self) -> None:
        """Drop all buffered samples."""
        self._buffer = np.zeros(0, dtype=np.float32)
        # Leading buffered samples already covered by an emitted frame
        self._covered = 0
        self.total_frames = 0

    @property
    def buffered_samples(self) -> int:
        """Number of samples held for the next frame."""
        return len(self._buffer)

    def process(self, samples) -> mx.array | None:
        """
        Consume a chunk of audio and return any newly completed frames.

        Args:
            samples: Audio chunk (float32 in [-1, 1] or int16 PCM), any length

        Returns:
            Log-mel frames, shape (n_frames, n_mels), or None if no frame
            completed
        """
        audio = to_float32_audio(samples)
        if audio.size:
            self._buffer = np.concatenate([self._buffer, audio])

        if len(self._buffer) < self.n_fft:
            return None

        n_frames = 1 + (len(self._buffer) - self.n_fft) // self.hop_length
        frames = self._compute_frames(self._buffer, n_frames)

        self._buffer = self._buffer[n_frames * self.hop_length:]
        self._covered = self.n_fft - self.hop_length
        self.total_frames += n_frames
        return frames

    def flush(self) -> mx.array | None:
        """
        Emit the final zero-padded frame(s) at end of stream.

        Returns:
            Frames covering every buffered sample not yet part of an emitted
            frame, or None if there are none. The buffer is cleared.
        """
        uncovered = len(self._buffer) - self._covered
        if uncovered <= 0:
            self._buffer = np.zeros(0, dtype=np.float32)
            self._covered = 0
            return None

        n_samples = len(self._buffer)
        if n_samples <= self.n_fft:
            n_frames = 1
        else:
            n_frames = 1 + math.ceil((n_samples - self.n_fft) / self.hop_length)
        padded_len = (n_frames - 1) * self.hop_length + self.n_fft
        audio = np.pad(self._buffer, (0, padded_len - n_samples))

        frames = self._compute_frames(audio, n_frames)
        self._buffer = np.zeros(0, dtype=np.float32)
        self._covered = 0
        self.total_frames += n_frames
        return frames

    def _compute_frames(self, audio: np.ndarray, n_frames: int) -> mx.array:
        """Log-mel for the first n_frames frames of audio."""
        audio = np.ascontiguousarray(audio, dtype=np.float32)
        framed = np.lib.stride_tricks.as_strided(
            audio,
            shape=(n_frames, self.n_fft),
            strides=(audio.strides[0] * self.hop_length, audio.strides[0]),
            writeable=False,
        )
        windowed = framed * self._window

        stft = np.fft.rfft(windowed, n=self.n_fft)
        magnitudes = np.abs(stft[:, :-1]) ** 2
        mel_spec = magnitudes @ self._filters

        log_spec = np.log10(np.clip(mel_spec, a_min=1e-10, a_max=None))
        log_spec = (log_spec + 4.0) / 4.0

        return mx.array(log_spec.astype(np.float32))
