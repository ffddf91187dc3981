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
Tests for the incremental log-mel front-end.

Tests:
1. Frame emission and counts
2. Chunking independence
3. End-of-stream flush
4. Validation and input normalisation
"""

import numpy as np
import pytest

mx = pytest.importorskip("mlx.core")

from mlx_streaming_stt.audio import (
    IncrementalMelSpectrogram,
    get_mel_filters,
    to_float32_audio,
)
from mlx_streaming_stt.errors import ConfigurationError

# Module-level RNG for reproducible tests
_rng = np.random.default_rng(42)


def _noise(n_samples: int) -> np.ndarray:
    return (_rng.standard_normal(n_samples) * 0.1).astype(np.float32)


def _collect(mel: IncrementalMelSpectrogram, chunks) -> np.ndarray:
    frames = []
    for chunk in chunks:
        out = mel.process(chunk)
        if out is not None:
            frames.append(np.array(out))
    if not frames:
        return np.zeros((0, mel.n_mels), dtype=np.float32)
    return np.concatenate(frames, axis=0)


class TestMelFilters:
    """Test mel filterbank construction."""

    def test_shape(self):
        """Test filterbank shape is (n_mels, n_fft // 2 + 1)."""
        filters = get_mel_filters(16000, 400, 128)
        assert filters.shape == (128, 201)

    def test_non_negative(self):
        """Test filters are non-negative and every band has support."""
        filters = get_mel_filters(16000, 400, 80)
        assert np.all(filters >= 0)
        # Every filter has some support
        assert np.all(filters.sum(axis=1) > 0)

    def test_no_empty_bands_at_128_mels(self):
        """Test every one of 128 bands covers at least one FFT bin."""
        filters = get_mel_filters(16000, 400, 128)
        assert np.all(filters.sum(axis=1) > 0)


class TestFrameEmission:
    """Test when frames are emitted."""

    def test_no_frame_before_n_fft(self):
        """Test no frame is emitted until n_fft samples arrive."""
        mel = IncrementalMelSpectrogram()
        assert mel.process(_noise(399)) is None
        assert mel.buffered_samples == 399

    def test_first_frame_at_n_fft(self):
        """Test the first frame completes exactly at n_fft samples."""
        mel = IncrementalMelSpectrogram()
        assert mel.process(_noise(399)) is None
        frames = mel.process(_noise(1))
        assert frames is not None
        assert frames.shape == (1, 128)

    def test_frame_count(self):
        """n_fft + (k-1) * hop samples give exactly k frames."""
        mel = IncrementalMelSpectrogram()
        frames = mel.process(_noise(400 + 19 * 160))
        assert frames.shape == (20, 128)
        assert mel.total_frames == 20

    def test_leftover_buffer(self):
        """Only samples needed by future frames are kept."""
        mel = IncrementalMelSpectrogram()
        mel.process(_noise(1000))
        # 4 frames consumed 4 * 160 samples
        assert mel.buffered_samples == 1000 - 4 * 160

    def test_n_mels(self):
        """Test frames have the configured number of mel bins."""
        mel = IncrementalMelSpectrogram(n_mels=80)
        frames = mel.process(_noise(800))
        assert frames.shape[1] == 80

    def test_silence_floor(self):
        """Silence hits the log floor: (log10(1e-10) + 4) / 4."""
        mel = IncrementalMelSpectrogram()
        frames = np.array(mel.process(np.zeros(1600, dtype=np.float32)))
        np.testing.assert_allclose(frames, -1.5, rtol=1e-6)

    def test_dtype(self):
        """Test frames are float32 MLX arrays."""
        mel = IncrementalMelSpectrogram()
        frames = mel.process(_noise(800))
        assert frames.dtype == mx.float32


class TestChunkingIndependence:
    """Frames must not depend on how the stream was split."""

    def test_random_chunking_matches_single_call(self):
        """Test random chunk boundaries give the same frames as one call."""
        audio = _noise(16000)

        whole = _collect(IncrementalMelSpectrogram(), [audio])

        cuts = np.sort(_rng.choice(np.arange(1, len(audio)), size=40, replace=False))
        chunks = np.split(audio, cuts)
        chunked = _collect(IncrementalMelSpectrogram(), chunks)

        assert chunked.shape == whole.shape
        np.testing.assert_allclose(chunked, whole, rtol=1e-5, atol=1e-5)

    def test_tiny_chunks(self):
        """Chunks smaller than a hop still produce identical frames."""
        audio = _noise(4000)
        whole = _collect(IncrementalMelSpectrogram(), [audio])
        chunked = _collect(IncrementalMelSpectrogram(), np.array_split(audio, 100))
        np.testing.assert_allclose(chunked, whole, rtol=1e-5, atol=1e-5)

    def test_flush_matches_across_chunking(self):
        """Test the flushed tail does not depend on chunking."""
        audio = _noise(5000)

        mel_a = IncrementalMelSpectrogram()
        _collect(mel_a, [audio])
        tail_a = mel_a.flush()

        mel_b = IncrementalMelSpectrogram()
        _collect(mel_b, np.array_split(audio, 7))
        tail_b = mel_b.flush()

        np.testing.assert_allclose(np.array(tail_a), np.array(tail_b), rtol=1e-5, atol=1e-5)


class TestFlush:
    """Test end-of-stream flush."""

    def test_flush_empty(self):
        """Test flush with nothing buffered returns None."""
        assert IncrementalMelSpectrogram().flush() is None

    def test_flush_nothing_uncovered(self):
        """All samples already inside emitted frames: nothing to flush."""
        mel = IncrementalMelSpectrogram()
        mel.process(_noise(400 + 19 * 160))
        assert mel.flush() is None
        assert mel.buffered_samples == 0

    def test_flush_uncovered_tail(self):
        """Test flush emits a padded frame for uncovered samples."""
        mel = IncrementalMelSpectrogram()
        mel.process(_noise(400 + 19 * 160 + 60))
        tail = mel.flush()
        assert tail is not None
        assert tail.shape == (1, 128)
        assert mel.buffered_samples == 0

    def test_flush_short_stream(self):
        """A stream shorter than n_fft still yields one padded frame."""
        mel = IncrementalMelSpectrogram()
        assert mel.process(_noise(100)) is None
        tail = mel.flush()
        assert tail.shape == (1, 128)

    def test_flush_twice(self):
        """Test a second flush has nothing left to emit."""
        mel = IncrementalMelSpectrogram()
        mel.process(_noise(500))
        assert mel.flush() is not None
        assert mel.flush() is None

    def test_reset(self):
        """Test reset drops buffered samples and frame count."""
        mel = IncrementalMelSpectrogram()
        mel.process(_noise(1000))
        mel.reset()
        assert mel.buffered_samples == 0
        assert mel.total_frames == 0
        assert mel.flush() is None


class TestValidation:
    """Test construction validation and input normalisation."""

    def test_invalid_n_mels(self):
        """Test zero mel bins is rejected."""
        with pytest.raises(ConfigurationError):
            IncrementalMelSpectrogram(n_mels=0)

    def test_hop_exceeds_n_fft(self):
        """Test a hop longer than the FFT window is rejected."""
        with pytest.raises(ConfigurationError):
            IncrementalMelSpectrogram(n_fft=256, hop_length=512)

    def test_invalid_sample_rate(self):
        """Test a zero sample rate is rejected."""
        with pytest.raises(ConfigurationError):
            IncrementalMelSpectrogram(sample_rate=0)

    def test_int16_input(self):
        """int16 PCM is scaled to float in [-1, 1)."""
        pcm = np.array([0, 16384, -32768], dtype=np.int16)
        audio = to_float32_audio(pcm)
        assert audio.dtype == np.float32
        np.testing.assert_allclose(audio, [0.0, 0.5, -1.0])

    def test_int16_frames_match_float(self):
        """Test int16 input gives the same frames as scaled float input."""
        pcm = (_rng.standard_normal(1600) * 3000).astype(np.int16)
        from_int = np.array(IncrementalMelSpectrogram().process(pcm))
        from_float = np.array(IncrementalMelSpectrogram().process(pcm.astype(np.float32) / 32768.0))
        np.testing.assert_allclose(from_int, from_float, rtol=1e-5, atol=1e-5)

    def test_empty_chunk(self):
        """Test an empty chunk emits nothing."""
        mel = IncrementalMelSpectrogram()
        assert mel.process(np.zeros(0, dtype=np.float32)) is None
