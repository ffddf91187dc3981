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

"""Shared fixtures and model mocks for the streaming STT tests."""

import threading

import mlx.core as mx
import numpy as np
import pytest

from mlx_streaming_stt.interfaces import DecoderModel, Tokenizer, WindowEncoder

# Module-level RNG for reproducible tests
_rng = np.random.default_rng(42)

EOS_ID = 31
VOCAB_SIZE = 32
HIDDEN_DIM = 8
AUDIO_PAD_ID = 30

VOCAB = {
    1: "the",
    2: "cat",
    3: "sat",
    4: "on",
    5: "mat",
    6: "and",
    7: "dog",
    8: "ran",
}


def make_audio(n_samples: int) -> np.ndarray:
    """Low-amplitude noise, float32."""
    return (_rng.standard_normal(n_samples) * 0.1).astype(np.float32)


def samples_for_frames(n_frames: int, n_fft: int = 400, hop_length: int = 160) -> int:
    """Samples needed for the first chunk to produce exactly n_frames frames."""
    return n_fft + (n_frames - 1) * hop_length


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockWindowEncoder(WindowEncoder):
    """Encodes roughly one token per 8 mel frames (at least one)."""

    def __init__(self, window_size: int = 20, n_mels: int = 128, frames_per_token: int = 8):
        self.window_size = window_size
        self.n_mels = n_mels
        self.frames_per_token = frames_per_token
        self.calls: list[int] = []
        self.fail = False

    def encode_single_window(self, mel_frames):
        if self.fail:
            raise RuntimeError("encoder exploded")
        n_frames = mel_frames.shape[0]
        self.calls.append(n_frames)
        n_tokens = max(1, n_frames // self.frames_per_token)
        return mx.ones((n_tokens, HIDDEN_DIM)) * float(n_frames)


class MockTokenizer(Tokenizer):
    """Joins vocabulary words with single spaces."""

    def decode(self, token_ids):
        return " ".join(VOCAB.get(int(t), f"<{int(t)}>") for t in token_ids)


class MockCache:
    """Tracks tokens fed after the prefill."""

    def __init__(self):
        self.fed: list[int] = []


class MockDecoderModel(DecoderModel):
    """
    Scripted decoder.

    Each prefill starts a new pass; pass i emits scripts[i] (the last
    script repeats) followed by EOS. Tokens re-fed as a prefix advance the
    script position, so a matching prefix continues the same script.
    """

    def __init__(self, scripts=None, window_size: int = 20):
        self.sample_rate = 16000
        self.eos_token_ids = (EOS_ID,)
        self.tokenizer = MockTokenizer()
        self.audio_tower = MockWindowEncoder(window_size=window_size)

        self.scripts = scripts or [[1, 2, 3]]
        self.prefill_count = 0
        self.forward_calls = 0
        self.prompt_lengths: list[int] = []
        self.languages: list[str] = []
        self.fed_after_prefill: list[list[int]] = []

        self.fail = False
        # Blocks the prefill until set, when given
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

        self._lock = threading.Lock()
        self._current_script: list[int] = []

    def build_prompt(self, num_audio_tokens, language):
        self.languages.append(language)
        ids = [1000, 1001] + [AUDIO_PAD_ID] * num_audio_tokens + [1002]
        return mx.array([ids], dtype=mx.int32)

    def embed(self, token_ids):
        return mx.zeros((1, token_ids.shape[1], HIDDEN_DIM))

    def merge_audio_features(self, inputs_embeds, audio_features, token_ids):
        return inputs_embeds

    def make_cache(self):
        return MockCache()

    def forward(self, token_ids, cache, input_embeddings=None):
        with self._lock:
            self.forward_calls += 1
        if self.fail:
            raise RuntimeError("decoder exploded")

        if input_embeddings is not None:
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(timeout=5.0)
            with self._lock:
                index = min(self.prefill_count, len(self.scripts) - 1)
                self._current_script = list(self.scripts[index])
                self.prefill_count += 1
                self.prompt_lengths.append(token_ids.shape[1])
                self.fed_after_prefill.append([])
        else:
            token_id = int(token_ids[0, 0].item())
            cache.fed.append(token_id)
            with self._lock:
                self.fed_after_prefill[-1].append(token_id)

        position = len(cache.fed)
        script = self._current_script
        next_token = script[position] if position < len(script) else EOS_ID

        logits = np.zeros((1, token_ids.shape[1], VOCAB_SIZE), dtype=np.float32)
        logits[0, -1, next_token] = 10.0
        return mx.array(logits)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def model():
    return MockDecoderModel()
