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
Model capability interfaces consumed by the streaming core.

The streaming session never touches transformer internals. It needs three
narrow capabilities, which real models (e.g. a Qwen3-ASR port) implement
and tests replace with small mocks:

- WindowEncoder: mel window -> fixed-length embedding sequence
- Tokenizer: token ids -> text
- DecoderModel: prompt building, audio merge, KV-cached forward passes
"""

from __future__ import annotations

from typing import Any

import mlx.core as mx

from .config import DEFAULT_EOS_TOKEN_IDS, N_MELS, SAMPLE_RATE, WINDOW_SIZE


class WindowEncoder:
    """
    Audio encoder with block-local attention.

    Windows are encoded independently (no cross-window attention), so
    encoded windows can be concatenated in temporal order.
    """

    window_size: int = WINDOW_SIZE
    n_mels: int = N_MELS

    def encode_single_window(self, mel_frames: mx.array) -> mx.array:
        """
        Encode one window of mel frames.

        Args:
            mel_frames: shape (n_frames, n_mels), n_frames <= window_size

        Returns:
            Embeddings, shape (n_tokens, hidden_dim)
        """
        raise NotImplementedError


class Tokenizer:
    """Text tokenizer (decode direction only)."""

    def decode(self, token_ids: list[int]) -> str:
        raise NotImplementedError


class DecoderModel:
    """
    Autoregressive audio-language decoder.

    A decode pass calls, in order: build_prompt, embed,
    merge_audio_features, make_cache, then forward once for the prefill
    (with input_embeddings) and once per subsequent token.
    """

    sample_rate: int = SAMPLE_RATE
    eos_token_ids: tuple[int, ...] = DEFAULT_EOS_TOKEN_IDS
    tokenizer: Tokenizer | None = None
    audio_tower: WindowEncoder | None = None

    def build_prompt(self, num_audio_tokens: int, language: str) -> mx.array:
        """
        Build prompt token ids with audio placeholder positions.

        Returns:
            Token ids, shape (1, prompt_len)
        """
        raise NotImplementedError

    def embed(self, token_ids: mx.array) -> mx.array:
        """Token embeddings, shape (1, len, hidden_dim)."""
        raise NotImplementedError

    def merge_audio_features(
        self,
        inputs_embeds: mx.array,
        audio_features: mx.array,
        token_ids: mx.array,
    ) -> mx.array:
        """Place audio features at the audio placeholder positions."""
        raise NotImplementedError

    def make_cache(self) -> Any:
        """Fresh, empty key-value cache."""
        raise NotImplementedError

    def forward(
        self,
        token_ids: mx.array,
        cache: Any,
        input_embeddings: mx.array | None = None,
    ) -> mx.array:
        """
        Run the decoder, extending cache.

        Returns:
            Logits, shape (1, len, vocab_size)
        """
        raise NotImplementedError
