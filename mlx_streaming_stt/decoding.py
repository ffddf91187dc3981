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
Single autoregressive decode pass over encoder features.

A pass is a pure function of its inputs: it builds the prompt with the
audio features merged in, prefills a fresh KV cache, re-feeds any
already-confirmed tokens so the cache reflects them, then generates until
EOS or the token budget. It owns no session state.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import mlx.core as mx

from .config import AUDIO_TOKENS_PER_SECOND, MIN_TOKENS_PER_PASS
from .errors import ModelInvocationError
from .interfaces import DecoderModel

logger = logging.getLogger(__name__)


@dataclass
class DecodeOutput:
    """Result of one decode pass."""
    token_ids: list[int] = field(default_factory=list)  # prefix + generated
    generated_count: int = 0
    decode_time: float = 0.0       # seconds, excluding prefill
    num_audio_tokens: int = 0

    @property
    def tokens_per_second(self) -> float:
        if self.decode_time > 0:
            return len(self.token_ids) / self.decode_time
        return 0.0


def compute_max_tokens(
    num_audio_tokens: int,
    confirmed_count: int,
    max_tokens_per_pass: int,
    audio_tokens_per_second: float = AUDIO_TOKENS_PER_SECOND,
) -> int:
    """
    Adaptive token budget for a pass.

    Expects ~10 tokens per second of audio with a floor of 24, never
    leaves fewer than 24 tokens of room past the confirmed prefix, and is
    capped at max_tokens_per_pass.
    """
    window_seconds = num_audio_tokens / audio_tokens_per_second
    estimated = max(MIN_TOKENS_PER_PASS, math.ceil(window_seconds * 10.0))
    return min(max_tokens_per_pass, max(estimated, confirmed_count + MIN_TOKENS_PER_PASS))


def select_next_token(logits: mx.array, temperature: float = 0.0) -> int:
    """
    Pick the next token from the last position's logits.

    Greedy when temperature is 0, otherwise samples from the
    temperature-scaled distribution.
    """
    last = logits[0, -1, :]
    if temperature > 0:
        return int(mx.random.categorical(last / temperature).item())
    return int(mx.argmax(last).item())


def _token_array(token_id: int) -> mx.array:
    return mx.array([[token_id]], dtype=mx.int32)


def prefill(
    model: DecoderModel,
    audio_features: mx.array,
    language: str,
) -> tuple[mx.array, Any]:
    """
    Build the prompt around the audio features and run it through a fresh cache.

    Returns:
        (logits, cache)
    """
    num_audio_tokens = audio_features.shape[0]
    input_ids = model.build_prompt(num_audio_tokens, language)
    embeds = model.embed(input_ids)
    inputs_embeds = model.merge_audio_features(
        embeds,
        audio_features.astype(embeds.dtype),
        input_ids,
    )

    cache = model.make_cache()
    logits = model.forward(input_ids, cache, input_embeddings=inputs_embeds)
    mx.eval(logits)
    return logits, cache


def generate_tokens(
    model: DecoderModel,
    audio_features: mx.array,
    *,
    language: str,
    prefix_token_ids: Sequence[int] = (),
    temperature: float = 0.0,
    max_tokens_per_pass: int = 512,
    audio_tokens_per_second: float = AUDIO_TOKENS_PER_SECOND,
    is_cancelled: Callable[[], bool] | None = None,
    on_token: Callable[[list[int]], None] | None = None,
) -> DecodeOutput | None:
    """
    Run one decode pass.

    Args:
        model: Decoder model
        audio_features: Encoder output, shape (n_audio_tokens, hidden_dim)
        language: Language passed to the prompt builder
        prefix_token_ids: Confirmed tokens to re-feed before generating
        temperature: 0 for greedy
        max_tokens_per_pass: Hard cap on total tokens (prefix included)
        audio_tokens_per_second: Encoder token rate, for the token budget
        is_cancelled: Checked before every model forward call
        on_token: Called with prefix + generated ids after each new token

    Returns:
        DecodeOutput, or None if cancelled. Zero audio tokens yields an
        empty output without calling the model.

    Raises:
        ModelInvocationError: if the decoder raises
    """
    cancelled = is_cancelled or (lambda: False)
    prefix = list(prefix_token_ids)

    num_audio_tokens = audio_features.shape[0] if audio_features.ndim > 0 else 0
    if num_audio_tokens <= 0:
        return DecodeOutput(token_ids=prefix)
    if cancelled():
        return None

    eos_token_ids = set(model.eos_token_ids)
    max_tokens = compute_max_tokens(
        num_audio_tokens, len(prefix), max_tokens_per_pass, audio_tokens_per_second,
    )

    try:
        logits, cache = prefill(model, audio_features, language)
        if cancelled():
            return None

        start_time = time.perf_counter()
        for token_id in prefix:
            if cancelled():
                return None
            logits = model.forward(_token_array(token_id), cache)
            mx.eval(logits)

        all_token_ids = list(prefix)
        for _ in range(max(0, max_tokens - len(prefix))):
            next_token = select_next_token(logits, temperature)
            if next_token in eos_token_ids:
                break
            all_token_ids.append(next_token)

            if on_token is not None:
                on_token(all_token_ids)

            if cancelled():
                return None
            logits = model.forward(_token_array(next_token), cache)
            mx.eval(logits)
    except ModelInvocationError:
        raise
    except Exception as e:
        raise ModelInvocationError(f"Decoder failed: {e}") from e

    output = DecodeOutput(
        token_ids=all_token_ids,
        generated_count=len(all_token_ids) - len(prefix),
        decode_time=time.perf_counter() - start_time,
        num_audio_tokens=num_audio_tokens,
    )
    logger.debug(
        f"Decode pass: {num_audio_tokens} audio tokens, prefix={len(prefix)}, "
        f"generated={output.generated_count}/{max_tokens - len(prefix)}, "
        f"{output.decode_time * 1000:.0f}ms",
    )
    return output
