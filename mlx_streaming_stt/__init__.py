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
mlx_streaming_stt - Streaming speech-to-text core for MLX

Low-latency live transcription over an audio-language decoder on Apple
Silicon:
- Incremental log-mel front-end (chunking-independent frames)
- Windowed audio encoding with overlap and bounded cache
- Periodic decode passes with KV-cached prefix re-feed
- Confirmed/provisional token reconciliation with delay + agreement gating
- Boundary boost: faster, stricter decoding right after a window completes
- Thread-safe event stream (sync and async iteration, callbacks)
"""

from .audio import IncrementalMelSpectrogram, get_mel_filters
from .config import (
    STREAMING_PRESETS,
    DelayPreset,
    StreamingConfig,
    get_streaming_config,
    resolve_delay_ms,
)
from .decoding import DecodeOutput, compute_max_tokens, generate_tokens
from .encoder import StreamingEncoder
from .errors import (
    ConfigurationError,
    ErrorCode,
    ModelInvocationError,
    StreamingError,
)
from .events import (
    EventStream,
    EventType,
    StreamingStats,
    TranscriptionEvent,
    event_to_dict,
)
from .interfaces import DecoderModel, Tokenizer, WindowEncoder
from .reconciliation import (
    ProvisionalToken,
    ReconcileResult,
    concat_text,
    dedupe_leading_word_overlap,
    reconcile_tokens,
)
from .session import (
    SessionState,
    StreamingInferenceSession,
    transcribe_stream,
)

__all__ = [
    # Audio
    "IncrementalMelSpectrogram",
    "get_mel_filters",
    # Config
    "STREAMING_PRESETS",
    "DelayPreset",
    "StreamingConfig",
    "get_streaming_config",
    "resolve_delay_ms",
    # Decoding
    "DecodeOutput",
    "compute_max_tokens",
    "generate_tokens",
    # Encoder
    "StreamingEncoder",
    # Errors
    "ConfigurationError",
    "ErrorCode",
    "ModelInvocationError",
    "StreamingError",
    # Events
    "EventStream",
    "EventType",
    "StreamingStats",
    "TranscriptionEvent",
    "event_to_dict",
    # Interfaces
    "DecoderModel",
    "Tokenizer",
    "WindowEncoder",
    # Reconciliation
    "ProvisionalToken",
    "ReconcileResult",
    "concat_text",
    "dedupe_leading_word_overlap",
    "reconcile_tokens",
    # Session
    "SessionState",
    "StreamingInferenceSession",
    "transcribe_stream",
]

__version__ = "0.1.0"
