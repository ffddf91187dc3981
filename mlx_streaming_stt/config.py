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
Streaming session configuration.

StreamingConfig holds every tunable of a streaming inference session.
Presets bundle the common latency/accuracy tradeoffs:

    config = get_streaming_config("subtitle", language="German")

Delay presets control how long a provisional token must have been visible
before it may be promoted to confirmed text:

    realtime  ~200ms   fastest feedback, more provisional corrections
    agent     ~480ms   balanced, voice agent use cases
    subtitle  ~2400ms  higher accuracy, captioning
    <int>     custom delay in milliseconds
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import ConfigurationError

# Audio front-end constants (Whisper-style features)
SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
N_MELS = 128

# Encoder window geometry: 800 mel frames (~8s) -> ~104 encoder tokens
WINDOW_SIZE = 800
AUDIO_TOKENS_PER_SECOND = 13.0

# Qwen3 <|im_end|> and <|endoftext|>
DEFAULT_EOS_TOKEN_IDS = (151645, 151643)

# Minimum decode budget per pass (tokens)
MIN_TOKENS_PER_PASS = 24

# Floor for any decode interval (seconds)
MIN_DECODE_INTERVAL = 0.05


class DelayPreset(str, Enum):
    """Promotion delay preset (latency vs. accuracy)."""
    REALTIME = "realtime"
    AGENT = "agent"
    SUBTITLE = "subtitle"


DELAY_PRESET_MS = {
    DelayPreset.REALTIME: 200,
    DelayPreset.AGENT: 480,
    DelayPreset.SUBTITLE: 2400,
}


def resolve_delay_ms(preset: DelayPreset | str | int) -> int:
    """
    Resolve a delay preset to milliseconds.

    Args:
        preset: DelayPreset, preset name, or a custom delay in ms

    Returns:
        Delay in milliseconds
    """
    if isinstance(preset, bool):
        raise ConfigurationError(f"Invalid delay preset: {preset!r}")
    if isinstance(preset, int):
        if preset < 0:
            raise ConfigurationError(f"Custom delay must be >= 0 ms, got {preset}")
        return preset
    try:
        return DELAY_PRESET_MS[DelayPreset(preset)]
    except ValueError:
        names = [p.value for p in DelayPreset]
        raise ConfigurationError(
            f"Unknown delay preset '{preset}'. Available: {names} or int ms",
        ) from None


@dataclass
class StreamingConfig:
    """Configuration for a streaming inference session."""
    # Decode cadence
    decode_interval_seconds: float = 1.0           # Steady-state decode interval
    boundary_decode_interval_seconds: float = 0.2  # Faster interval right after a window completes
    boundary_boost_seconds: float = 1.0            # How long the boundary fast cadence lasts

    # Encoder windows
    encoder_window_overlap_seconds: float = 1.0    # Overlap between consecutive ~8s windows
    max_cached_windows: int = 60                   # Encoded windows kept for concatenated output

    # Provisional -> confirmed promotion
    delay_preset: DelayPreset | str | int = DelayPreset.AGENT
    min_agreement_passes: int = 2                  # Consecutive agreeing passes before promotion
    boundary_min_agreement_passes: int = 3         # Stricter threshold while boundary boost is active

    # Decoding
    language: str = "English"
    temperature: float = 0.0                       # 0 = greedy
    max_tokens_per_pass: int = 512
    audio_tokens_per_second: float = AUDIO_TOKENS_PER_SECOND

    # Decode policy: one-shot decode per completed window (A) or
    # continuous partial decode with freeze on completion (B)
    finalize_completed_windows: bool = True

    # Mel front-end
    n_fft: int = N_FFT
    hop_length: int = HOP_LENGTH

    def __post_init__(self):
        resolve_delay_ms(self.delay_preset)
        if isinstance(self.delay_preset, str):
            self.delay_preset = DelayPreset(self.delay_preset)

        for name in (
            "decode_interval_seconds",
            "boundary_decode_interval_seconds",
            "boundary_boost_seconds",
            "encoder_window_overlap_seconds",
            "temperature",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")

        if self.max_cached_windows < 1:
            raise ConfigurationError("max_cached_windows must be >= 1")
        if self.max_tokens_per_pass < 1:
            raise ConfigurationError("max_tokens_per_pass must be >= 1")
        if self.min_agreement_passes < 1 or self.boundary_min_agreement_passes < 1:
            raise ConfigurationError("agreement thresholds must be >= 1")
        if self.audio_tokens_per_second <= 0:
            raise ConfigurationError("audio_tokens_per_second must be > 0")
        if self.n_fft <= 0 or self.hop_length <= 0:
            raise ConfigurationError("n_fft and hop_length must be > 0")

    @property
    def delay_ms(self) -> int:
        """Promotion delay in milliseconds."""
        return resolve_delay_ms(self.delay_preset)

    @property
    def delay_seconds(self) -> float:
        """Promotion delay in seconds."""
        return self.delay_ms / 1000.0

    def overlap_frames(self, sample_rate: int) -> int:
        """Window overlap expressed in mel frames."""
        return max(0, round(self.encoder_window_overlap_seconds * sample_rate / self.hop_length))


# Session presets for different latency/accuracy tradeoffs
STREAMING_PRESETS = {
    "realtime": {
        # Fastest visible feedback, accepts more provisional churn
        "delay_preset": DelayPreset.REALTIME,
        "decode_interval_seconds": 0.5,
        "min_agreement_passes": 2,
        "boundary_min_agreement_passes": 2,
        "description": "Realtime: 200ms promotion delay, decode every 0.5s",
    },
    "agent": {
        # Defaults: balanced for voice agents
        "delay_preset": DelayPreset.AGENT,
        "decode_interval_seconds": 1.0,
        "min_agreement_passes": 2,
        "boundary_min_agreement_passes": 3,
        "description": "Agent: 480ms promotion delay, finalize each window",
    },
    "subtitle": {
        # Captions: stable text matters more than latency
        "delay_preset": DelayPreset.SUBTITLE,
        "decode_interval_seconds": 1.0,
        "min_agreement_passes": 3,
        "boundary_min_agreement_passes": 4,
        "description": "Subtitle: 2400ms promotion delay, stricter agreement",
    },
    "continuous": {
        # No per-window finalize pass; streaming text is frozen at window end
        "delay_preset": DelayPreset.AGENT,
        "decode_interval_seconds": 1.0,
        "finalize_completed_windows": False,
        "description": "Continuous: partial decode only, lowest compute",
    },
}


def get_streaming_config(preset: str = "agent", **overrides) -> StreamingConfig:
    """
    Get a StreamingConfig with preset settings.

    Args:
        preset: One of "realtime", "agent", "subtitle", "continuous"
        **overrides: Override specific config values

    Returns:
        StreamingConfig with preset values and any overrides applied

    Example:
        config = get_streaming_config("realtime", language="French")
    """
    if preset not in STREAMING_PRESETS:
        raise ConfigurationError(
            f"Unknown preset '{preset}'. Available: {list(STREAMING_PRESETS.keys())}",
        )

    preset_values = {k: v for k, v in STREAMING_PRESETS[preset].items() if k != "description"}
    preset_values.update(overrides)

    return StreamingConfig(**preset_values)
