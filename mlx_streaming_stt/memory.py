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
MLX buffer cache management.

The MLX allocator cache is process-global and shared by every session.
Streaming trims it after each decode pass and finalize batch to bound peak
memory growth on long sessions.
"""

import mlx.core as mx


def clear_cache() -> None:
    """Release cached MLX buffers."""
    if hasattr(mx, "clear_cache"):
        mx.clear_cache()
    elif hasattr(mx, "metal") and hasattr(mx.metal, "clear_cache"):
        mx.metal.clear_cache()


def get_peak_memory_bytes() -> int:
    """Peak MLX memory since process start (0 if unavailable)."""
    if hasattr(mx, "get_peak_memory"):
        return int(mx.get_peak_memory())
    if hasattr(mx, "metal") and hasattr(mx.metal, "get_peak_memory"):
        return int(mx.metal.get_peak_memory())
    return 0


def get_peak_memory_gb() -> float:
    return get_peak_memory_bytes() / 1e9
