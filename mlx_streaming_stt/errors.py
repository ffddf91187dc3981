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
Error types for streaming transcription.

Configuration problems fail fast at construction. Failures of the opaque
encoder/decoder are wrapped in ModelInvocationError; inside detached decode
tasks they are logged and surfaced as ERROR events instead of raised.
Cancellation is never an error.
"""


class StreamingError(Exception):
    """Base class for streaming transcription errors."""


class ConfigurationError(StreamingError, ValueError):
    """Invalid configuration detected at construction time."""


class ModelInvocationError(StreamingError):
    """The window encoder or decoder model raised during a call."""


class ErrorCode:
    """Error codes carried by ERROR events."""
    INFERENCE_FAILED = "inference_failed"
    FINALIZE_FAILED = "finalize_failed"
    STOP_FAILED = "stop_failed"
