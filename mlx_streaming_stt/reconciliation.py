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
Confirmed/provisional token reconciliation and text stitching.

Each decode pass re-runs the decoder from scratch on a longer audio
window, so it regenerates a prefix similar to (but not always identical
to) the previous pass. Showing raw output flickers. Reconciliation tracks,
per provisional position, when it was first seen and for how many
consecutive passes it agreed with the previous pass, and promotes a
prefix to confirmed once every position in it is both old enough and
agreed often enough.

Example with delay=0, required passes=2:
    pass 1: [the, cat]        -> nothing promoted (agreement 1)
    pass 2: [the, cat, sat]   -> promotes [the, cat]; [sat] stays provisional
    pass 3: [sat, on]         -> promotes [sat]

Promotion is a prefix operation: position i never promotes while an
earlier position is still provisional.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Lookback when removing duplicated words at window transitions
MAX_OVERLAP_WORDS = 16


@dataclass(frozen=True)
class ProvisionalToken:
    """A decoded token not yet promoted to confirmed."""
    token_id: int
    first_seen: float        # Clock time the position was first observed
    agreement_count: int = 1  # Consecutive passes this position agreed


@dataclass
class ReconcileResult:
    """Outcome of reconciling one decode pass."""
    promoted_ids: list[int] = field(default_factory=list)
    remaining: list[ProvisionalToken] = field(default_factory=list)
    match_length: int = 0

    @property
    def remaining_ids(self) -> list[int]:
        return [t.token_id for t in self.remaining]


def common_prefix_length(a: list[int], b: list[int]) -> int:
    """Length of the longest common prefix of two token sequences."""
    length = 0
    for x, y in zip(a, b, strict=False):
        if x != y:
            break
        length += 1
    return length


def reconcile_tokens(
    previous: list[ProvisionalToken],
    new_token_ids: list[int],
    now: float,
    delay_seconds: float,
    required_agreement_passes: int,
) -> ReconcileResult:
    """
    Reconcile a new provisional suffix against the previous pass.

    Args:
        previous: Provisional tokens left by the previous pass
        new_token_ids: Tokens generated beyond the confirmed prefix
        now: Current clock time (same clock as first_seen)
        delay_seconds: Minimum age before a position may promote
        required_agreement_passes: Minimum consecutive agreements

    Returns:
        ReconcileResult with the promoted prefix and the remaining suffix
    """
    match_length = common_prefix_length(
        [t.token_id for t in previous], new_token_ids,
    )

    tracked: list[ProvisionalToken] = []
    for i, token_id in enumerate(new_token_ids):
        if i < match_length:
            prev = previous[i]
            tracked.append(ProvisionalToken(
                token_id=token_id,
                first_seen=prev.first_seen,
                agreement_count=max(1, prev.agreement_count + 1),
            ))
        else:
            tracked.append(ProvisionalToken(token_id=token_id, first_seen=now))

    required = max(1, required_agreement_passes)
    promote_count = 0
    for token in tracked:
        if now - token.first_seen >= delay_seconds and token.agreement_count >= required:
            promote_count += 1
        else:
            break

    return ReconcileResult(
        promoted_ids=[t.token_id for t in tracked[:promote_count]],
        remaining=tracked[promote_count:],
        match_length=match_length,
    )


# =============================================================================
# Text stitching
# =============================================================================

def dedupe_leading_word_overlap(
    base: str,
    segment: str,
    max_words: int = MAX_OVERLAP_WORDS,
) -> str:
    """
    Drop words at the head of segment that repeat the tail of base.

    Finds the longest run (up to max_words) of whole words, compared
    case-insensitively, that ends base and starts segment.

    Returns:
        segment without the overlapping words (whitespace normalised to
        single spaces when anything was dropped)
    """
    base_words = base.split()
    segment_words = segment.split()
    if not base_words or not segment_words:
        return segment

    max_overlap = min(max_words, len(base_words), len(segment_words))
    for size in range(max_overlap, 0, -1):
        tail = base_words[-size:]
        head = segment_words[:size]
        if all(a.casefold() == b.casefold() for a, b in zip(tail, head, strict=True)):
            return " ".join(segment_words[size:])

    return segment


def concat_text(base: str, segment: str, max_words: int = MAX_OVERLAP_WORDS) -> str:
    """
    Append a segment to base text, removing duplicated boundary words.

    A single space separates the parts unless either side already has
    whitespace at the join.
    """
    normalized = segment.strip()
    if not normalized:
        return base
    if not base:
        return normalized

    deduped = dedupe_leading_word_overlap(base, normalized, max_words)
    if not deduped:
        return base
    if base[-1].isspace() or deduped[0].isspace():
        return base + deduped
    return base + " " + deduped
