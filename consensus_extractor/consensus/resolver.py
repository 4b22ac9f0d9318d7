"""Majority voting over whitespace-normalized completions."""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from consensus_extractor.consensus.normalization import normalize_whitespace
from consensus_extractor.contracts import ResponseGroup


@dataclass(frozen=True)
class ConsensusResult:
    """Outcome of a consensus vote over one batch of responses."""

    consensus: Optional[str]
    count: int
    valid_count: int

    @property
    def reached(self) -> bool:
        """Return whether a representative was selected."""

        return self.consensus is not None


def compute_threshold(num_requests: int, consensus_pct: float) -> int:
    """Return the number of agreeing responses required for consensus.

    Args:
        num_requests: Responses requested per attempt.
        consensus_pct: Required agreement as a percentage of ``num_requests``.

    Returns:
        int: ``max(1, floor(num_requests * consensus_pct / 100))``.
    """

    if num_requests < 1:
        raise ValueError("num_requests must be positive")
    if consensus_pct <= 0:
        raise ValueError("consensus_pct must be positive")
    return max(1, math.floor(num_requests * consensus_pct / 100))


def find_consensus(responses: Sequence[Optional[str]], threshold: int) -> ConsensusResult:
    """Vote on the normalized responses and pick a representative original.

    Absent responses are ignored. Canonical forms tied on count are ranked by
    first appearance, as are equally frequent originals inside the winning
    group.

    Args:
        responses: Raw completions in request order; ``None`` marks a missing one.
        threshold: Minimum number of agreeing responses.

    Returns:
        ConsensusResult: The representative and its vote count, or ``None`` with
            the highest count observed when no form meets the threshold.
    """

    valid = [response for response in responses if response is not None]
    if not valid:
        return ConsensusResult(consensus=None, count=0, valid_count=0)

    normalized = [normalize_whitespace(response) for response in valid]
    tallies = Counter(normalized)
    winner, count = tallies.most_common(1)[0]
    if count < threshold:
        return ConsensusResult(consensus=None, count=count, valid_count=len(valid))

    originals = Counter(
        original for original, canonical in zip(valid, normalized) if canonical == winner
    )
    representative = originals.most_common(1)[0][0]
    return ConsensusResult(consensus=representative, count=count, valid_count=len(valid))


def summarize_responses(
    responses: Sequence[Optional[str]],
    *,
    limit: Optional[int] = None,
    key: Optional[Callable[[str], str]] = None,
) -> List[ResponseGroup]:
    """Group responses by text and return them ordered by frequency.

    Args:
        responses: Raw completions; ``None`` entries are skipped.
        limit: Optional maximum number of groups to return.
        key: Optional transform applied before grouping, e.g. normalization.
    """

    texts = [key(response) if key else response for response in responses if response is not None]
    ranked = Counter(texts).most_common(limit)
    return [ResponseGroup(text=text, count=count) for text, count in ranked]


__all__ = ["ConsensusResult", "compute_threshold", "find_consensus", "summarize_responses"]
