"""Consensus voting utilities for the extraction loop."""

from consensus_extractor.consensus.guards import AdaptiveController, LoopGuard
from consensus_extractor.consensus.normalization import normalize_whitespace, trim_to_word_boundary
from consensus_extractor.consensus.resolver import (
    ConsensusResult,
    compute_threshold,
    find_consensus,
    summarize_responses,
)

__all__ = [
    "AdaptiveController",
    "ConsensusResult",
    "LoopGuard",
    "compute_threshold",
    "find_consensus",
    "normalize_whitespace",
    "summarize_responses",
    "trim_to_word_boundary",
]
