"""Loop detection and adaptive token budgeting for the extraction loop."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_LOOP_MIN_CHARS = 50


@dataclass(frozen=True)
class LoopGuard:
    """Detect continuations that repeat text already present in the buffer."""

    min_chars: int = DEFAULT_LOOP_MIN_CHARS

    def __post_init__(self) -> None:
        if self.min_chars < 1:
            raise ValueError("min_chars must be positive")

    def detects_loop(self, candidate: str, buffer: str) -> bool:
        """Return whether the candidate's leading text already occurs in the buffer.

        Candidates shorter than ``min_chars`` never trigger, so short phrases
        that recur naturally are not mistaken for a loop.
        """

        if len(candidate) < self.min_chars:
            return False
        return candidate[: self.min_chars] in buffer


@dataclass(frozen=True)
class AdaptiveController:
    """Halve the per-request token budget after a failed vote."""

    enabled: bool
    min_tokens: int

    def __post_init__(self) -> None:
        if self.min_tokens < 1:
            raise ValueError("min_tokens must be positive")

    def next_budget(self, current_tokens: int) -> Optional[int]:
        """Return the reduced budget, or ``None`` when no further retry is allowed."""

        if not self.enabled or current_tokens <= self.min_tokens:
            return None
        reduced = max(self.min_tokens, current_tokens // 2)
        LOGGER.debug("Reducing token budget from %s to %s", current_tokens, reduced)
        return reduced


__all__ = ["AdaptiveController", "DEFAULT_LOOP_MIN_CHARS", "LoopGuard"]
