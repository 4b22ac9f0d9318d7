"""Tests for loop detection and adaptive token reduction."""
from __future__ import annotations

from typing import List

import pytest

from consensus_extractor.consensus import AdaptiveController, LoopGuard

_REPEATED = "and values that matter deeply. We also want Claude to be honest."


def test_loop_detected_when_leading_text_already_captured() -> None:
    buffer = f"Claude should have good values, {_REPEATED} It cares about the world, and values that matter deeply."
    candidate = f"{_REPEATED} It cares about the world"

    assert LoopGuard().detects_loop(candidate, buffer)


def test_short_coincidental_overlap_does_not_trigger() -> None:
    buffer = "Anthropic wants Claude to be helpful and values that matter deeply."
    candidate = "and values that matter deeply. A brand new sentence follows here."

    assert candidate[:20] in buffer
    assert not LoopGuard().detects_loop(candidate, buffer)


def test_candidate_below_minimum_length_never_triggers() -> None:
    buffer = "short phrase repeated, short phrase repeated"

    assert not LoopGuard().detects_loop("short phrase repeated", buffer)


def test_minimum_length_is_tunable() -> None:
    buffer = "the quick brown fox jumps"

    assert LoopGuard(min_chars=9).detects_loop("the quick red fox", buffer)
    assert not LoopGuard(min_chars=12).detects_loop("the quick red fox", buffer)


def test_loop_guard_rejects_non_positive_length() -> None:
    with pytest.raises(ValueError):
        LoopGuard(min_chars=0)


def test_adaptive_reduction_sequence_stops_at_floor() -> None:
    controller = AdaptiveController(enabled=True, min_tokens=20)
    budgets: List[int] = [120]

    while (reduced := controller.next_budget(budgets[-1])) is not None:
        budgets.append(reduced)

    assert budgets == [120, 60, 30, 20]


def test_adaptive_disabled_never_reduces() -> None:
    controller = AdaptiveController(enabled=False, min_tokens=20)

    assert controller.next_budget(120) is None


def test_adaptive_budget_at_or_below_floor_stops() -> None:
    controller = AdaptiveController(enabled=True, min_tokens=20)

    assert controller.next_budget(20) is None
    assert controller.next_budget(10) is None
    assert controller.next_budget(21) == 20
