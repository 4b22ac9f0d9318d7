"""Tests for threshold arithmetic and majority consensus."""
from __future__ import annotations

import pytest

from consensus_extractor.consensus import (
    compute_threshold,
    find_consensus,
    normalize_whitespace,
    summarize_responses,
)


@pytest.mark.parametrize(
    ("num_requests", "consensus_pct", "expected"),
    [
        (5, 50, 2),
        (10, 80, 8),
        (1, 50, 1),
        (3, 10, 1),
        (5, 100, 5),
    ],
)
def test_threshold_arithmetic(num_requests: int, consensus_pct: float, expected: int) -> None:
    assert compute_threshold(num_requests, consensus_pct) == expected


def test_threshold_rejects_invalid_inputs() -> None:
    with pytest.raises(ValueError):
        compute_threshold(0, 50)
    with pytest.raises(ValueError):
        compute_threshold(5, 0)


def test_whitespace_variants_reach_consensus() -> None:
    batch = ["Hello world.", "Hello  world.", "Hello world!", None, "Something else."]

    result = find_consensus(batch, threshold=2)

    assert result.reached
    assert result.consensus == "Hello world."
    assert result.count == 2
    assert result.valid_count == 4


def test_distinct_responses_fail_consensus() -> None:
    batch = ["one", "two", "three", "four", "five"]

    result = find_consensus(batch, threshold=3)

    assert not result.reached
    assert result.consensus is None
    assert result.count == 1


def test_all_absent_responses_report_zero() -> None:
    result = find_consensus([None, None], threshold=1)

    assert result.consensus is None
    assert result.count == 0
    assert result.valid_count == 0


def test_representative_is_most_frequent_original() -> None:
    batch = ["alpha  beta", "alpha beta", "alpha beta", "gamma"]

    result = find_consensus(batch, threshold=2)

    assert result.count == 3
    assert result.consensus == "alpha beta"


def test_representative_tie_prefers_first_seen_original() -> None:
    batch = ["x  y", "x y", "other"]

    result = find_consensus(batch, threshold=2)

    assert result.consensus == "x  y"


def test_tied_canonical_forms_prefer_first_seen() -> None:
    batch = ["first", "second", "second ", "first"]

    result = find_consensus(batch, threshold=2)

    assert result.consensus == "first"
    assert result.count == 2


def test_consensus_is_order_insensitive_in_outcome() -> None:
    batch = ["same text", "noise", "same  text", "other noise", "same text"]

    forward = find_consensus(batch, threshold=2)
    backward = find_consensus(list(reversed(batch)), threshold=2)

    assert forward.count == backward.count == 3
    assert normalize_whitespace(forward.consensus) == normalize_whitespace(backward.consensus)


def test_summarize_groups_by_frequency() -> None:
    responses = ["b", "a", "b", None, "a  ", "b"]

    raw = summarize_responses(responses, limit=2)
    normalized = summarize_responses(responses, key=normalize_whitespace)

    assert [(group.text, group.count) for group in raw] == [("b", 3), ("a", 1)]
    assert [(group.text, group.count) for group in normalized] == [("b", 3), ("a", 2)]


def test_group_preview_escapes_newlines() -> None:
    groups = summarize_responses(["line one\nline two"])

    assert groups[0].preview(12) == "line one\\nlin"
