"""Whitespace canonicalization and word-boundary trimming for completions."""
from __future__ import annotations

import re

_SPACE_RUN_PATTERN = re.compile(r" +")
_NEWLINE_RUN_PATTERN = re.compile(r"\n+")
_BOUNDARY_CHARACTERS = (" ", "\n", "\t")


def normalize_whitespace(text: str) -> str:
    """Return the canonical form used to compare completions.

    Runs of spaces collapse to one, trailing whitespace is removed from every
    line and runs of line breaks collapse to a single break. Line endings are
    stripped before breaks are collapsed so whitespace-only lines disappear in
    one pass, which keeps the function idempotent.

    Args:
        text: Raw completion text.

    Returns:
        str: Canonical text.
    """

    collapsed = _SPACE_RUN_PATTERN.sub(" ", text)
    stripped = "\n".join(line.rstrip() for line in collapsed.split("\n"))
    return _NEWLINE_RUN_PATTERN.sub("\n", stripped)


def trim_to_word_boundary(text: str) -> str:
    """Drop a trailing partial word, keeping the last separator.

    Text without a space, newline or tab after its first character is returned
    unchanged.
    """

    if not text:
        return text
    boundary = max(text.rfind(character) for character in _BOUNDARY_CHARACTERS)
    if boundary > 0:
        return text[: boundary + 1]
    return text


__all__ = ["normalize_whitespace", "trim_to_word_boundary"]
