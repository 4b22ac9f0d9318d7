"""Immutable data contracts shared by the extraction loop."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class Sample(_FrozenBaseModel):
    """Outcome of a single completion request.

    ``content`` is ``None`` when the request produced no usable text (retries
    exhausted, non-text response). ``response_id`` is only used to label
    diagnostic artifacts.
    """

    content: Optional[str] = Field(None, description="Completion text, or None when absent.")
    response_id: Optional[str] = Field(None, description="Opaque service response identifier.")

    @property
    def is_valid(self) -> bool:
        """Return whether the sample carries a completion and counts as a vote."""

        return self.content is not None

    @classmethod
    def absent(cls) -> "Sample":
        """Return the marker used when a request yields no completion."""

        return cls(content=None, response_id=None)


class ResponseGroup(_FrozenBaseModel):
    """Responses sharing the same text, ranked by frequency."""

    text: str
    count: int = Field(..., ge=1)

    def preview(self, width: int) -> str:
        """Return a single-line preview of the grouped text."""

        return self.text[:width].replace("\n", "\\n")


class TerminationOutcome(str, Enum):
    """Terminal reasons a run can end with."""

    LOOP_DETECTED = "loop_detected"
    NO_CONSENSUS = "no_consensus"
    INSUFFICIENT_SAMPLES = "insufficient_samples"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    INTERRUPTED = "interrupted"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        """Return whether the outcome reflects an unexpected failure."""

        return self is TerminationOutcome.ERROR


__all__ = ["ResponseGroup", "Sample", "TerminationOutcome"]
