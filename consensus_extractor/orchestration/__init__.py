"""Orchestration of the consensus extraction loop."""

from consensus_extractor.orchestration.orchestrator import (
    ExtractionOrchestrator,
    RunResult,
    SampleReport,
    SampleSource,
)

__all__ = [
    "ExtractionOrchestrator",
    "RunResult",
    "SampleReport",
    "SampleSource",
]
