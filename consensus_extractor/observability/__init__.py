"""Run transcripts and manifests for extraction runs."""

from consensus_extractor.observability.transcript import (
    DEFAULT_CAPTURED_LOGGERS,
    RunManifest,
    RunTranscript,
)

__all__ = ["DEFAULT_CAPTURED_LOGGERS", "RunManifest", "RunTranscript"]
