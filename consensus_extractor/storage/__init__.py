"""Persistence helpers for extraction artifacts."""

from consensus_extractor.storage.artifacts import ArtifactStore, PersistenceError

__all__ = ["ArtifactStore", "PersistenceError"]
