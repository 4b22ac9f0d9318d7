"""Completion sampling against the generation service."""

from consensus_extractor.sampling.requester import API_KEY_ENV_VAR, SampleRequester

__all__ = ["API_KEY_ENV_VAR", "SampleRequester"]
