"""Consensus-based prefill extraction against the Anthropic Messages API."""

__version__ = "0.1.0"
