"""Standalone helpers that sit outside the extraction loop."""
