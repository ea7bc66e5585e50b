"""Incremental semantic code index and multi-level completion engine."""

__version__ = "0.1.0"
