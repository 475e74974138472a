"""Segments, records, indexes, recovery and shutdown markers for an append-only on-disk log."""

__version__ = "0.1.0"
__all__ = ["__version__"]