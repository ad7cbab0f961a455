"""Hierarchical worker coordination over a shared task queue."""

__version__ = "0.1.0"
