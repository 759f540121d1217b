"""Incremental Notion-to-local synchronization engine."""

__version__ = "1.0.0"
