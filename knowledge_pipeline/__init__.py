"""Incremental knowledge extraction from AI coding sessions into a markdown vault."""

__version__ = "0.1.0"
