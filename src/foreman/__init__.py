"""Foreman — subprocess supervision and persistent background task scheduling."""

__version__ = "0.1.0"
