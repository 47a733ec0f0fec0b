"""Habyss Sync - local-first habit storage with background cloud sync."""

__version__ = "1.0.0"
