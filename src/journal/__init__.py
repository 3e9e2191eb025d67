"""Append-only trade journal (JSON lines)."""

from journal.writer import JournalWriter

__all__ = ["JournalWriter"]
