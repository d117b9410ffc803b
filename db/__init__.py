"""Database helpers for the source registry."""

from db.sources import SourceRecord, SourceRegistry

__all__ = ["SourceRecord", "SourceRegistry"]
