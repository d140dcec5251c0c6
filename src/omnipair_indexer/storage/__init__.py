"""Persistence layer.

Provides SQLite database management, the typed store with atomic
per-transaction writes, and the slot coverage interval set used for
gap detection.
"""

from omnipair_indexer.storage.coverage import SlotRangeSet
from omnipair_indexer.storage.database import IndexerDatabase
from omnipair_indexer.storage.store import IndexerStore

__all__ = ["IndexerDatabase", "IndexerStore", "SlotRangeSet"]
