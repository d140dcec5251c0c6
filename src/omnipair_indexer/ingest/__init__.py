"""Ingestion pipeline -- slot fetching, reconciliation and sharded application."""

from omnipair_indexer.ingest.fetcher import SlotFetcher
from omnipair_indexer.ingest.pipeline import PipelineReport, SlotPipeline
from omnipair_indexer.ingest.reconciler import EventReconciler
from omnipair_indexer.ingest.sharding import ShardedApplier

__all__ = [
    "EventReconciler",
    "PipelineReport",
    "ShardedApplier",
    "SlotFetcher",
    "SlotPipeline",
]
