"""Record ingestion: the per-record ingestor, the session lifecycle, and record sources."""

from listingstore.ingest.ingestor import IngestStats, RecordIngestor
from listingstore.ingest.session import IngestionSession, SessionStats
from listingstore.ingest.source import JsonLinesSource, RecordSource

__all__ = [
    "RecordIngestor",
    "IngestStats",
    "IngestionSession",
    "SessionStats",
    "RecordSource",
    "JsonLinesSource",
]
