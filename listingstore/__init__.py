"""Sharded, deduplicated storage for scraped real-estate listings."""

__version__ = "0.1.0"
