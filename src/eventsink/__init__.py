"""
EventSink - Log and error event ingestion service

A FastAPI-based service that accepts batches of structured log and error
events, rate-limits clients with per-key token buckets, redacts email
addresses and persists batches transactionally into a relational store.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
