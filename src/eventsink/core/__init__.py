"""
Core business logic components.

This package contains the main processing pipeline components:
- Token-bucket rate limiting per client key
- Event validation and email redaction
- Bounded ingestion queue with backpressure
- Background batch persister and relational event store
- Metrics collection
"""
