"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /ingest - Event batch ingestion endpoint
- /metrics - Prometheus metrics
- /health, /healthz - Liveness probe
"""
from .healthz import router as healthz_router
from .ingest import router as ingest_router
from .metrics import router as metrics_router

__all__ = ["healthz_router", "ingest_router", "metrics_router"]
