"""
Health check endpoints.

- /health, /healthz: Liveness probe (always 200 if service alive, no dependency checks)
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from .. import __version__

router = APIRouter()


@router.get(
    "/health",
    status_code=200,
    summary="Liveness probe",
    description="""
    Returns 200 while the process is serving requests. Storage and queue
    state are not consulted.
    """,
)
@router.get("/healthz", status_code=200, include_in_schema=False)
async def liveness_check() -> Dict[str, Any]:
    """Report that the process is up."""
    return {
        "status": "alive",
        "message": "Service is healthy!",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "eventsink",
        "version": __version__,
    }
