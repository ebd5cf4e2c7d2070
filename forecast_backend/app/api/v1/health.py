r"""forecast_backend\app\api\v1\health.py

Health check endpoints.

These endpoints can be used by orchestrators and load balancers to verify
that the service is running.  The payload also carries the cache version and
queue size so dashboards can poll a single endpoint.
"""

from fastapi import APIRouter, Depends

from ...services.forecast_engine import ForecastEngine, get_engine

router = APIRouter()


@router.get("/health")
async def health_check(engine: ForecastEngine = Depends(get_engine)) -> dict[str, object]:
    """Return a basic health indicator."""
    return {
        "status": "ok",
        "cache_version": engine.cache_version,
        "queue_size": engine.queue_size(),
    }
