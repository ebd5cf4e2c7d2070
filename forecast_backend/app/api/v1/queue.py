r"""forecast_backend\app\api\v1\queue.py

Routes for the optimization queue."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ...models import schemas
from ...services.forecast_engine import ForecastEngine, get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _error_payload(code: str, message: str) -> dict[str, str]:
    return {"error": code, "message": message}


@router.get("/queue", response_model=list[schemas.OptimizationQueueItem])
async def list_queue(engine: ForecastEngine = Depends(get_engine)) -> list[schemas.OptimizationQueueItem]:
    return engine.queue.peek()


@router.post("/queue", status_code=status.HTTP_202_ACCEPTED)
async def enqueue(
    payload: schemas.EnqueueRequest, engine: ForecastEngine = Depends(get_engine)
) -> dict[str, int]:
    """Queue SKUs for optimization; repeated requests coalesce."""

    known = set(engine.store.skus())
    unknown = [sku for sku in payload.skus if sku not in known]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("sku_not_found", f"Unknown SKUs: {', '.join(unknown)}"),
        )
    return {"queue_size": engine.enqueue(payload.skus, payload.reason)}


@router.post("/queue/rebuild")
async def rebuild_queue(engine: ForecastEngine = Depends(get_engine)) -> dict[str, int]:
    """Enqueue every SKU whose cached parameters are missing or stale."""

    return {"queue_size": engine.rebuild_queue()}


@router.post("/queue/run", response_model=schemas.OptimizationRunSummary)
async def run_queue(engine: ForecastEngine = Depends(get_engine)) -> schemas.OptimizationRunSummary:
    """Drain the queue once and report what was written."""

    summary = await engine.optimize()
    LOGGER.info(
        "Optimization run finished: %s SKUs, proposals=%s, failures=%s",
        len(summary.processed_skus),
        summary.proposals_written,
        len(summary.failures),
    )
    return summary
