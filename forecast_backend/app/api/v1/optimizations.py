r"""forecast_backend\app\api\v1\optimizations.py

Routes for cached parameter proposals.

Manual parameters and explicit selections are written here; grid and
advisory proposals only ever arrive through the optimization queue.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.errors import InvalidParametersError, UnknownModelError
from ...models import schemas
from ...services.forecast_engine import ForecastEngine, get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


def _unknown_model(exc: UnknownModelError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=_error_payload("model_not_found", str(exc)),
    )


@router.get("/optimizations/version")
async def cache_version(engine: ForecastEngine = Depends(get_engine)) -> dict[str, int]:
    return {"cache_version": engine.cache_version}


@router.get("/optimizations/pending", response_model=list[schemas.PendingOptimization])
async def pending_optimizations(
    engine: ForecastEngine = Depends(get_engine),
) -> list[schemas.PendingOptimization]:
    """List (SKU, model) pairs whose selected parameters are missing or stale."""

    return engine.needs_optimization()


@router.get("/optimizations/{sku}/{model_id}", response_model=schemas.CacheEntry)
async def get_entry(sku: str, model_id: str, engine: ForecastEngine = Depends(get_engine)) -> Any:
    try:
        entry = engine.snapshot(sku, model_id)
    except UnknownModelError as exc:
        raise _unknown_model(exc) from exc
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("entry_not_found", f"No cached parameters for {sku}/{model_id}."),
        )
    return entry


@router.put("/optimizations/{sku}/{model_id}/manual", response_model=schemas.CacheEntry)
async def set_manual_parameters(
    sku: str,
    model_id: str,
    payload: schemas.ManualParametersUpdate,
    engine: ForecastEngine = Depends(get_engine),
) -> Any:
    """Store manual parameters; they become the explicit selection."""

    try:
        entry = engine.set_manual_parameters(sku, model_id, payload.parameters)
    except UnknownModelError as exc:
        raise _unknown_model(exc) from exc
    except InvalidParametersError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_parameters", str(exc)),
        ) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("sku_not_found", f"SKU '{sku}' has no observations."),
        ) from exc

    LOGGER.info("Manual parameters stored for %s/%s", sku, model_id)
    return entry


@router.put("/optimizations/{sku}/{model_id}/selected", response_model=schemas.CacheEntry)
async def select_method(
    sku: str,
    model_id: str,
    payload: schemas.SelectionUpdate,
    engine: ForecastEngine = Depends(get_engine),
) -> Any:
    try:
        return engine.select(sku, model_id, payload.method)
    except UnknownModelError as exc:
        raise _unknown_model(exc) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload(
                "proposal_not_found", f"No {payload.method} proposal cached for {sku}/{model_id}."
            ),
        ) from exc
