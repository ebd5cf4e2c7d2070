"""Routes for per-SKU forecasts."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...core.errors import InsufficientDataError, UnknownModelError
from ...models import schemas
from ...services.forecast_engine import ForecastEngine, get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()

MIN_FORECAST_HORIZON = 1
MAX_FORECAST_HORIZON = 120


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


@router.get("/forecasts/{sku}", response_model=schemas.ForecastResponse)
async def get_forecast(
    sku: str,
    horizon: int = Query(12, description="Number of future periods to forecast"),
    engine: ForecastEngine = Depends(get_engine),
) -> schemas.ForecastResponse:
    """Return the forecast of every enabled model for ``sku``."""

    LOGGER.info("Forecast request received for sku=%s horizon=%s", sku, horizon)
    if horizon < MIN_FORECAST_HORIZON or horizon > MAX_FORECAST_HORIZON:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload(
                "invalid_horizon",
                f"horizon must be between {MIN_FORECAST_HORIZON} and {MAX_FORECAST_HORIZON} periods.",
            ),
        )
    if sku not in engine.store.skus():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("sku_not_found", f"SKU '{sku}' has no observations."),
        )

    try:
        results = engine.generate(sku, horizon)
    except InsufficientDataError as exc:
        LOGGER.warning("Forecasting rejected for sku=%s: %s", sku, exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("insufficient_data", str(exc)),
        ) from exc
    except UnknownModelError as exc:
        LOGGER.error("Model line-up references an unknown model: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_error_payload("unknown_model", str(exc)),
        ) from exc

    return schemas.ForecastResponse(
        sku=sku,
        horizon=horizon,
        cache_version=engine.cache_version,
        results=results,
    )
