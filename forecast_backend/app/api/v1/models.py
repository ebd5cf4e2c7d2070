r"""forecast_backend\app\api\v1\models.py

Routes describing the registered forecasting models."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.errors import UnknownModelError
from ...services.forecast_engine import ForecastEngine, get_engine

router = APIRouter()


def _error_payload(code: str, message: str) -> dict[str, str]:
    return {"error": code, "message": message}


@router.get("/models")
async def list_models(engine: ForecastEngine = Depends(get_engine)) -> list[dict[str, Any]]:
    """Return the parameter schema of every registered model."""

    enabled = {config.model_id: config.enabled for config in engine.model_configs}
    payload = []
    for descriptor in engine.registry.descriptors():
        item = descriptor.as_dict(engine.seasonal_period)
        item["enabled"] = enabled.get(descriptor.model_id, False)
        payload.append(item)
    return payload


@router.get("/models/{model_id}")
async def describe_model(model_id: str, engine: ForecastEngine = Depends(get_engine)) -> dict[str, Any]:
    try:
        descriptor = engine.registry.describe(model_id)
    except UnknownModelError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_payload("model_not_found", str(exc)),
        ) from exc
    item = descriptor.as_dict(engine.seasonal_period)
    item["optimization_grid_size"] = len(descriptor.optimization_grid(engine.seasonal_period))
    return item
