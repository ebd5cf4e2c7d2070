r"""forecast_backend\app\services\forecast_generator.py

Per-SKU forecast generation across the configured model line-up.

For every enabled model the generator resolves the effective parameters
(the cached selection when it is still valid for the SKU's data, else the
configured manual/default parameters), trains a fresh instance on the full
history and predicts ``horizon`` periods.  A failing model yields a degraded
result with ``accuracy=0`` instead of aborting its siblings.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Sequence

import numpy as np
import pandas as pd

from ..core.config import get_settings
from ..core.errors import ForecastEngineError, InsufficientDataError
from ..core.observability import FORECAST_LATENCY
from ..models.schemas import ForecastPoint, ForecastResult, ModelConfig
from .forecast_models import compute_metrics
from .model_registry import ModelRegistry, get_registry
from .observation_store import ObservationsLike, observations_frame
from .optimization_cache import OptimizationCache

LOGGER = logging.getLogger(__name__)


def future_dates(index: pd.DatetimeIndex, periods: int) -> List[date]:
    """Continue ``index`` by ``periods`` steps of its inferred frequency.

    Falls back to the median spacing (or one day) when pandas cannot infer a
    regular frequency.
    """

    if len(index) == 0:
        raise ValueError("cannot extend an empty date index")

    freq = None
    if len(index) >= 3:
        try:
            freq = pd.infer_freq(index)
        except (TypeError, ValueError):
            freq = None

    if freq:
        dates = pd.date_range(index[-1], periods=periods + 1, freq=freq)[1:]
    else:
        step = pd.Series(index).diff().median() if len(index) > 1 else pd.NaT
        if pd.isna(step) or step <= pd.Timedelta(0):
            step = pd.Timedelta(days=1)
        dates = pd.DatetimeIndex([index[-1] + step * (i + 1) for i in range(periods)])
    return [d.date() for d in dates]


class ForecastGenerator:
    """Train and score every enabled model for one SKU."""

    MIN_OBSERVATIONS: int = 3
    SCORE_TAIL: int = 10

    def __init__(
        self,
        cache: OptimizationCache | None = None,
        registry: ModelRegistry | None = None,
        seasonal_period: int | None = None,
    ) -> None:
        self.cache = cache
        self.registry = registry or (cache.registry if cache is not None else get_registry())
        self.seasonal_period = seasonal_period or get_settings().default_seasonal_period

    # ------------------------------------------------------------------
    def resolve_parameters(
        self, sku: str, config: ModelConfig, data_hash: str | None
    ) -> tuple[dict[str, Any], str]:
        """Return ``(parameters, source)`` for one model of ``sku``."""

        if self.cache is not None and data_hash is not None:
            if self.cache.is_valid(sku, config.model_id, data_hash):
                proposal = self.cache.snapshot(sku, config.model_id).selected_proposal()
                return self.registry.resolve_parameters(config.model_id, proposal.parameters), proposal.method
        source = "manual" if config.parameters else "default"
        return self.registry.resolve_parameters(config.model_id, config.parameters), source

    # ------------------------------------------------------------------
    def _score(self, values: np.ndarray, predictions: Sequence[float]) -> Any:
        tail = values[-min(self.SCORE_TAIL, len(values)) :]
        scored = [
            predictions[i] if i < len(predictions) else predictions[0] for i in range(len(tail))
        ]
        return compute_metrics(tail, scored)

    # ------------------------------------------------------------------
    def generate(
        self,
        sku: str,
        observations: ObservationsLike,
        model_configs: Sequence[ModelConfig] | None = None,
        horizon: int = 12,
    ) -> list[ForecastResult]:
        horizon = int(horizon)
        if horizon <= 0:
            raise ValueError("horizon must be a positive integer")

        frame = observations_frame(observations)
        subset = frame.loc[frame["sku"] == sku]
        if len(subset) < self.MIN_OBSERVATIONS:
            raise InsufficientDataError(
                self.MIN_OBSERVATIONS,
                len(subset),
                f"Not enough data points for {sku}. Need at least {self.MIN_OBSERVATIONS} data points.",
            )

        values = subset["value"].to_numpy(dtype=float)
        dates = future_dates(pd.DatetimeIndex(subset["date"]), horizon)
        data_hash = self.cache.fingerprints.sku_data_hash(values) if self.cache is not None else None
        configs = list(model_configs or self.registry.default_model_configs())

        LOGGER.info("Forecasting SKU %s with %s models horizon=%s", sku, len(configs), horizon)

        results: list[ForecastResult] = []
        with FORECAST_LATENCY.time():
            for config in configs:
                if not config.enabled:
                    continue
                descriptor = self.registry.describe(config.model_id)
                parameters: dict[str, Any] = dict(config.parameters)
                source = "manual" if config.parameters else "default"
                try:
                    parameters, source = self.resolve_parameters(sku, config, data_hash)
                    model = self.registry.instantiate(config.model_id, parameters, self.seasonal_period)
                    model.train(values)
                    predictions = model.predict(horizon)
                    metrics = self._score(values, predictions)
                except (ForecastEngineError, ValueError) as exc:
                    LOGGER.warning("Model %s failed for SKU %s: %s", config.model_id, sku, exc)
                    results.append(
                        ForecastResult(
                            sku=sku,
                            model_id=config.model_id,
                            model_name=descriptor.display_name,
                            accuracy=0.0,
                            predictions=[],
                            parameters=parameters,
                            parameter_source=source,
                            error=str(exc),
                        )
                    )
                    continue

                results.append(
                    ForecastResult(
                        sku=sku,
                        model_id=config.model_id,
                        model_name=descriptor.display_name,
                        predictions=predictions,
                        forecast=[
                            ForecastPoint(date=day, value=value) for day, value in zip(dates, predictions)
                        ],
                        accuracy=metrics.accuracy,
                        mape=metrics.mape,
                        rmse=metrics.rmse,
                        mae=metrics.mae,
                        parameters=parameters,
                        parameter_source=source,
                    )
                )
        return results
