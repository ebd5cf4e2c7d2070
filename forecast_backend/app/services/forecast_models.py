r"""forecast_backend\app\services\forecast_models.py

Recurrence-based forecasting models.

Every model shares the same small capability surface: ``train`` on an
ordered numeric series, ``predict`` a number of future periods and
``validate`` against a holdout.  Concrete classes only implement the
recurrence itself (``_fit``/``_forecast``); parameter defaults, ranges and
minimum-observation rules live in :mod:`model_registry`.

Multi-step recursive forecasts (moving averages) always extrapolate against
a local working buffer so the training history is never mutated.
"""

from __future__ import annotations

from enum import Enum
from math import sqrt
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from ..core.errors import InsufficientDataError, InvalidSeriesError, NotTrainedError
from ..models.schemas import ValidationMetrics


class ModelKind(str, Enum):
    """Closed set of supported model variants."""

    SES = "simple-exponential-smoothing"
    HOLT_LINEAR = "holt-linear-trend"
    MOVING_AVERAGE = "moving-average"
    HOLT_WINTERS = "holt-winters"
    SEASONAL_NAIVE = "seasonal-naive"
    SEASONAL_MOVING_AVERAGE = "seasonal-moving-average"
    LINEAR_TREND = "linear-trend"
    ARIMA = "arima"
    SARIMA = "sarima"


# ---------------------------------------------------------------------------
# Shared metrics


def compute_metrics(actual: Iterable[float], predicted: Iterable[float]) -> ValidationMetrics:
    """Return MAPE, RMSE, MAE and accuracy for aligned actual/predicted values.

    MAPE is computed over the terms whose actual value is nonzero and is 0
    when every actual value is zero.  ``accuracy`` is ``max(0, 100 - MAPE)``.
    The longer input is truncated to the length of the shorter one.
    """

    actual_arr = np.asarray(list(actual), dtype=float)
    pred_arr = np.asarray(list(predicted), dtype=float)
    size = min(len(actual_arr), len(pred_arr))
    if size == 0:
        raise ValueError("metrics require at least one actual/predicted pair")
    actual_arr = actual_arr[:size]
    pred_arr = pred_arr[:size]

    errors = actual_arr - pred_arr
    mask = actual_arr != 0
    if mask.any():
        mape = float(np.mean(np.abs(errors[mask]) / np.abs(actual_arr[mask])) * 100.0)
    else:
        mape = 0.0
    rmse = float(sqrt(np.mean(errors**2)))
    mae = float(np.mean(np.abs(errors)))

    return ValidationMetrics(
        mape=mape,
        rmse=rmse,
        mae=mae,
        accuracy=max(0.0, 100.0 - mape),
        predictions=[float(v) for v in pred_arr],
        actual=[float(v) for v in actual_arr],
    )


def as_numeric_series(series: Iterable[float]) -> np.ndarray:
    """Return ``series`` as a 1-D float array, rejecting non-finite values."""

    try:
        values = np.asarray(list(series), dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidSeriesError(f"series contains non-numeric values: {exc}") from exc
    if values.ndim != 1:
        raise InvalidSeriesError("series must be one-dimensional")
    if not np.isfinite(values).all():
        raise InvalidSeriesError("series contains NaN or infinite values")
    return values


# ---------------------------------------------------------------------------
# Capability interface


class ForecastModel:
    """Common train/predict/validate behaviour for every model variant."""

    kind: ModelKind
    requires_seasonal_period: bool = False

    def __init__(
        self,
        parameters: Mapping[str, Any],
        seasonal_period: int | None = None,
        min_observations: int = 2,
    ) -> None:
        if self.requires_seasonal_period:
            if seasonal_period is None or int(seasonal_period) < 2:
                raise ValueError(
                    f"{self.kind.value} requires a seasonal period of at least 2"
                )
            seasonal_period = int(seasonal_period)
        self.parameters: dict[str, Any] = dict(parameters)
        self.seasonal_period = seasonal_period
        self.min_observations = int(min_observations)
        self._trained = False
        self._n_obs = 0

    @property
    def model_id(self) -> str:
        return self.kind.value

    @property
    def is_trained(self) -> bool:
        return self._trained

    # ------------------------------------------------------------------
    def train(self, series: Iterable[float]) -> "ForecastModel":
        values = as_numeric_series(series)
        if len(values) < self.min_observations:
            raise InsufficientDataError(self.min_observations, len(values))
        self._fit(values)
        self._n_obs = len(values)
        self._trained = True
        return self

    # ------------------------------------------------------------------
    def predict(self, periods: int) -> list[float]:
        if not self._trained:
            raise NotTrainedError(f"{self.model_id} must be trained before predicting")
        periods = int(periods)
        if periods <= 0:
            raise ValueError("periods must be a positive integer")
        return [float(v) for v in self._forecast(periods)]

    # ------------------------------------------------------------------
    def validate(self, holdout: Sequence[float]) -> ValidationMetrics:
        """Score a forecast of ``len(holdout)`` periods against ``holdout``."""

        actual = as_numeric_series(holdout)
        if len(actual) == 0:
            raise ValueError("holdout must contain at least one value")
        return compute_metrics(actual, self.predict(len(actual)))

    # ------------------------------------------------------------------
    def _fit(self, values: np.ndarray) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _forecast(self, periods: int) -> Sequence[float]:  # pragma: no cover - abstract
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Smoothing models


class SimpleExponentialSmoothing(ForecastModel):
    kind = ModelKind.SES

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.alpha = float(self.parameters["alpha"])
        self.level: float | None = None

    def _fit(self, values: np.ndarray) -> None:
        level = float(values[0])
        for value in values[1:]:
            level = self.alpha * float(value) + (1.0 - self.alpha) * level
        self.level = level

    def _forecast(self, periods: int) -> Sequence[float]:
        return [self.level] * periods


class HoltLinearTrend(ForecastModel):
    kind = ModelKind.HOLT_LINEAR

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.alpha = float(self.parameters["alpha"])
        self.beta = float(self.parameters["beta"])
        self.level: float | None = None
        self.trend: float | None = None

    def _fit(self, values: np.ndarray) -> None:
        level = float(values[0])
        trend = float(values[1] - values[0])
        for value in values[1:]:
            previous_level = level
            level = self.alpha * float(value) + (1.0 - self.alpha) * (level + trend)
            trend = self.beta * (level - previous_level) + (1.0 - self.beta) * trend
        self.level = level
        self.trend = trend

    def _forecast(self, periods: int) -> Sequence[float]:
        return [self.level + h * self.trend for h in range(1, periods + 1)]


class MovingAverage(ForecastModel):
    """Recursive moving average: each step averages the last ``window`` values."""

    kind = ModelKind.MOVING_AVERAGE

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.window = int(self.parameters["window"])
        self.history: tuple[float, ...] = ()

    def _fit(self, values: np.ndarray) -> None:
        if len(values) < self.window:
            raise InsufficientDataError(self.window, len(values))
        self.history = tuple(float(v) for v in values)

    def _forecast(self, periods: int) -> Sequence[float]:
        buffer = list(self.history[-self.window :])
        predictions: list[float] = []
        for _ in range(periods):
            value = sum(buffer[-self.window :]) / self.window
            predictions.append(value)
            buffer.append(value)
        return predictions


class HoltWinters(ForecastModel):
    """Triple exponential smoothing with additive or multiplicative seasonality."""

    kind = ModelKind.HOLT_WINTERS
    requires_seasonal_period = True

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.alpha = float(self.parameters["alpha"])
        self.beta = float(self.parameters["beta"])
        self.gamma = float(self.parameters["gamma"])
        self.seasonality = str(self.parameters.get("type", "additive"))
        if self.seasonality not in {"additive", "multiplicative"}:
            raise ValueError("Holt-Winters type must be 'additive' or 'multiplicative'")
        self.level: float | None = None
        self.trend: float | None = None
        self.seasonal: list[float] = []

    @property
    def multiplicative(self) -> bool:
        return self.seasonality == "multiplicative"

    # ------------------------------------------------------------------
    def _initial_seasonal(self, values: np.ndarray) -> list[float]:
        s = self.seasonal_period
        seasons = len(values) // s
        indices = []
        for phase in range(s):
            total = 0.0
            for season in range(seasons):
                block = values[season * s : (season + 1) * s]
                block_mean = float(block.mean())
                value = float(values[season * s + phase])
                total += value / block_mean if self.multiplicative else value - block_mean
            indices.append(total / seasons)
        return indices

    # ------------------------------------------------------------------
    def _fit(self, values: np.ndarray) -> None:
        s = self.seasonal_period
        if len(values) < 2 * s:
            raise InsufficientDataError(2 * s, len(values))
        if self.multiplicative and (values <= 0).any():
            raise InvalidSeriesError(
                "multiplicative Holt-Winters requires strictly positive values"
            )

        level = float(values[:s].mean())
        trend = float((values[s : 2 * s] - values[:s]).sum()) / float(s * s)
        seasonal = self._initial_seasonal(values)

        for t in range(s, len(values)):
            value = float(values[t])
            phase = t % s
            previous_level = level
            if self.multiplicative:
                level = self.alpha * (value / seasonal[phase]) + (1.0 - self.alpha) * (level + trend)
                trend = self.beta * (level - previous_level) + (1.0 - self.beta) * trend
                if level != 0:
                    seasonal[phase] = self.gamma * (value / level) + (1.0 - self.gamma) * seasonal[phase]
            else:
                level = self.alpha * (value - seasonal[phase]) + (1.0 - self.alpha) * (level + trend)
                trend = self.beta * (level - previous_level) + (1.0 - self.beta) * trend
                seasonal[phase] = self.gamma * (value - level) + (1.0 - self.gamma) * seasonal[phase]

        self.level = level
        self.trend = trend
        self.seasonal = seasonal

    # ------------------------------------------------------------------
    def _forecast(self, periods: int) -> Sequence[float]:
        s = self.seasonal_period
        predictions = []
        for h in range(1, periods + 1):
            phase = (self._n_obs + h - 1) % s
            base = self.level + h * self.trend
            value = base * self.seasonal[phase] if self.multiplicative else base + self.seasonal[phase]
            predictions.append(max(0.0, value))
        return predictions


# ---------------------------------------------------------------------------
# Seasonal baselines


class SeasonalNaive(ForecastModel):
    """Repeat the most recent full season."""

    kind = ModelKind.SEASONAL_NAIVE
    requires_seasonal_period = True

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.last_season: tuple[float, ...] = ()

    def _fit(self, values: np.ndarray) -> None:
        self.last_season = tuple(float(v) for v in values[-self.seasonal_period :])

    def _forecast(self, periods: int) -> Sequence[float]:
        s = self.seasonal_period
        return [self.last_season[(h - 1) % s] for h in range(1, periods + 1)]


class SeasonalMovingAverage(ForecastModel):
    """Moving average on the deseasonalised series, reseasonalised per step."""

    kind = ModelKind.SEASONAL_MOVING_AVERAGE
    requires_seasonal_period = True

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.window = int(self.parameters["window"])
        self.indices: np.ndarray = np.ones(self.seasonal_period)
        self.deseasonalized: tuple[float, ...] = ()

    def _fit(self, values: np.ndarray) -> None:
        s = self.seasonal_period
        phases = np.arange(len(values)) % s

        # Each phase mean relative to the mean of the phase means; neutral
        # until a full season is available.
        indices = np.ones(s)
        if len(values) >= s:
            phase_means = np.array([float(values[phases == phase].mean()) for phase in range(s)])
            level = float(phase_means.mean())
            if level > 0:
                indices = phase_means / level

        divisors = indices[phases]
        deseasonalized = np.divide(
            values, divisors, out=np.zeros_like(values), where=divisors != 0
        )
        self.indices = indices
        self.deseasonalized = tuple(float(v) for v in deseasonalized)

    def _forecast(self, periods: int) -> Sequence[float]:
        s = self.seasonal_period
        buffer = list(self.deseasonalized)
        predictions: list[float] = []
        for h in range(1, periods + 1):
            recent = buffer[-self.window :]
            value = sum(recent) / len(recent)
            buffer.append(value)
            predictions.append(value * float(self.indices[(self._n_obs + h - 1) % s]))
        return predictions


# ---------------------------------------------------------------------------
# Regression


class LinearTrend(ForecastModel):
    """Ordinary least squares on the time index."""

    kind = ModelKind.LINEAR_TREND

    def __init__(self, parameters: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(parameters, **kwargs)
        self.slope: float | None = None
        self.intercept: float | None = None

    def _fit(self, values: np.ndarray) -> None:
        index = np.arange(len(values), dtype=float)
        slope, intercept = np.polyfit(index, values, 1)
        self.slope = float(slope)
        self.intercept = float(intercept)

    def _forecast(self, periods: int) -> Sequence[float]:
        last = self._n_obs - 1
        return [
            max(0.0, self.slope * (last + h) + self.intercept) for h in range(1, periods + 1)
        ]
