r"""forecast_backend\app\services\arima_adapter.py

ARIMA/SARIMA adapter.

The engine does not fit lag polynomials itself.  ``ArimaModel`` validates the
series, enforces the observation/season gates and hands the series to an
estimation collaborator.  The default collaborator wraps statsmodels'
``SARIMAX``; tests inject lightweight fakes through the ``estimator`` argument.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import numpy as np

from ..core.errors import InsufficientDataError, InvalidSeriesError
from .forecast_models import ForecastModel, ModelKind

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ArimaOrder:
    p: int
    d: int
    q: int
    seasonal_p: int = 0
    seasonal_d: int = 0
    seasonal_q: int = 0
    period: int = 0

    @property
    def order(self) -> tuple[int, int, int]:
        return (self.p, self.d, self.q)

    @property
    def seasonal_order(self) -> tuple[int, int, int, int]:
        if self.period < 2:
            return (0, 0, 0, 0)
        return (self.seasonal_p, self.seasonal_d, self.seasonal_q, self.period)

    def as_dict(self) -> dict[str, int]:
        payload = {"p": self.p, "d": self.d, "q": self.q}
        if self.period >= 2:
            payload.update({"P": self.seasonal_p, "D": self.seasonal_d, "Q": self.seasonal_q})
        return payload


class FittedArima(Protocol):
    def predict(self, periods: int) -> tuple[list[float], list[float]]: ...

    def get_order(self) -> dict[str, int] | None: ...


class ArimaEstimator(Protocol):
    def fit(self, series: Sequence[float], order: ArimaOrder, auto: bool = False) -> FittedArima: ...


# ---------------------------------------------------------------------------
# statsmodels collaborator


class StatsmodelsFittedArima:
    """Fitted ``SARIMAXResults`` exposing the adapter's predict contract."""

    def __init__(self, result: Any, order: ArimaOrder) -> None:
        self.result = result
        self.order = order

    def predict(self, periods: int) -> tuple[list[float], list[float]]:
        forecast = self.result.get_forecast(steps=periods)
        values = np.asarray(forecast.predicted_mean, dtype=float)
        errors = np.asarray(forecast.se_mean, dtype=float)
        return [float(v) for v in values], [float(e) for e in errors]

    def get_order(self) -> dict[str, int]:
        return self.order.as_dict()


class StatsmodelsArimaEstimator:
    """Fit ARIMA/SARIMA orders with statsmodels, selecting by AIC when ``auto``."""

    AUTO_ORDERS: tuple[tuple[int, int, int], ...] = (
        (1, 1, 1),
        (0, 1, 1),
        (1, 1, 0),
        (2, 1, 2),
        (1, 0, 1),
        (0, 1, 0),
    )
    AUTO_SEASONAL_ORDERS: tuple[tuple[int, int, int], ...] = (
        (0, 0, 0),
        (1, 0, 0),
        (0, 1, 1),
        (1, 1, 0),
    )

    def _candidates(self, order: ArimaOrder, auto: bool) -> list[ArimaOrder]:
        if not auto:
            return [order]
        candidates = [order]
        seasonal = self.AUTO_SEASONAL_ORDERS if order.period >= 2 else ((0, 0, 0),)
        for p, d, q in self.AUTO_ORDERS:
            for sp, sd, sq in seasonal:
                candidate = ArimaOrder(p, d, q, sp, sd, sq, order.period)
                if candidate not in candidates:
                    candidates.append(candidate)
        return candidates

    # ------------------------------------------------------------------
    def _fit_order(self, y: np.ndarray, order: ArimaOrder) -> Any:
        from statsmodels.tsa.statespace.sarimax import SARIMAX

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = SARIMAX(
                y,
                order=order.order,
                seasonal_order=order.seasonal_order,
                enforce_stationarity=False,
                enforce_invertibility=False,
            )
            return model.fit(disp=False)

    # ------------------------------------------------------------------
    def fit(self, series: Sequence[float], order: ArimaOrder, auto: bool = False) -> StatsmodelsFittedArima:
        y = np.asarray(series, dtype=float)
        best: tuple[float, ArimaOrder, Any] | None = None

        for candidate in self._candidates(order, auto):
            try:
                result = self._fit_order(y, candidate)
            except (ValueError, IndexError, np.linalg.LinAlgError) as exc:
                LOGGER.debug("SARIMAX order %s failed: %s", candidate.as_dict(), exc)
                continue
            aic = float(getattr(result, "aic", np.nan))
            if not np.isfinite(aic):
                if not auto:
                    return StatsmodelsFittedArima(result, candidate)
                continue
            if best is None or aic < best[0]:
                best = (aic, candidate, result)

        if best is None:
            raise InvalidSeriesError("ARIMA estimation failed for every candidate order")
        LOGGER.debug("Selected SARIMAX order %s (aic=%.3f)", best[1].as_dict(), best[0])
        return StatsmodelsFittedArima(best[2], best[1])


# ---------------------------------------------------------------------------
# Model adapters


class ArimaModel(ForecastModel):
    """Non-seasonal ARIMA(p, d, q) delegated to an estimation collaborator."""

    kind = ModelKind.ARIMA
    MIN_OBSERVATIONS: int = 10

    def __init__(
        self,
        parameters: Mapping[str, Any],
        estimator: ArimaEstimator | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(parameters, **kwargs)
        self.estimator: ArimaEstimator = estimator or StatsmodelsArimaEstimator()
        self.auto = bool(self.parameters.get("auto", False))
        self.order = self._build_order()
        self.fitted_order: dict[str, int] | None = None
        self.last_errors: list[float] = []
        self._fitted: FittedArima | None = None

    def _build_order(self) -> ArimaOrder:
        return ArimaOrder(
            int(self.parameters["p"]), int(self.parameters["d"]), int(self.parameters["q"])
        )

    def _check_gates(self, values: np.ndarray) -> None:
        if len(values) < self.MIN_OBSERVATIONS:
            raise InsufficientDataError(self.MIN_OBSERVATIONS, len(values))

    # ------------------------------------------------------------------
    def _fit(self, values: np.ndarray) -> None:
        self._check_gates(values)
        fitted = self.estimator.fit([float(v) for v in values], self.order, auto=self.auto)
        self._fitted = fitted
        if self.auto:
            self.fitted_order = fitted.get_order() or self.order.as_dict()
        else:
            self.fitted_order = self.order.as_dict()

    # ------------------------------------------------------------------
    def _forecast(self, periods: int) -> Sequence[float]:
        values, errors = self._fitted.predict(periods)
        values = [float(v) for v in values]
        if len(values) != periods or not np.isfinite(values).all():
            raise InvalidSeriesError("ARIMA estimator returned an unusable forecast")
        self.last_errors = [float(e) for e in errors]
        return values


class SarimaModel(ArimaModel):
    """Seasonal ARIMA(p, d, q)(P, D, Q, s); needs two complete seasons."""

    kind = ModelKind.SARIMA
    requires_seasonal_period = True
    MIN_SEASONS: int = 2

    def _build_order(self) -> ArimaOrder:
        return ArimaOrder(
            int(self.parameters["p"]),
            int(self.parameters["d"]),
            int(self.parameters["q"]),
            int(self.parameters["P"]),
            int(self.parameters["D"]),
            int(self.parameters["Q"]),
            int(self.seasonal_period),
        )

    def _check_gates(self, values: np.ndarray) -> None:
        required = self.MIN_SEASONS * self.seasonal_period
        if len(values) // self.seasonal_period < self.MIN_SEASONS:
            raise InsufficientDataError(
                required,
                len(values),
                f"need at least {required} observations "
                f"({self.MIN_SEASONS} complete seasons of {self.seasonal_period})",
            )
