from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from typing import Sequence

import pytest

from forecast_backend.app.core.errors import InsufficientDataError, InvalidSeriesError
from forecast_backend.app.services.arima_adapter import ArimaOrder, SarimaModel
from forecast_backend.app.services.model_registry import ModelRegistry


class StubFitted:
    def __init__(self, series: Sequence[float], order: dict[str, int] | None, value: float | None = None) -> None:
        self.last = float(series[-1]) if value is None else value
        self.order = order

    def predict(self, periods: int) -> tuple[list[float], list[float]]:
        return [self.last] * periods, [1.5] * periods

    def get_order(self) -> dict[str, int] | None:
        return self.order


class StubEstimator:
    def __init__(self, selected: dict[str, int] | None = None, value: float | None = None) -> None:
        self.calls: list[tuple[ArimaOrder, bool]] = []
        self.selected = selected
        self.value = value

    def fit(self, series: Sequence[float], order: ArimaOrder, auto: bool = False) -> StubFitted:
        self.calls.append((order, auto))
        return StubFitted(series, self.selected, self.value)


def _series(n: int) -> list[float]:
    return [20.0 + (i % 4) for i in range(n)]


def test_arima_delegates_to_estimator() -> None:
    estimator = StubEstimator()
    registry = ModelRegistry(arima_estimator=estimator)
    model = registry.instantiate("arima", {"auto": False, "p": 2})

    model.train(_series(12))
    predictions = model.predict(3)

    assert predictions == [23.0, 23.0, 23.0]
    assert estimator.calls == [(ArimaOrder(2, 1, 1), False)]
    assert model.fitted_order == {"p": 2, "d": 1, "q": 1}
    assert model.last_errors == [1.5, 1.5, 1.5]


def test_auto_arima_reports_selected_order() -> None:
    estimator = StubEstimator(selected={"p": 0, "d": 1, "q": 1})
    model = ModelRegistry(arima_estimator=estimator).instantiate("arima")

    model.train(_series(15))

    assert estimator.calls[0][1] is True
    assert model.fitted_order == {"p": 0, "d": 1, "q": 1}


def test_arima_needs_ten_observations() -> None:
    model = ModelRegistry(arima_estimator=StubEstimator()).instantiate("arima")

    with pytest.raises(InsufficientDataError):
        model.train(_series(9))


def test_sarima_passes_seasonal_order() -> None:
    estimator = StubEstimator()
    model = ModelRegistry(arima_estimator=estimator).instantiate("sarima", seasonal_period=4)

    model.train(_series(12))

    order, auto = estimator.calls[0]
    assert order == ArimaOrder(1, 1, 1, 1, 0, 0, 4)
    assert order.seasonal_order == (1, 0, 0, 4)
    assert auto is False
    assert model.fitted_order == {"p": 1, "d": 1, "q": 1, "P": 1, "D": 0, "Q": 0}


def test_sarima_needs_two_complete_seasons() -> None:
    params = {"p": 1, "d": 1, "q": 1, "P": 1, "D": 0, "Q": 0, "auto": False}
    model = SarimaModel(params, estimator=StubEstimator(), seasonal_period=4)

    with pytest.raises(InsufficientDataError) as excinfo:
        model.train(_series(7))

    assert "2 complete seasons of 4" in str(excinfo.value)


def test_unusable_estimator_forecast_is_rejected() -> None:
    model = ModelRegistry(arima_estimator=StubEstimator(value=float("nan"))).instantiate("arima")
    model.train(_series(12))

    with pytest.raises(InvalidSeriesError):
        model.predict(2)


def test_non_seasonal_order_has_empty_seasonal_part() -> None:
    order = ArimaOrder(1, 0, 1)

    assert order.order == (1, 0, 1)
    assert order.seasonal_order == (0, 0, 0, 0)
    assert order.as_dict() == {"p": 1, "d": 0, "q": 1}
