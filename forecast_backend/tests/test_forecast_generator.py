from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from datetime import date

import pandas as pd
import pytest

from forecast_backend.app.core.errors import InsufficientDataError, UnknownModelError
from forecast_backend.app.models.schemas import ModelConfig
from forecast_backend.app.services.fingerprint_service import FingerprintService
from forecast_backend.app.services.forecast_generator import ForecastGenerator, future_dates
from forecast_backend.app.services.model_registry import ModelRegistry
from forecast_backend.app.services.optimization_cache import OptimizationCache

SES = "simple-exponential-smoothing"


def _observations(values: list[float], sku: str = "A") -> pd.DataFrame:
    return pd.DataFrame(
        {
            "sku": sku,
            "date": pd.date_range("2022-01-01", periods=len(values), freq="MS"),
            "value": values,
        }
    )


def _generator(seasonal_period: int = 12) -> ForecastGenerator:
    registry = ModelRegistry()
    return ForecastGenerator(OptimizationCache(FingerprintService(), registry), registry, seasonal_period)


def test_future_dates_follow_inferred_frequency() -> None:
    index = pd.DatetimeIndex(pd.date_range("2023-01-01", periods=12, freq="MS"))

    assert future_dates(index, 3) == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]


def test_future_dates_fall_back_to_median_spacing() -> None:
    index = pd.DatetimeIndex(["2023-01-01", "2023-01-08", "2023-01-16", "2023-01-22"])

    assert future_dates(index, 2) == [date(2023, 1, 29), date(2023, 2, 5)]


def test_too_few_observations_raise() -> None:
    with pytest.raises(InsufficientDataError) as excinfo:
        _generator().generate("A", _observations([5.0, 6.0]))

    assert "Need at least 3 data points" in str(excinfo.value)


def test_linear_trend_forecast_with_dates() -> None:
    values = [100.0 + 10.0 * i for i in range(24)]

    results = _generator().generate("A", _observations(values), [ModelConfig(model_id="linear-trend")], horizon=4)

    assert len(results) == 1
    result = results[0]
    assert result.model_name == "Linear Trend"
    assert result.predictions[0] == pytest.approx(340.0)
    assert [point.date for point in result.forecast] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]
    assert result.parameter_source == "default"
    assert result.error is None


def test_failing_model_degrades_without_aborting_others() -> None:
    configs = [ModelConfig(model_id="holt-winters"), ModelConfig(model_id=SES)]

    results = _generator().generate("A", _observations([10.0] * 10), configs, horizon=3)

    hw, ses = results
    assert hw.accuracy == 0.0
    assert hw.predictions == []
    assert "24" in hw.error
    assert ses.error is None
    assert ses.predictions == pytest.approx([10.0, 10.0, 10.0])
    assert ses.accuracy == pytest.approx(100.0)


def test_disabled_models_are_skipped() -> None:
    configs = [ModelConfig(model_id=SES, enabled=False), ModelConfig(model_id="linear-trend")]

    results = _generator().generate("A", _observations([1.0, 2.0, 3.0, 4.0]), configs)

    assert [result.model_id for result in results] == ["linear-trend"]
    assert len(results[0].predictions) == 12


def test_unknown_model_propagates() -> None:
    with pytest.raises(UnknownModelError):
        _generator().generate("A", _observations([1.0, 2.0, 3.0]), [ModelConfig(model_id="prophet")])


def test_valid_cached_selection_is_used() -> None:
    generator = _generator()
    values = [10.0, 14.0, 12.0, 15.0, 11.0, 13.0]
    data_hash = generator.cache.fingerprints.sku_data_hash(values)
    generator.cache.set_proposal("A", SES, "grid", {"alpha": 0.8}, data_hash)

    result = generator.generate("A", _observations(values), [ModelConfig(model_id=SES)])[0]

    assert result.parameter_source == "grid"
    assert result.parameters == {"alpha": 0.8}


def test_stale_cached_selection_is_ignored() -> None:
    generator = _generator()
    generator.cache.set_proposal("A", SES, "grid", {"alpha": 0.8}, "stale-hash")
    config = ModelConfig(model_id=SES, parameters={"alpha": 0.25})

    result = generator.generate("A", _observations([10.0, 14.0, 12.0, 15.0]), [config])[0]

    assert result.parameter_source == "manual"
    assert result.parameters == {"alpha": 0.25}


def test_scoring_pads_short_forecasts() -> None:
    generator = _generator()

    result = generator.generate(
        "A", _observations([10.0, 10.0, 10.0, 10.0, 20.0]), [ModelConfig(model_id=SES, parameters={"alpha": 0.5})], horizon=1
    )[0]

    # Level is 15; the last five actuals are scored against five copies of it.
    assert result.predictions == pytest.approx([15.0])
    assert result.mae == pytest.approx((5.0 * 4 + 5.0) / 5)


def test_scoring_uses_the_last_ten_actuals() -> None:
    values = [100.0 + 10.0 * i for i in range(12)]

    result = _generator().generate("A", _observations(values), [ModelConfig(model_id="linear-trend")], horizon=10)[0]

    # Actuals 2..11 against forecasts 12..21: every step is ten periods ahead.
    assert result.mae == pytest.approx(100.0)
