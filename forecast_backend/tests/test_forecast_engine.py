from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

import asyncio
from concurrent.futures import ThreadPoolExecutor

import joblib
import pandas as pd
import pytest
import yaml

from forecast_backend.app.core.config import (
    Settings,
    load_forecast_settings,
    resolve_seasonal_period,
)
from forecast_backend.app.models.schemas import ModelConfig
from forecast_backend.app.services.forecast_engine import CACHE_SNAPSHOT_FILE, ForecastEngine
from forecast_backend.app.services.observation_store import ObservationStore

SES = "simple-exponential-smoothing"


def _frame(skus: tuple[str, ...] = ("A", "B"), periods: int = 24) -> pd.DataFrame:
    dates = list(pd.date_range("2022-01-01", periods=periods, freq="MS"))
    return pd.DataFrame(
        {
            "sku": [sku for sku in skus for _ in dates],
            "date": dates * len(skus),
            "value": [30.0 + (i % 6) for _ in skus for i in range(periods)],
        }
    )


def test_resolve_seasonal_period() -> None:
    assert resolve_seasonal_period({"frequency": "weekly"}, 12) == 52
    assert resolve_seasonal_period({"frequency": "weekly", "seasonal_period": 13}, 12) == 13
    assert resolve_seasonal_period({"frequency": "fortnightly"}, 9) == 9
    with pytest.raises(ValueError):
        resolve_seasonal_period({"seasonal_period": 0})


def test_from_settings_reads_yaml_and_observations(tmp_path: Path) -> None:
    config_dir = tmp_path / "configs"
    data_dir = tmp_path / "data"
    config_dir.mkdir()
    data_dir.mkdir()
    (config_dir / "settings.yaml").write_text(
        yaml.safe_dump({"frequency": "quarterly", "business_context": {"cost_of_error": "high"}})
    )
    _frame().to_csv(data_dir / "observations.csv", index=False)
    settings = Settings(config_dir=str(config_dir), data_dir=str(data_dir), advisory_enabled=False)

    engine = ForecastEngine.from_settings(settings)

    assert load_forecast_settings(str(config_dir))["frequency"] == "quarterly"
    assert engine.seasonal_period == 4
    assert engine.orchestrator.business_context.cost_of_error == "high"
    assert engine.store.skus() == ["A", "B"]
    assert not engine.orchestrator.advisory_active()


def test_from_settings_without_data_starts_empty(tmp_path: Path) -> None:
    settings = Settings(config_dir=str(tmp_path), data_dir=str(tmp_path), advisory_enabled=False)

    engine = ForecastEngine.from_settings(settings)

    assert len(engine.store) == 0
    assert engine.needs_optimization() == []


def test_engine_lifecycle() -> None:
    executor = ThreadPoolExecutor(max_workers=2)
    engine = ForecastEngine(
        store=ObservationStore(_frame()),
        model_configs=[ModelConfig(model_id=SES), ModelConfig(model_id="linear-trend")],
        seasonal_period=4,
        executor=executor,
    )
    try:
        assert engine.enqueue(["A", "B", "A"], "import") == 2

        summary = asyncio.run(engine.optimize())
        assert summary.proposals_written["grid"] == 2
        assert engine.queue_size() == 0
        version = engine.cache_version

        entry = engine.set_manual_parameters("A", SES, {"alpha": 0.6})
        assert entry.selected == "manual"
        assert engine.cache_version == version + 1
        assert engine.select("A", SES, "grid").selected == "grid"

        results = engine.generate("A", horizon=6)
        assert {result.model_id for result in results} == {SES, "linear-trend"}
        assert all(len(result.forecast) == 6 for result in results)

        cleaned = _frame()
        cleaned.loc[cleaned.index[23], "value"] = 80.0
        assert engine.apply_cleaning(cleaned) == 1
        assert engine.snapshot("A", SES) is not None

        assert engine.remove_sku("B")
        assert engine.snapshot("B", SES) is None
        assert engine.store.skus() == ["A"]

        assert engine.replace_observations(_frame(("C",))) == 2
        assert engine.snapshot("A", SES) is None
    finally:
        engine.close()
        executor.shutdown(wait=True)


def test_manual_parameters_need_observations() -> None:
    engine = ForecastEngine(store=ObservationStore(_frame(("A",))), seasonal_period=4)

    with pytest.raises(KeyError):
        engine.set_manual_parameters("missing", SES, {"alpha": 0.5})


def _snapshot_settings(tmp_path: Path, **kwargs) -> Settings:
    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    _frame(("A",)).to_csv(data_dir / "observations.csv", index=False)
    return Settings(config_dir=str(tmp_path), data_dir=str(data_dir), advisory_enabled=False, **kwargs)


def test_cache_snapshot_survives_restart(tmp_path: Path) -> None:
    settings = _snapshot_settings(tmp_path, cache_expiry_hours=24)
    configs = [ModelConfig(model_id=SES)]
    engine = ForecastEngine.from_settings(settings, model_configs=configs)
    engine.set_manual_parameters("A", SES, {"alpha": 0.6})

    engine.close()

    assert (tmp_path / "data" / CACHE_SNAPSHOT_FILE).exists()
    restored = ForecastEngine.from_settings(settings, model_configs=configs)
    entry = restored.snapshot("A", SES)
    assert entry is not None
    assert entry.selected == "manual"
    assert entry.manual.parameters == {"alpha": 0.6}
    assert restored.needs_optimization() == []


def test_expired_snapshot_proposals_are_dropped(tmp_path: Path) -> None:
    settings = _snapshot_settings(tmp_path)
    configs = [ModelConfig(model_id=SES)]
    engine = ForecastEngine.from_settings(settings, model_configs=configs)
    engine.set_manual_parameters("A", SES, {"alpha": 0.6})
    engine.close()

    restored = ForecastEngine.from_settings(
        settings.model_copy(update={"cache_expiry_hours": 1e-9}), model_configs=configs
    )

    assert restored.snapshot("A", SES) is None
    assert [item.sku for item in restored.needs_optimization()] == ["A"]


def test_unreadable_snapshot_is_ignored(tmp_path: Path) -> None:
    settings = _snapshot_settings(tmp_path)
    joblib.dump({"format": 99, "entries": []}, tmp_path / "data" / CACHE_SNAPSHOT_FILE)

    engine = ForecastEngine.from_settings(settings)

    assert engine.cache_version == 0
    assert len(engine.cache) == 0
