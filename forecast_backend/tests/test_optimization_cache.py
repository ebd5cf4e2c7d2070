from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from forecast_backend.app.models.schemas import ModelConfig
from forecast_backend.app.services.fingerprint_service import FingerprintService
from forecast_backend.app.services.model_registry import ModelRegistry
from forecast_backend.app.services.optimization_cache import OptimizationCache, SelectionPolicy

SES = "simple-exponential-smoothing"
OPTIMIZABLE = (
    "arima",
    "holt-linear-trend",
    "holt-winters",
    "moving-average",
    "sarima",
    "seasonal-moving-average",
    "simple-exponential-smoothing",
)


def _frame(a_last: float = 30.0) -> pd.DataFrame:
    dates = list(pd.date_range("2022-01-01", periods=24, freq="MS"))
    a_values = [10.0 + i for i in range(23)] + [a_last]
    b_values = [5.0 + (i % 3) for i in range(24)]
    return pd.DataFrame(
        {"sku": ["A"] * 24 + ["B"] * 24, "date": dates * 2, "value": a_values + b_values}
    )


def _cache(policy: SelectionPolicy | str = SelectionPolicy.PRIORITY) -> OptimizationCache:
    return OptimizationCache(FingerprintService(), ModelRegistry(), policy)


def test_automated_writes_follow_priority_until_manual() -> None:
    cache = _cache()

    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1")
    assert cache.snapshot("A", SES).selected == "grid"

    cache.set_proposal("A", SES, "ai", {"alpha": 0.4}, "h1")
    assert cache.snapshot("A", SES).selected == "ai"

    entry = cache.set_proposal("A", SES, "manual", {"alpha": 0.7}, "h1")
    assert entry.selected == "manual"
    assert entry.user_selected

    cache.set_proposal("A", SES, "ai", {"alpha": 0.5}, "h2")
    cache.set_proposal("A", SES, "grid", {"alpha": 0.6}, "h2")
    entry = cache.snapshot("A", SES)
    assert entry.selected == "manual"
    assert entry.selected_proposal().parameters == {"alpha": 0.7}
    assert entry.ai.parameters == {"alpha": 0.5}


def test_fresh_proposals_beat_stale_higher_priority() -> None:
    cache = _cache()

    cache.set_proposal("A", SES, "ai", {"alpha": 0.4}, "old")
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "new")

    assert cache.snapshot("A", SES).selected == "grid"
    assert cache.best_available_method("A", SES) == "ai"


def test_expected_accuracy_policy() -> None:
    cache = _cache("expected_accuracy")

    cache.set_proposal("A", SES, "ai", {"alpha": 0.4}, "h1", meta={"expected_accuracy": 80.0})
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1", meta={"expected_accuracy": 90.0})

    assert cache.snapshot("A", SES).selected == "grid"


def test_explicit_selection() -> None:
    cache = _cache()
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1")
    cache.set_proposal("A", SES, "ai", {"alpha": 0.4}, "h1")

    with pytest.raises(KeyError):
        cache.select("A", SES, "manual")

    entry = cache.select("A", SES, "grid")
    assert entry.selected == "grid"
    assert entry.user_selected

    cache.set_proposal("A", SES, "ai", {"alpha": 0.3}, "h1")
    assert cache.snapshot("A", SES).selected == "grid"


def test_invalid_method_rejected() -> None:
    with pytest.raises(ValueError):
        _cache().set_proposal("A", SES, "oracle", {"alpha": 0.2}, "h1")


def test_version_counts_mutations() -> None:
    cache = _cache()
    start = cache.version

    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1")
    cache.select("A", SES, "grid")
    cache.invalidate("A")

    assert cache.version == start + 3
    assert cache.snapshot("A", SES) is None


def test_is_valid_tracks_selected_hash() -> None:
    cache = _cache()
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1")

    assert cache.is_valid("A", SES, "h1")
    assert not cache.is_valid("A", SES, "h2")
    assert not cache.is_valid("B", SES, "h1")
    assert cache.stats["hits"] == 1
    assert cache.stats["misses"] == 2


def test_reconcile_is_idempotent_without_rehashing() -> None:
    fingerprints = FingerprintService()
    cache = OptimizationCache(fingerprints, ModelRegistry())
    frame = _frame()

    first = cache.reconcile(frame)
    assert fingerprints.sku_hash_computations == 2

    second = cache.reconcile(frame.sample(frac=1.0, random_state=3))

    assert second is first
    assert fingerprints.sku_hash_computations == 2
    assert cache.stats["rebuilds"] == 1
    assert first.models == OPTIMIZABLE
    assert set(first.sku_hashes) == {"A", "B"}


def test_reconcile_rebuilds_when_models_change() -> None:
    cache = _cache()
    frame = _frame()

    cache.reconcile(frame, [ModelConfig(model_id=SES)])
    manifest = cache.reconcile(
        frame, [ModelConfig(model_id=SES), ModelConfig(model_id="moving-average")]
    )

    assert manifest.models == ("moving-average", SES)
    assert cache.stats["rebuilds"] == 2


def test_disabled_and_fixed_models_are_not_pending() -> None:
    cache = _cache()
    configs = [
        ModelConfig(model_id=SES, enabled=False),
        ModelConfig(model_id="linear-trend"),
        ModelConfig(model_id="moving-average"),
    ]

    pending = cache.needs_optimization(_frame(), configs)

    assert [(item.sku, item.models) for item in pending] == [
        ("A", ["moving-average"]),
        ("B", ["moving-average"]),
    ]


def test_needs_optimization_follows_data_changes() -> None:
    fingerprints = FingerprintService()
    cache = OptimizationCache(fingerprints, ModelRegistry())
    frame = _frame()

    pending = cache.needs_optimization(frame)
    assert [item.sku for item in pending] == ["A", "B"]
    assert pending[0].models == list(OPTIMIZABLE)

    hashes = {item.sku: item.data_hash for item in pending}
    for sku in ("A", "B"):
        for model_id in OPTIMIZABLE:
            cache.set_proposal(sku, model_id, "grid", {}, hashes[sku])

    assert cache.needs_optimization(frame) == []

    changed = _frame(a_last=99.0)
    pending = cache.needs_optimization(changed)
    assert [item.sku for item in pending] == ["A"]
    assert pending[0].models == list(OPTIMIZABLE)
    assert pending[0].data_hash != hashes["A"]


def test_short_skus_are_ignored() -> None:
    frame = pd.DataFrame(
        {"sku": ["S", "S"], "date": ["2023-01-01", "2023-02-01"], "value": [1.0, 2.0]}
    )

    assert _cache().needs_optimization(frame) == []


def test_invalidate_strips_manifest_entries() -> None:
    cache = _cache()
    frame = _frame()
    data_hash = cache.needs_optimization(frame, [ModelConfig(model_id=SES)])[0].data_hash
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, data_hash)
    assert "A:" + SES in cache.manifest.valid_entries

    removed = cache.invalidate("A")

    assert removed == 1
    assert "A:" + SES not in cache.manifest.valid_entries
    assert [item.sku for item in cache.needs_optimization(frame, [ModelConfig(model_id=SES)])] == ["A", "B"]


def test_snapshot_round_trip_drops_expired_proposals(tmp_path: Path) -> None:
    cache = _cache()
    stale = datetime.now(timezone.utc) - timedelta(hours=5)
    cache.set_proposal("A", SES, "grid", {"alpha": 0.2}, "h1", meta={"timestamp": stale})
    cache.set_proposal("A", SES, "ai", {"alpha": 0.4}, "h1")
    cache.set_proposal("B", SES, "grid", {"alpha": 0.3}, "h1", meta={"timestamp": stale})
    cache.select("A", SES, "grid")

    path = cache.dump_snapshot(tmp_path / "cache" / "snapshot.joblib")
    restored = _cache()
    loaded = restored.load_snapshot(path, max_age_hours=1)

    assert loaded == 1
    assert restored.snapshot("B", SES) is None
    entry = restored.snapshot("A", SES)
    assert entry.grid is None
    assert entry.selected == "ai"
    assert not entry.user_selected
    assert entry.ai.parameters == {"alpha": 0.4}
