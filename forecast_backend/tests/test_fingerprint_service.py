from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

import pandas as pd

from forecast_backend.app.services.fingerprint_service import FingerprintService


def _frame() -> pd.DataFrame:
    dates = pd.date_range("2023-01-01", periods=6, freq="MS")
    return pd.DataFrame(
        {
            "sku": ["A"] * 6 + ["B"] * 6,
            "date": list(dates) * 2,
            "value": [10.0, 12.0, 11.0, 13.0, 15.0, 14.0, 3.0, 4.0, 5.0, 4.0, 3.0, 6.0],
        }
    )


def test_global_fingerprint_ignores_record_order() -> None:
    service = FingerprintService()
    frame = _frame()
    shuffled = frame.sample(frac=1.0, random_state=7)

    first = service.global_fingerprint(frame)
    second = service.global_fingerprint(shuffled)

    assert first.global_hash == second.global_hash
    assert first.sku_count == 2
    assert first.total_records == 12
    assert str(first.date_range_start) == "2023-01-01"
    assert str(first.date_range_end) == "2023-06-01"


def test_global_fingerprint_changes_with_values() -> None:
    service = FingerprintService()
    frame = _frame()
    edited = frame.copy()
    edited.loc[3, "value"] = 99.0

    assert service.global_fingerprint(frame).global_hash != service.global_fingerprint(edited).global_hash


def test_global_fingerprint_of_empty_dataset() -> None:
    fingerprint = FingerprintService().global_fingerprint([])

    assert fingerprint.sku_count == 0
    assert fingerprint.total_records == 0
    assert fingerprint.date_range_start is None


def test_sku_hash_only_looks_at_recent_values() -> None:
    service = FingerprintService()
    values = [float(i) for i in range(30)]
    old_edit = list(values)
    old_edit[0] = 500.0
    recent_edit = list(values)
    recent_edit[-1] = 500.0

    baseline = service.sku_data_hash(values)

    assert len(baseline) == 20
    assert service.sku_data_hash(old_edit) == baseline
    assert service.sku_data_hash(recent_edit) != baseline
    assert service.sku_data_hash(values + [30.0]) != baseline
    assert service.sku_hash_computations == 4


def test_sku_hash_rounds_to_two_decimals() -> None:
    service = FingerprintService()

    assert service.sku_data_hash([10.001, 20.0, 30.0]) == service.sku_data_hash([10.004, 20.0, 30.0])
    assert service.sku_data_hash([10.01, 20.0, 30.0]) != service.sku_data_hash([10.02, 20.0, 30.0])
