from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from datetime import date

import pandas as pd
import pytest

from forecast_backend.app.core.errors import InvalidSeriesError
from forecast_backend.app.models.schemas import Observation
from forecast_backend.app.services.observation_store import ObservationStore, observations_frame


def test_frame_is_sorted_and_normalised() -> None:
    raw = pd.DataFrame(
        {
            " SKU ": ["B", "A", "A"],
            "Date": ["2023-02-01", "2023-02-01", "2023-01-01"],
            "Value": [3, 2, 1],
        }
    )

    frame = observations_frame(raw)

    assert list(frame.columns) == ["sku", "date", "value"]
    assert frame["sku"].tolist() == ["A", "A", "B"]
    assert frame["value"].tolist() == [1.0, 2.0, 3.0]


def test_observation_records_are_accepted() -> None:
    records = [
        Observation(sku="A", date=date(2023, 1, 1), value=4.0),
        {"sku": "A", "date": "2023-02-01", "value": 5},
    ]

    store = ObservationStore(records)

    assert len(store) == 2
    assert store.get_observations()[1] == Observation(sku="A", date=date(2023, 2, 1), value=5.0)
    assert store.series_for("A").index[0] == pd.Timestamp("2023-01-01")


@pytest.mark.parametrize(
    "rows",
    [
        [{"sku": "A", "date": "not-a-date", "value": 1.0}],
        [{"sku": "A", "date": "2023-01-01", "value": -1.0}],
        [{"sku": "A", "date": "2023-01-01", "value": "many"}],
        [{"sku": "A", "value": 1.0}],
    ],
)
def test_invalid_records_rejected(rows: list[dict]) -> None:
    with pytest.raises(InvalidSeriesError):
        observations_frame(rows)


def test_from_file_and_mutation(tmp_path: Path) -> None:
    path = tmp_path / "observations.csv"
    pd.DataFrame(
        {"sku": ["A", "B", "A"], "date": ["2023-01-01", "2023-01-01", "2023-02-01"], "value": [1, 2, 3]}
    ).to_csv(path, index=False)

    store = ObservationStore.from_file(path)

    assert store.skus() == ["A", "B"]
    assert store.series_for("A").tolist() == [1.0, 3.0]
    assert store.remove_sku("B")
    assert not store.remove_sku("B")
    assert store.skus() == ["A"]
    assert store.series_for("B").empty


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ObservationStore.from_file(tmp_path / "absent.csv")
