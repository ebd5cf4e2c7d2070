r"""forecast_backend\app\services\observation_store.py

In-memory store of normalised ``{sku, date, value}`` observations.

The store is the engine's only view of the data: the fingerprint service,
the orchestrator and the forecast generator all read from it.  Records are
validated once on ingestion and kept in a date-ordered ``pd.DataFrame``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Union

import numpy as np
import pandas as pd

from ..core.errors import InvalidSeriesError
from ..models.schemas import Observation
from .io_utils import normalise_columns, prefer_parquet

LOGGER = logging.getLogger(__name__)

REQUIRED_COLUMNS: tuple[str, ...] = ("sku", "date", "value")

ObservationsLike = Union[pd.DataFrame, Iterable[Union[Observation, Mapping[str, Any]]]]


def observations_frame(observations: ObservationsLike) -> pd.DataFrame:
    """Return a validated frame sorted by ``(sku, date)``.

    Accepts a frame with ``sku``/``date``/``value`` columns or any iterable of
    :class:`Observation` objects or plain mappings.
    """

    if isinstance(observations, pd.DataFrame):
        frame = normalise_columns(observations)
    else:
        rows = [
            obs.model_dump() if isinstance(obs, Observation) else dict(obs)
            for obs in observations
        ]
        frame = pd.DataFrame(rows, columns=list(REQUIRED_COLUMNS)) if not rows else pd.DataFrame(rows)

    missing = [col for col in REQUIRED_COLUMNS if col not in frame.columns]
    if missing:
        raise InvalidSeriesError(f"observations missing required columns: {missing}")

    frame = frame.loc[:, list(REQUIRED_COLUMNS)].copy()
    frame["sku"] = frame["sku"].astype(str)
    frame["date"] = pd.to_datetime(frame["date"], errors="coerce")
    frame["value"] = pd.to_numeric(frame["value"], errors="coerce").astype(float)

    if frame["date"].isna().any():
        raise InvalidSeriesError("observations contain unparseable dates")
    if not np.isfinite(frame["value"].to_numpy()).all():
        raise InvalidSeriesError("observations contain non-numeric values")
    if (frame["value"] < 0).any():
        raise InvalidSeriesError("observations contain negative values")

    return frame.sort_values(["sku", "date"], kind="mergesort").reset_index(drop=True)


def load_observations(path: str | Path) -> pd.DataFrame:
    """Read a ``sku,date,value`` table from CSV (or a sibling Parquet file)."""

    return observations_frame(prefer_parquet(path))


class ObservationStore:
    """Thread-safe holder of the current observation set."""

    def __init__(self, observations: ObservationsLike | None = None) -> None:
        self._lock = threading.Lock()
        self._frame = observations_frame(observations if observations is not None else [])

    @classmethod
    def from_file(cls, path: str | Path) -> "ObservationStore":
        frame = load_observations(path)
        LOGGER.info("Loaded %s observations for %s SKUs from %s", len(frame), frame["sku"].nunique(), path)
        return cls(frame)

    # ------------------------------------------------------------------
    def frame(self) -> pd.DataFrame:
        with self._lock:
            return self._frame.copy()

    def get_observations(self) -> list[Observation]:
        frame = self.frame()
        return [
            Observation(sku=row.sku, date=row.date.date(), value=float(row.value))
            for row in frame.itertuples(index=False)
        ]

    def skus(self) -> list[str]:
        with self._lock:
            return sorted(self._frame["sku"].unique().tolist())

    def series_for(self, sku: str) -> pd.Series:
        """Return the date-indexed, date-ordered values of ``sku``."""

        with self._lock:
            subset = self._frame.loc[self._frame["sku"] == sku]
        return pd.Series(subset["value"].to_numpy(), index=pd.DatetimeIndex(subset["date"]), name=sku)

    def __len__(self) -> int:
        with self._lock:
            return len(self._frame)

    # ------------------------------------------------------------------
    def replace(self, observations: ObservationsLike) -> None:
        frame = observations_frame(observations)
        with self._lock:
            self._frame = frame

    def remove_sku(self, sku: str) -> bool:
        with self._lock:
            mask = self._frame["sku"] == sku
            if not mask.any():
                return False
            self._frame = self._frame.loc[~mask].reset_index(drop=True)
        return True
