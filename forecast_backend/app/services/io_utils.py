r"""forecast_backend\app\services\io_utils.py

File helpers shared by the observation loaders."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pandas as pd


def prefer_parquet(
    csv_path: str | Path,
    parquet_path: Optional[str | Path] = None,
    **csv_kwargs: Any,
) -> pd.DataFrame:
    """Load a dataset preferring Parquet with CSV fallback.

    Parameters
    ----------
    csv_path:
        Location of the canonical CSV file.
    parquet_path:
        Optional explicit Parquet path. When omitted we look for ``<csv>.parquet``.
    csv_kwargs:
        Additional keyword arguments forwarded to :func:`pandas.read_csv`.

    Raises
    ------
    FileNotFoundError
        When neither file exists.
    """

    csv_path = Path(csv_path)
    pq_path = Path(parquet_path) if parquet_path is not None else csv_path.with_suffix(".parquet")

    if pq_path.exists():
        return pd.read_parquet(pq_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"No observation file found at {csv_path} or {pq_path}")
    return pd.read_csv(csv_path, **csv_kwargs)


def normalise_columns(frame: pd.DataFrame) -> pd.DataFrame:
    """Return ``frame`` with stripped, lower-cased column names."""

    renamed = frame.copy()
    renamed.columns = [str(col).strip().lower() for col in renamed.columns]
    return renamed
