r"""forecast_backend\app\services\fingerprint_service.py

Content fingerprints used to detect dataset changes cheaply.

``global_fingerprint`` digests the whole observation set and is insensitive
to record order.  ``sku_data_hash`` only looks at the SKU's record count and
its most recent values, so edits to very old history do not force a
re-optimization.
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Iterable

import numpy as np
import pandas as pd

from ..models.schemas import DatasetFingerprint
from .observation_store import ObservationsLike, observations_frame


class FingerprintService:
    """Compute dataset and per-SKU digests."""

    RECENT_VALUES: int = 20
    VALUE_DECIMALS: int = 2

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sku_hash_computations = 0

    # ------------------------------------------------------------------
    def global_fingerprint(self, observations: ObservationsLike) -> DatasetFingerprint:
        frame = observations_frame(observations)
        skus = sorted(frame["sku"].unique().tolist())

        if frame.empty:
            row_digest = 0
            start = end = None
        else:
            # Sum of per-row hashes does not depend on row order.
            row_digest = int(pd.util.hash_pandas_object(frame, index=False).sum())
            start = frame["date"].min().date()
            end = frame["date"].max().date()

        payload = {
            "skus": skus,
            "records": int(len(frame)),
            "value_sum": round(float(frame["value"].sum()), 6),
            "rows": row_digest,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        }
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()

        return DatasetFingerprint(
            global_hash=digest[:32],
            sku_count=len(skus),
            total_records=int(len(frame)),
            date_range_start=start,
            date_range_end=end,
        )

    # ------------------------------------------------------------------
    def sku_data_hash(self, values: Iterable[float]) -> str:
        """Hash the record count and the most recent values of one SKU.

        ``values`` must already be in date order.
        """

        series = np.asarray(list(values), dtype=float)
        recent = np.round(series[-self.RECENT_VALUES :], self.VALUE_DECIMALS)
        average = round(float(recent.mean()), self.VALUE_DECIMALS) if len(recent) else 0.0
        text = f"{len(series)}|{average}|" + ",".join(f"{v:.{self.VALUE_DECIMALS}f}" for v in recent)

        with self._lock:
            self.sku_hash_computations += 1
        return hashlib.sha1(text.encode("utf-8")).hexdigest()[:20]
