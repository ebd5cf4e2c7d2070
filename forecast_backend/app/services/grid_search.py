r"""forecast_backend\app\services\grid_search.py

Deterministic grid search over a model's registered parameter candidates.

Each candidate is scored with walk-forward validation: train on a prefix,
forecast the following ``test_size`` values, move the origin forward and
average the accuracy over all windows.  Short series fall back to a single
80/20 holdout split.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

from ..core.errors import ForecastEngineError, InsufficientDataError
from ..models.schemas import GridSearchResult
from .forecast_models import as_numeric_series
from .model_registry import ModelDescriptor, ModelRegistry, get_registry

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WalkForwardConfig:
    min_validation_size: int = 12
    test_size: int = 6
    max_steps: int = 5
    min_train_fraction: float = 0.3
    holdout_fraction: float = 0.2
    tie_tolerance: float = 0.5
    min_confidence: float = 60.0
    max_confidence: float = 95.0


def walk_forward_windows(
    n_obs: int, min_observations: int, config: WalkForwardConfig = WalkForwardConfig()
) -> list[tuple[int, int]]:
    """Return ``(train_end, test_end)`` index pairs for walk-forward validation."""

    min_train = max(
        config.min_validation_size - config.test_size,
        int(n_obs * config.min_train_fraction),
        min_observations,
    )
    steps = min(config.max_steps, max(0, (n_obs - min_train) // config.test_size))
    return [
        (min_train + step * config.test_size, min_train + (step + 1) * config.test_size)
        for step in range(steps)
    ]


def holdout_window(
    n_obs: int, min_observations: int, config: WalkForwardConfig = WalkForwardConfig()
) -> tuple[int, int] | None:
    test = max(1, int(round(n_obs * config.holdout_fraction)))
    train_end = n_obs - test
    if train_end < max(1, min_observations):
        return None
    return (train_end, n_obs)


def confidence_from_metrics(accuracy: float, mape: float, ceiling: float = 95.0) -> float:
    """Penalise accuracy by a fifth of the MAPE and clamp into ``[0, ceiling]``."""

    return float(min(ceiling, max(0.0, accuracy - 0.2 * mape)))


class GridSearchOptimizer:
    """Pick the best candidate parameters for one model and one series."""

    def __init__(
        self,
        registry: ModelRegistry | None = None,
        config: WalkForwardConfig | None = None,
    ) -> None:
        self.registry = registry or get_registry()
        self.config = config or WalkForwardConfig()

    # ------------------------------------------------------------------
    def score(
        self,
        model_id: str,
        parameters: dict[str, Any],
        values: np.ndarray,
        windows: Iterable[tuple[int, int]],
        seasonal_period: int | None = None,
    ) -> tuple[float, float]:
        """Return mean ``(accuracy, mape)`` of ``parameters`` over ``windows``."""

        accuracies: list[float] = []
        mapes: list[float] = []
        for train_end, test_end in windows:
            model = self.registry.instantiate(model_id, parameters, seasonal_period)
            model.train(values[:train_end])
            metrics = model.validate(values[train_end:test_end])
            accuracies.append(metrics.accuracy)
            mapes.append(metrics.mape)
        if not accuracies:
            raise ValueError("no validation windows to score")
        return float(np.mean(accuracies)), float(np.mean(mapes))

    # ------------------------------------------------------------------
    def _fallback(self, descriptor: ModelDescriptor, reason: str) -> GridSearchResult:
        return GridSearchResult(
            model_id=descriptor.model_id,
            parameters=descriptor.defaults(),
            accuracy=0.0,
            confidence=self.config.min_confidence,
            expected_accuracy=0.0,
            reasoning=f"Default parameters kept: {reason}.",
            validation_method="fallback",
        )

    # ------------------------------------------------------------------
    def optimize(
        self,
        model_id: str,
        series: Sequence[float],
        seasonal_period: int | None = None,
    ) -> GridSearchResult:
        descriptor = self.registry.describe(model_id)
        values = as_numeric_series(series)
        min_obs = descriptor.min_observations(seasonal_period)
        if len(values) < min_obs:
            raise InsufficientDataError(min_obs, len(values))

        windows = walk_forward_windows(len(values), min_obs, self.config)
        validation_method = "walk-forward"
        if not windows:
            single = holdout_window(len(values), min_obs, self.config)
            if single is None:
                return self._fallback(descriptor, "not enough history to hold out a validation window")
            windows = [single]
            validation_method = "holdout"

        candidates = descriptor.optimization_grid(seasonal_period) or [descriptor.defaults()]
        defaults = descriptor.defaults()

        best: tuple[float, float, dict[str, Any]] | None = None
        failed = 0
        for candidate in candidates:
            parameters = {**defaults, **candidate}
            try:
                accuracy, mape = self.score(model_id, parameters, values, windows, seasonal_period)
            except (ForecastEngineError, ValueError) as exc:
                failed += 1
                LOGGER.debug("Candidate %s for %s failed: %s", parameters, model_id, exc)
                continue

            if best is None:
                best = (accuracy, mape, parameters)
                continue
            # Grids run from the simplest candidate up; a later one has to win
            # by more than the tie tolerance.
            if accuracy > best[0] + self.config.tie_tolerance:
                best = (accuracy, mape, parameters)

        if best is None:
            return self._fallback(descriptor, f"all {len(candidates)} candidates failed")

        accuracy, mape, parameters = best
        evaluated = len(candidates) - failed
        confidence = max(
            self.config.min_confidence,
            confidence_from_metrics(accuracy, mape, self.config.max_confidence),
        )
        LOGGER.info(
            "Grid search for %s picked %s (accuracy=%.2f, %s windows, %s/%s candidates)",
            model_id,
            parameters,
            accuracy,
            len(windows),
            evaluated,
            len(candidates),
        )
        return GridSearchResult(
            model_id=model_id,
            parameters=parameters,
            accuracy=accuracy,
            mape=mape,
            confidence=confidence,
            expected_accuracy=accuracy,
            reasoning=(
                f"Grid search evaluated {evaluated} of {len(candidates)} configurations using "
                f"{validation_method} validation over {len(windows)} window(s); "
                f"best mean accuracy {accuracy:.1f}%."
            ),
            factors={
                "stability": 85.0,
                "interpretability": 90.0,
                "complexity": 45.0,
                "business_impact": round(accuracy, 1),
            },
            validation_method=validation_method,
            candidates_evaluated=evaluated,
            candidates_failed=failed,
        )
