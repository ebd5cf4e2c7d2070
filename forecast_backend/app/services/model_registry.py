r"""forecast_backend\app\services\model_registry.py

Model registry.

Maps a model id to an immutable :class:`ModelDescriptor` (parameter schema,
seasonal flag, optimization grid and minimum-observation rule) and builds
trained-ready model instances from it.  Adding a model means adding a
``ModelKind`` member, its class and one descriptor below.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from numbers import Real
from typing import Any, Callable, Mapping, Sequence

from ..core.errors import InvalidParametersError, UnknownModelError
from ..models.schemas import ModelConfig
from .arima_adapter import ArimaEstimator, ArimaModel, SarimaModel
from .forecast_models import (
    ForecastModel,
    HoltLinearTrend,
    HoltWinters,
    LinearTrend,
    ModelKind,
    MovingAverage,
    SeasonalMovingAverage,
    SeasonalNaive,
    SimpleExponentialSmoothing,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ParameterDef:
    """Schema of a single model parameter."""

    name: str
    kind: str  # "float", "int", "choice" or "bool"
    default: Any
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    description: str = ""

    def check(self, value: Any) -> str | None:
        """Return a description of what is wrong with ``value`` or ``None``."""

        if self.kind == "bool":
            return None if isinstance(value, bool) else f"{self.name} must be a boolean"
        if self.kind == "choice":
            return None if value in self.choices else f"{self.name} must be one of {list(self.choices)}"
        if isinstance(value, bool) or not isinstance(value, Real):
            return f"{self.name} must be numeric"
        if not math.isfinite(value):
            return f"{self.name} must be finite"
        if self.kind == "int" and float(value) != int(value):
            return f"{self.name} must be an integer"
        if self.minimum is not None and value < self.minimum:
            return f"{self.name} must be >= {self.minimum}"
        if self.maximum is not None and value > self.maximum:
            return f"{self.name} must be <= {self.maximum}"
        return None

    def coerce(self, value: Any) -> Any:
        if self.kind == "int":
            return int(value)
        if self.kind == "float":
            return float(value)
        return value

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "type": self.kind, "default": self.default}
        if self.minimum is not None:
            payload["min"] = self.minimum
        if self.maximum is not None:
            payload["max"] = self.maximum
        if self.choices:
            payload["choices"] = list(self.choices)
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    model_id: str
    display_name: str
    factory: Callable[..., ForecastModel]
    parameter_defs: tuple[ParameterDef, ...] = ()
    is_seasonal: bool = False
    min_observations_rule: Callable[[int], int] = lambda s: 2
    grid_rule: Callable[[int], list[dict[str, Any]]] = field(default=lambda s: [])
    description: str = ""

    @property
    def optimizable(self) -> bool:
        return bool(self.parameter_defs)

    def min_observations(self, seasonal_period: int | None = None) -> int:
        return int(self.min_observations_rule(int(seasonal_period or 0)))

    def optimization_grid(self, seasonal_period: int | None = None) -> list[dict[str, Any]]:
        return [dict(candidate) for candidate in self.grid_rule(int(seasonal_period or 0))]

    def defaults(self) -> dict[str, Any]:
        return {definition.name: definition.default for definition in self.parameter_defs}

    def as_dict(self, seasonal_period: int | None = None) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "display_name": self.display_name,
            "description": self.description,
            "is_seasonal": self.is_seasonal,
            "optimizable": self.optimizable,
            "min_observations": self.min_observations(seasonal_period),
            "parameters": [definition.as_dict() for definition in self.parameter_defs],
        }


# ---------------------------------------------------------------------------
# Parameter schemas and grids


def _smoothing(name: str, default: float, description: str) -> ParameterDef:
    return ParameterDef(name, "float", default, 0.01, 0.99, description=description)


def _product(**axes: Sequence[Any]) -> list[dict[str, Any]]:
    names = list(axes)
    return [dict(zip(names, values)) for values in itertools.product(*axes.values())]


def _steps(start: float, stop: float, step: float) -> list[float]:
    count = int(round((stop - start) / step)) + 1
    return [round(start + i * step, 2) for i in range(count)]


_ARIMA_GRID: tuple[dict[str, Any], ...] = (
    {"p": 1, "d": 1, "q": 1, "auto": True},
    {"p": 1, "d": 1, "q": 1, "auto": False},
    {"p": 2, "d": 1, "q": 2, "auto": False},
    {"p": 1, "d": 0, "q": 1, "auto": False},
    {"p": 2, "d": 0, "q": 2, "auto": False},
    {"p": 0, "d": 1, "q": 1, "auto": False},
    {"p": 1, "d": 1, "q": 0, "auto": False},
)

_SARIMA_GRID: tuple[dict[str, Any], ...] = (
    {"p": 1, "d": 1, "q": 1, "P": 1, "D": 0, "Q": 0, "auto": False},
    {"p": 0, "d": 1, "q": 1, "P": 0, "D": 1, "Q": 1, "auto": False},
    {"p": 1, "d": 1, "q": 0, "P": 1, "D": 0, "Q": 0, "auto": False},
    {"p": 1, "d": 0, "q": 1, "P": 0, "D": 1, "Q": 1, "auto": False},
    {"p": 1, "d": 1, "q": 1, "P": 1, "D": 1, "Q": 0, "auto": False},
)

_SMOOTHING_LEVELS = [0.1, 0.2, 0.3, 0.4, 0.5]


def _default_descriptors() -> list[ModelDescriptor]:
    return [
        ModelDescriptor(
            ModelKind.SES.value,
            "Simple Exponential Smoothing",
            SimpleExponentialSmoothing,
            (_smoothing("alpha", 0.3, "Level smoothing constant"),),
            grid_rule=lambda s: _product(alpha=_steps(0.05, 0.95, 0.05)),
            description="Flat forecast from an exponentially weighted level.",
        ),
        ModelDescriptor(
            ModelKind.HOLT_LINEAR.value,
            "Holt Linear Trend",
            HoltLinearTrend,
            (
                _smoothing("alpha", 0.3, "Level smoothing constant"),
                _smoothing("beta", 0.1, "Trend smoothing constant"),
            ),
            grid_rule=lambda s: _product(
                alpha=_steps(0.1, 0.9, 0.1), beta=_steps(0.05, 0.4, 0.05)
            ),
            description="Level plus linear trend.",
        ),
        ModelDescriptor(
            ModelKind.MOVING_AVERAGE.value,
            "Moving Average",
            MovingAverage,
            (ParameterDef("window", "int", 3, 2, 50, description="Number of trailing values"),),
            grid_rule=lambda s: _product(window=[2, 3, 4, 5, 6, 7, 8, 9, 10, 12, 15, 20]),
            description="Recursive mean of the last k values.",
        ),
        ModelDescriptor(
            ModelKind.HOLT_WINTERS.value,
            "Holt-Winters",
            HoltWinters,
            (
                _smoothing("alpha", 0.3, "Level smoothing constant"),
                _smoothing("beta", 0.1, "Trend smoothing constant"),
                _smoothing("gamma", 0.1, "Seasonal smoothing constant"),
                ParameterDef(
                    "type",
                    "choice",
                    "additive",
                    choices=("additive", "multiplicative"),
                    description="Seasonality form",
                ),
            ),
            is_seasonal=True,
            min_observations_rule=lambda s: 2 * s,
            grid_rule=lambda s: _product(
                alpha=_SMOOTHING_LEVELS,
                beta=_SMOOTHING_LEVELS,
                gamma=_SMOOTHING_LEVELS,
                type=["additive", "multiplicative"],
            ),
            description="Level, trend and seasonal smoothing.",
        ),
        ModelDescriptor(
            ModelKind.SEASONAL_NAIVE.value,
            "Seasonal Naive",
            SeasonalNaive,
            is_seasonal=True,
            min_observations_rule=lambda s: s,
            description="Repeats the last observed season.",
        ),
        ModelDescriptor(
            ModelKind.SEASONAL_MOVING_AVERAGE.value,
            "Seasonal Moving Average",
            SeasonalMovingAverage,
            (ParameterDef("window", "int", 3, 2, 20, description="Number of trailing values"),),
            is_seasonal=True,
            min_observations_rule=lambda s: s,
            grid_rule=lambda s: _product(window=[2, 3, 4]),
            description="Moving average on the deseasonalised series.",
        ),
        ModelDescriptor(
            ModelKind.LINEAR_TREND.value,
            "Linear Trend",
            LinearTrend,
            description="Least-squares line through the history.",
        ),
        ModelDescriptor(
            ModelKind.ARIMA.value,
            "ARIMA",
            ArimaModel,
            (
                ParameterDef("p", "int", 1, 0, 5, description="Autoregressive order"),
                ParameterDef("d", "int", 1, 0, 2, description="Differencing order"),
                ParameterDef("q", "int", 1, 0, 5, description="Moving-average order"),
                ParameterDef("auto", "bool", True, description="Select the order by AIC"),
            ),
            min_observations_rule=lambda s: ArimaModel.MIN_OBSERVATIONS,
            grid_rule=lambda s: list(_ARIMA_GRID),
            description="Autoregressive integrated moving average.",
        ),
        ModelDescriptor(
            ModelKind.SARIMA.value,
            "SARIMA",
            SarimaModel,
            (
                ParameterDef("p", "int", 1, 0, 3, description="Autoregressive order"),
                ParameterDef("d", "int", 1, 0, 1, description="Differencing order"),
                ParameterDef("q", "int", 1, 0, 3, description="Moving-average order"),
                ParameterDef("P", "int", 1, 0, 2, description="Seasonal autoregressive order"),
                ParameterDef("D", "int", 0, 0, 1, description="Seasonal differencing order"),
                ParameterDef("Q", "int", 0, 0, 2, description="Seasonal moving-average order"),
                ParameterDef("auto", "bool", False, description="Select the order by AIC"),
            ),
            is_seasonal=True,
            min_observations_rule=lambda s: SarimaModel.MIN_SEASONS * s,
            grid_rule=lambda s: list(_SARIMA_GRID),
            description="Seasonal ARIMA.",
        ),
    ]


# ---------------------------------------------------------------------------
# Registry


class ModelRegistry:
    """Lookup and construction of forecasting models by id."""

    def __init__(
        self,
        descriptors: Sequence[ModelDescriptor] | None = None,
        arima_estimator: ArimaEstimator | None = None,
    ) -> None:
        self._descriptors: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors if descriptors is not None else _default_descriptors():
            self.register(descriptor)
        self.arima_estimator = arima_estimator

    def register(self, descriptor: ModelDescriptor) -> None:
        self._descriptors[descriptor.model_id] = descriptor

    # ------------------------------------------------------------------
    def model_ids(self) -> list[str]:
        return list(self._descriptors)

    def descriptors(self) -> list[ModelDescriptor]:
        return list(self._descriptors.values())

    def describe(self, model_id: str) -> ModelDescriptor:
        try:
            return self._descriptors[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    # ------------------------------------------------------------------
    def validate_parameters(self, model_id: str, parameters: Mapping[str, Any]) -> list[str]:
        """Return every schema violation in ``parameters`` (empty when valid)."""

        descriptor = self.describe(model_id)
        definitions = {definition.name: definition for definition in descriptor.parameter_defs}
        issues = [f"unknown parameter '{name}'" for name in parameters if name not in definitions]
        for name, value in parameters.items():
            definition = definitions.get(name)
            if definition is None:
                continue
            problem = definition.check(value)
            if problem:
                issues.append(problem)
        return issues

    def resolve_parameters(
        self, model_id: str, overrides: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Merge ``overrides`` over the defaults and validate the result."""

        descriptor = self.describe(model_id)
        merged = descriptor.defaults()
        merged.update(overrides or {})
        issues = self.validate_parameters(model_id, merged)
        if issues:
            raise InvalidParametersError(model_id, issues)
        definitions = {definition.name: definition for definition in descriptor.parameter_defs}
        return {name: definitions[name].coerce(value) for name, value in merged.items()}

    def sanitize_parameters(
        self,
        model_id: str,
        proposed: Mapping[str, Any],
        base: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Clamp externally proposed parameters into the schema.

        Unknown names and values that cannot be interpreted are dropped; the
        remaining values are merged over ``base`` (or the defaults).
        """

        descriptor = self.describe(model_id)
        result = descriptor.defaults()
        result.update(base or {})
        for definition in descriptor.parameter_defs:
            if definition.name not in proposed:
                continue
            value = proposed[definition.name]
            if definition.kind == "bool":
                if isinstance(value, bool):
                    result[definition.name] = value
                continue
            if definition.kind == "choice":
                if value in definition.choices:
                    result[definition.name] = value
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = math.nan
            if isinstance(value, bool) or not math.isfinite(number):
                LOGGER.debug("Dropping non-numeric %s=%r for %s", definition.name, value, model_id)
                continue
            if definition.minimum is not None:
                number = max(definition.minimum, number)
            if definition.maximum is not None:
                number = min(definition.maximum, number)
            result[definition.name] = int(round(number)) if definition.kind == "int" else number
        return result

    # ------------------------------------------------------------------
    def instantiate(
        self,
        model_id: str,
        parameters: Mapping[str, Any] | None = None,
        seasonal_period: int | None = None,
        **options: Any,
    ) -> ForecastModel:
        """Build an untrained model instance from validated parameters."""

        descriptor = self.describe(model_id)
        resolved = self.resolve_parameters(model_id, parameters)
        if isinstance(descriptor.factory, type) and issubclass(descriptor.factory, ArimaModel):
            options.setdefault("estimator", self.arima_estimator)
        return descriptor.factory(
            resolved,
            seasonal_period=seasonal_period,
            min_observations=descriptor.min_observations(seasonal_period),
            **options,
        )

    # ------------------------------------------------------------------
    def default_model_configs(self) -> list[ModelConfig]:
        return [
            ModelConfig(model_id=descriptor.model_id, enabled=True, parameters=descriptor.defaults())
            for descriptor in self.descriptors()
        ]


@lru_cache(maxsize=None)
def get_registry() -> ModelRegistry:
    """Return the process-wide registry of built-in models."""

    return ModelRegistry()
