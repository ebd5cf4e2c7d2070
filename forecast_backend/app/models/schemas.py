r"""forecast_backend\app\models\schemas.py

Pydantic models used throughout the engine and the API.

These models serve as both request payload validators and the immutable
records exchanged between the cache, the orchestrator and the forecast
generator.  Records that live in shared state are frozen so a reader can
never observe a partially updated entry.
"""

from __future__ import annotations

from datetime import date as date_type
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Method = Literal["manual", "grid", "ai"]
ParameterSource = Literal["manual", "grid", "ai", "default"]

METHODS: tuple[str, ...] = ("manual", "grid", "ai")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Observation(BaseModel):
    """A single normalised ``{sku, date, value}`` record."""

    model_config = ConfigDict(frozen=True)

    sku: str
    date: date_type
    value: float = Field(..., ge=0, description="Observed demand, never negative")


class ModelConfig(BaseModel):
    """User-facing configuration of one model in the forecasting line-up."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    enabled: bool = True
    parameters: Dict[str, Any] = Field(
        default_factory=dict,
        description="Manual parameter overrides; registry defaults fill the rest",
    )


class ParameterProposal(BaseModel):
    """Parameters proposed for a (SKU, model) pair by one method."""

    model_config = ConfigDict(frozen=True)

    parameters: Dict[str, Any]
    data_hash: str = Field(..., description="Per-SKU data hash the proposal was computed on")
    method: Method
    timestamp: datetime = Field(default_factory=_utcnow)
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    expected_accuracy: Optional[float] = None
    factors: Optional[Dict[str, float]] = None


class CacheEntry(BaseModel):
    """Manual, grid and advisory proposals for one (SKU, model) pair."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    sku: str
    model_id: str
    manual: Optional[ParameterProposal] = None
    grid: Optional[ParameterProposal] = None
    ai: Optional[ParameterProposal] = None
    selected: Optional[Method] = None
    user_selected: bool = Field(
        False, description="True when the selection came from a person, not a job"
    )

    def proposal(self, method: str) -> Optional[ParameterProposal]:
        return getattr(self, method, None) if method in METHODS else None

    def selected_proposal(self) -> Optional[ParameterProposal]:
        return self.proposal(self.selected) if self.selected else None


class DatasetFingerprint(BaseModel):
    """Content digest of a full observation set."""

    model_config = ConfigDict(frozen=True)

    global_hash: str
    sku_count: int
    total_records: int
    date_range_start: Optional[date_type] = None
    date_range_end: Optional[date_type] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class CacheManifest(BaseModel):
    """Derived index of valid (SKU, model) pairs for the last seen dataset."""

    model_config = ConfigDict(frozen=True)

    dataset_fingerprint: Optional[DatasetFingerprint] = None
    valid_entries: FrozenSet[str] = frozenset()
    sku_hashes: Dict[str, str] = Field(default_factory=dict)
    models: tuple[str, ...] = ()
    last_validated: Optional[datetime] = None


class PendingOptimization(BaseModel):
    """Models of one SKU whose cached parameters are missing or stale."""

    sku: str
    data_hash: str
    models: List[str]


class OptimizationQueueItem(BaseModel):
    """A SKU waiting for optimization; repeated requests coalesce."""

    sku: str
    reason: str
    reasons: List[str] = Field(default_factory=list)
    enqueued_at: datetime = Field(default_factory=_utcnow)
    generation: int = Field(0, description="Bumped on every enqueue, including coalesced ones")


class ValidationMetrics(BaseModel):
    mape: float
    rmse: float
    mae: float
    accuracy: float
    predictions: List[float] = Field(default_factory=list)
    actual: List[float] = Field(default_factory=list)


class ForecastPoint(BaseModel):
    """A single point in a forecast."""

    date: date_type
    value: float = Field(..., description="Predicted value for the date")


class ForecastResult(BaseModel):
    """Forecast of one model for one SKU."""

    model_config = ConfigDict(protected_namespaces=())

    sku: str
    model_id: str
    model_name: str
    predictions: List[float] = Field(default_factory=list)
    forecast: List[ForecastPoint] = Field(default_factory=list)
    accuracy: float = 0.0
    mape: Optional[float] = None
    rmse: Optional[float] = None
    mae: Optional[float] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    parameter_source: ParameterSource = "default"
    error: Optional[str] = None


class GridSearchResult(BaseModel):
    """Outcome of a walk-forward grid search for one model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    parameters: Dict[str, Any]
    accuracy: float
    mape: Optional[float] = None
    confidence: float
    expected_accuracy: float
    reasoning: str
    factors: Dict[str, float] = Field(default_factory=dict)
    validation_method: Literal["walk-forward", "holdout", "fallback"] = "walk-forward"
    candidates_evaluated: int = 0
    candidates_failed: int = 0


class BusinessContext(BaseModel):
    """Planning context passed to the advisory optimizer."""

    cost_of_error: Literal["low", "medium", "high"] = "medium"
    planning_purpose: Literal["operational", "tactical", "strategic"] = "tactical"
    update_frequency: Literal["daily", "weekly", "monthly"] = "weekly"
    interpretability_needs: Literal["low", "medium", "high"] = "medium"


class AdvisoryRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    historical_values: List[float]
    current_parameters: Dict[str, Any] = Field(default_factory=dict)
    seasonal_period: Optional[int] = None
    target_metric: Literal["mape", "rmse", "mae"] = "mape"
    business_context: BusinessContext = Field(default_factory=BusinessContext)


class AdvisoryRecommendation(BaseModel):
    """Recommendation parsed from the advisory provider's JSON answer."""

    model_config = ConfigDict(populate_by_name=True)

    optimized_parameters: Dict[str, Any] = Field(..., alias="optimizedParameters")
    expected_accuracy: Optional[float] = Field(None, alias="expectedAccuracy")
    confidence: float = 75.0
    reasoning: str = ""
    factors: Dict[str, float] = Field(default_factory=dict)


class OptimizationRunSummary(BaseModel):
    """What a single orchestrator pass did."""

    processed_skus: List[str] = Field(default_factory=list)
    proposals_written: Dict[str, int] = Field(default_factory=lambda: {"grid": 0, "ai": 0})
    failures: List[str] = Field(default_factory=list)
    advisory_disabled: bool = False
    cache_version: int = 0


class ManualParametersUpdate(BaseModel):
    parameters: Dict[str, Any]


class SelectionUpdate(BaseModel):
    method: Method


class EnqueueRequest(BaseModel):
    skus: List[str] = Field(..., min_length=1)
    reason: str = "manual"


class ForecastResponse(BaseModel):
    """Forecasts of every enabled model for one SKU."""

    sku: str
    horizon: int
    cache_version: int
    results: List[ForecastResult]
