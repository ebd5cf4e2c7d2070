r"""forecast_backend\app\services\forecast_engine.py

Library-level entry point wiring the store, cache, queue, orchestrator and
forecast generator together.

Upstream pipelines (upload, cleaning, import) call ``enqueue`` or the data
lifecycle helpers; presentation layers call ``generate`` and watch
``cache_version`` to know when to refresh ``snapshot`` results.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import Executor
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from ..core.config import Settings, get_settings, load_forecast_settings, resolve_seasonal_period
from ..models.schemas import (
    BusinessContext,
    CacheEntry,
    ForecastResult,
    ModelConfig,
    OptimizationRunSummary,
    PendingOptimization,
)
from .advisory_service import AdvisoryOptimizer
from .fingerprint_service import FingerprintService
from .forecast_generator import ForecastGenerator
from .model_registry import ModelRegistry, get_registry
from .observation_store import ObservationsLike, ObservationStore
from .optimization_cache import OptimizationCache, SelectionPolicy
from .optimization_queue import OptimizationQueue
from .orchestrator import OptimizationOrchestrator

LOGGER = logging.getLogger(__name__)

OBSERVATIONS_FILE = "observations.csv"
CACHE_SNAPSHOT_FILE = "optimization_cache.joblib"


class ForecastEngine:
    """Owns one cache, one queue and one observation store."""

    def __init__(
        self,
        store: ObservationStore | None = None,
        registry: ModelRegistry | None = None,
        cache: OptimizationCache | None = None,
        queue: OptimizationQueue | None = None,
        advisory: AdvisoryOptimizer | None = None,
        model_configs: Sequence[ModelConfig] | None = None,
        seasonal_period: int | None = None,
        business_context: BusinessContext | None = None,
        executor: Executor | None = None,
        max_concurrent_skus: int | None = None,
        snapshot_path: str | Path | None = None,
    ) -> None:
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else None
        self.registry = registry or get_registry()
        self.store = store if store is not None else ObservationStore()
        self.cache = cache if cache is not None else OptimizationCache(FingerprintService(), self.registry)
        self.queue = queue if queue is not None else OptimizationQueue()
        self.model_configs = list(model_configs or self.registry.default_model_configs())
        self.seasonal_period = seasonal_period or get_settings().default_seasonal_period
        self.generator = ForecastGenerator(self.cache, self.registry, self.seasonal_period)
        self.orchestrator = OptimizationOrchestrator(
            self.store,
            self.cache,
            self.queue,
            advisory=advisory,
            registry=self.registry,
            model_configs=self.model_configs,
            seasonal_period=self.seasonal_period,
            business_context=business_context,
            executor=executor,
            max_concurrent_skus=max_concurrent_skus,
        )

    # ------------------------------------------------------------------
    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "ForecastEngine":
        """Build an engine from environment settings and ``settings.yaml``."""

        settings = settings or get_settings()
        store_yaml = load_forecast_settings(settings.config_dir)
        seasonal_period = resolve_seasonal_period(store_yaml, settings.default_seasonal_period)
        business_context = BusinessContext.model_validate(store_yaml.get("business_context") or {})

        registry = overrides.pop("registry", None) or get_registry()
        store = overrides.pop("store", None)
        if store is None:
            path = os.path.join(settings.data_dir, OBSERVATIONS_FILE)
            parquet = os.path.splitext(path)[0] + ".parquet"
            if os.path.exists(path) or os.path.exists(parquet):
                store = ObservationStore.from_file(path)
            else:
                LOGGER.info("No observation file at %s; starting with an empty store", path)
                store = ObservationStore()

        snapshot_path = Path(settings.data_dir) / CACHE_SNAPSHOT_FILE
        cache = overrides.pop("cache", None)
        if cache is None:
            cache = OptimizationCache(
                FingerprintService(), registry, SelectionPolicy(settings.selection_policy)
            )
            if snapshot_path.exists():
                try:
                    cache.load_snapshot(snapshot_path, max_age_hours=settings.cache_expiry_hours)
                except ValueError as exc:
                    LOGGER.warning("Ignoring cache snapshot %s: %s", snapshot_path, exc)
        advisory = overrides.pop("advisory", None) or AdvisoryOptimizer(
            api_key=settings.gemini_api_key,
            model_name=settings.gemini_model,
            enabled=settings.advisory_enabled,
            registry=registry,
        )
        return cls(
            store=store,
            registry=registry,
            cache=cache,
            advisory=advisory,
            seasonal_period=seasonal_period,
            business_context=business_context,
            max_concurrent_skus=settings.max_concurrent_skus,
            snapshot_path=overrides.pop("snapshot_path", snapshot_path),
            **overrides,
        )

    # ------------------------------------------------------------------
    @property
    def cache_version(self) -> int:
        return self.cache.version

    def generate(self, sku: str, horizon: int = 12) -> list[ForecastResult]:
        return self.generator.generate(sku, self.store.frame(), self.model_configs, horizon)

    def snapshot(self, sku: str, model_id: str) -> CacheEntry | None:
        self.registry.describe(model_id)
        return self.cache.snapshot(sku, model_id)

    # ------------------------------------------------------------------
    def enqueue(self, skus: Iterable[str], reason: str) -> int:
        size = self.queue.enqueue_many(skus, reason)
        LOGGER.info("Queued SKUs for optimization (reason=%s, queue size=%s)", reason, size)
        return size

    def queue_size(self) -> int:
        return self.queue.size()

    def needs_optimization(self) -> list[PendingOptimization]:
        return self.cache.needs_optimization(self.store.frame(), self.model_configs)

    def rebuild_queue(self, reason: str = "cache_invalid") -> int:
        return self.orchestrator.rebuild_queue(reason)

    async def optimize(self) -> OptimizationRunSummary:
        return await self.orchestrator.process_queue()

    # ------------------------------------------------------------------
    def set_manual_parameters(self, sku: str, model_id: str, parameters: Mapping[str, Any]) -> CacheEntry:
        """Store validated manual parameters computed against the current data."""

        resolved = self.registry.resolve_parameters(model_id, parameters)
        series = self.store.series_for(sku)
        if series.empty:
            raise KeyError(f"SKU '{sku}' has no observations")
        data_hash = self.cache.fingerprints.sku_data_hash(series.to_numpy())
        return self.cache.set_proposal(
            sku, model_id, "manual", resolved, data_hash, meta={"reasoning": "Set manually"}
        )

    def select(self, sku: str, model_id: str, method: str) -> CacheEntry:
        self.registry.describe(model_id)
        return self.cache.select(sku, model_id, method)

    # ------------------------------------------------------------------
    def replace_observations(self, observations: ObservationsLike, reason: str = "import") -> int:
        """Swap in a new dataset; all cached proposals are discarded."""

        self.store.replace(observations)
        self.cache.clear()
        return self.enqueue(self.store.skus(), reason)

    def apply_cleaning(self, observations: ObservationsLike) -> int:
        """Replace values after a cleaning step; stale entries are re-queued, not deleted."""

        self.store.replace(observations)
        return self.rebuild_queue("cleaning")

    def remove_sku(self, sku: str) -> bool:
        removed = self.store.remove_sku(sku)
        self.cache.invalidate(sku)
        self.queue.remove(sku)
        return removed

    def close(self) -> None:
        """Stop the worker pool and persist the cache when a snapshot path is set."""

        self.orchestrator.close()
        if self.snapshot_path is not None:
            self.cache.dump_snapshot(self.snapshot_path)
            LOGGER.info("Saved optimization cache to %s", self.snapshot_path)


@lru_cache(maxsize=None)
def get_engine() -> ForecastEngine:
    """Return the engine shared by the API routes."""

    return ForecastEngine.from_settings()
