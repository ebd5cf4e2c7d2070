r"""forecast_backend\app\services\orchestrator.py

Asynchronous optimization orchestrator.

Work is exchanged as immutable envelopes: an :class:`OptimizationJob` goes
into an isolated worker (a process or thread for grid search, a thread for
the advisory call) and a :class:`JobEnvelope` carrying either a result or an
error comes back.  Workers share no mutable state.  ``reduce`` is the only
place that touches the cache; it runs on the event loop for whichever job
finishes first.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..core.config import get_settings
from ..core.errors import AdvisoryUnavailableError, ForecastEngineError
from ..core.observability import OPTIMIZATION_JOBS
from ..models.schemas import (
    AdvisoryRequest,
    BusinessContext,
    ModelConfig,
    OptimizationRunSummary,
    PendingOptimization,
)
from .advisory_service import AdvisoryOptimizer
from .grid_search import GridSearchOptimizer
from .model_registry import ModelRegistry, get_registry
from .observation_store import ObservationStore
from .optimization_cache import OptimizationCache
from .optimization_queue import OptimizationQueue

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizationJob:
    sku: str
    model_id: str
    method: str  # "grid" or "ai"
    data_hash: str
    values: tuple[float, ...]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    seasonal_period: int | None = None
    business_context: Mapping[str, Any] | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class JobEnvelope:
    job: OptimizationJob
    result: Mapping[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


def _failure(job: OptimizationJob, exc: BaseException) -> JobEnvelope:
    return JobEnvelope(job=job, error=str(exc), error_type=type(exc).__name__)


# ---------------------------------------------------------------------------
# Worker entry points (module level so process pools can pickle them)


def run_grid_job(job: OptimizationJob, optimizer: GridSearchOptimizer | None = None) -> JobEnvelope:
    optimizer = optimizer or GridSearchOptimizer()
    try:
        outcome = optimizer.optimize(job.model_id, job.values, job.seasonal_period)
    except (ForecastEngineError, ValueError) as exc:
        return _failure(job, exc)
    return JobEnvelope(
        job=job,
        result={
            "parameters": outcome.parameters,
            "accuracy": outcome.accuracy,
            "confidence": outcome.confidence,
            "reasoning": outcome.reasoning,
            "expected_accuracy": outcome.expected_accuracy,
            "factors": outcome.factors,
        },
    )


def run_advisory_job(job: OptimizationJob, advisory: AdvisoryOptimizer) -> JobEnvelope:
    request = AdvisoryRequest(
        model_id=job.model_id,
        historical_values=list(job.values),
        current_parameters=dict(job.parameters),
        seasonal_period=job.seasonal_period,
        business_context=BusinessContext.model_validate(job.business_context or {}),
    )
    try:
        recommendation = advisory.recommend(request)
    except AdvisoryUnavailableError as exc:
        return _failure(job, exc)
    return JobEnvelope(
        job=job,
        result={
            "parameters": recommendation.optimized_parameters,
            "confidence": recommendation.confidence,
            "reasoning": recommendation.reasoning,
            "expected_accuracy": recommendation.expected_accuracy,
            "factors": recommendation.factors,
        },
    )


# ---------------------------------------------------------------------------
# Orchestrator


class OptimizationOrchestrator:
    """Drain the optimization queue and merge job results into the cache."""

    def __init__(
        self,
        store: ObservationStore,
        cache: OptimizationCache,
        queue: OptimizationQueue,
        advisory: AdvisoryOptimizer | None = None,
        registry: ModelRegistry | None = None,
        model_configs: Sequence[ModelConfig] | None = None,
        seasonal_period: int | None = None,
        business_context: BusinessContext | None = None,
        executor: Executor | None = None,
        max_concurrent_skus: int | None = None,
        advisory_failure_threshold: int | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.cache = cache
        self.queue = queue
        self.advisory = advisory
        self.registry = registry or get_registry()
        self.model_configs = list(model_configs or self.registry.default_model_configs())
        self.seasonal_period = seasonal_period or settings.default_seasonal_period
        self.business_context = business_context or BusinessContext()
        self.max_concurrent_skus = max(1, int(max_concurrent_skus or settings.max_concurrent_skus))
        self.advisory_failure_threshold = int(
            advisory_failure_threshold
            if advisory_failure_threshold is not None
            else settings.advisory_failure_threshold
        )
        self._executor = executor
        self._owns_executor = executor is None
        self._advisory_failures = 0
        self._advisory_suspended = False

    # ------------------------------------------------------------------
    @property
    def cache_version(self) -> int:
        return self.cache.version

    def _get_executor(self) -> Executor:
        if self._executor is None:
            settings = get_settings()
            workers = max(1, settings.grid_workers)
            if settings.use_process_pool:
                self._executor = ProcessPoolExecutor(max_workers=workers)
            else:
                self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grid")
        return self._executor

    def close(self) -> None:
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=True)
            self._executor = None

    # ------------------------------------------------------------------
    def advisory_active(self) -> bool:
        return (
            self.advisory is not None
            and not self._advisory_suspended
            and self.advisory.is_available()
        )

    def _config_for(self, model_id: str) -> ModelConfig:
        for config in self.model_configs:
            if config.model_id == model_id:
                return config
        return ModelConfig(model_id=model_id)

    def build_jobs(self, pending: PendingOptimization, values: Sequence[float]) -> list[OptimizationJob]:
        """Return the grid (and, when active, advisory) jobs for ``pending``."""

        jobs: list[OptimizationJob] = []
        with_advisory = self.advisory_active()
        for model_id in pending.models:
            descriptor = self.registry.describe(model_id)
            required = descriptor.min_observations(self.seasonal_period)
            if len(values) < required:
                LOGGER.info(
                    "Skipping %s for SKU %s: need at least %s observations", model_id, pending.sku, required
                )
                continue
            parameters = self.registry.resolve_parameters(model_id, self._config_for(model_id).parameters)
            methods = ("grid", "ai") if with_advisory else ("grid",)
            for method in methods:
                jobs.append(
                    OptimizationJob(
                        sku=pending.sku,
                        model_id=model_id,
                        method=method,
                        data_hash=pending.data_hash,
                        values=tuple(float(v) for v in values),
                        parameters=parameters,
                        seasonal_period=self.seasonal_period,
                        business_context=self.business_context.model_dump(),
                    )
                )
        return jobs

    # ------------------------------------------------------------------
    async def dispatch(self, job: OptimizationJob) -> JobEnvelope:
        """Run ``job`` off the event loop and return its envelope."""

        try:
            if job.method == "grid":
                executor = self._get_executor()
                # Process workers build their own optimizer from the default registry.
                optimizer = None if isinstance(executor, ProcessPoolExecutor) else GridSearchOptimizer(self.registry)
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(executor, run_grid_job, job, optimizer)
            if self.advisory is None:
                raise AdvisoryUnavailableError("No advisory optimizer configured")
            return await asyncio.to_thread(run_advisory_job, job, self.advisory)
        except Exception as exc:
            LOGGER.exception("Optimization worker crashed for %s/%s (%s)", job.sku, job.model_id, job.method)
            return _failure(job, exc)

    # ------------------------------------------------------------------
    def reduce(self, envelope: JobEnvelope) -> bool:
        """Apply one envelope to the cache; returns whether a proposal was written."""

        job = envelope.job
        if not envelope.ok:
            OPTIMIZATION_JOBS.labels(job.method, "failed").inc()
            LOGGER.warning(
                "%s job for SKU %s model %s failed: %s",
                job.method,
                job.sku,
                job.model_id,
                envelope.error,
            )
            if job.method == "ai":
                self._advisory_failures += 1
                if (
                    self.advisory_failure_threshold > 0
                    and self._advisory_failures >= self.advisory_failure_threshold
                    and not self._advisory_suspended
                ):
                    self._advisory_suspended = True
                    LOGGER.warning(
                        "Advisory optimizer disabled for this run after %s consecutive failures",
                        self._advisory_failures,
                    )
            return False

        if job.method == "ai":
            self._advisory_failures = 0
        result = envelope.result
        self.cache.set_proposal(
            job.sku,
            job.model_id,
            job.method,
            result["parameters"],
            job.data_hash,
            meta=result,
        )
        OPTIMIZATION_JOBS.labels(job.method, "succeeded").inc()
        return True

    # ------------------------------------------------------------------
    async def _process_sku(
        self,
        sku: str,
        pending: PendingOptimization | None,
        values: Sequence[float],
        summary: OptimizationRunSummary,
    ) -> bool:
        """Run the jobs for one SKU; returns False when no jobs could be built."""

        if pending is None:
            LOGGER.info("SKU %s has no pending models", sku)
            return True

        try:
            jobs = self.build_jobs(pending, values)
        except ForecastEngineError as exc:
            summary.failures.append(f"{sku}: {exc}")
            LOGGER.warning("Could not build optimization jobs for SKU %s: %s", sku, exc)
            return False

        tasks = [asyncio.ensure_future(self.dispatch(job)) for job in jobs]
        for completed in asyncio.as_completed(tasks):
            envelope = await completed
            if self.reduce(envelope):
                method = envelope.job.method
                summary.proposals_written[method] = summary.proposals_written.get(method, 0) + 1
            else:
                job = envelope.job
                summary.failures.append(f"{job.sku}/{job.model_id}/{job.method}: {envelope.error}")

        summary.processed_skus.append(sku)
        return True

    # ------------------------------------------------------------------
    def _outstanding(self, pending: PendingOptimization, observations: int) -> list[str]:
        """Pending models that another pass could still resolve.

        A stale explicit manual selection is never replaced by automated
        results, and a model needing more history than the SKU has is never
        dispatched, so neither keeps a SKU in the queue.
        """

        outstanding = []
        for model_id in pending.models:
            if self.registry.describe(model_id).min_observations(self.seasonal_period) > observations:
                continue
            entry = self.cache.snapshot(pending.sku, model_id)
            if entry is not None and entry.user_selected and entry.selected == "manual":
                continue
            outstanding.append(model_id)
        return outstanding

    # ------------------------------------------------------------------
    async def process_queue(self) -> OptimizationRunSummary:
        """Run one pass over every queued SKU.

        A SKU leaves the queue only when the data as it stands after the pass
        leaves nothing for it to optimize, and only if nobody enqueued it
        again while its jobs were running.
        """

        summary = OptimizationRunSummary()
        self._advisory_failures = 0
        self._advisory_suspended = False

        items = self.queue.peek()
        if not items:
            summary.cache_version = self.cache.version
            return summary

        frame = self.store.frame()
        pending = {item.sku: item for item in self.cache.needs_optimization(frame, self.model_configs)}
        semaphore = asyncio.Semaphore(self.max_concurrent_skus)
        unbuildable: set[str] = set()

        async def _bounded(sku: str) -> None:
            async with semaphore:
                values = frame.loc[frame["sku"] == sku, "value"].to_numpy()
                if not await self._process_sku(sku, pending.get(sku), values, summary):
                    unbuildable.add(sku)

        LOGGER.info("Optimizing %s queued SKUs (advisory=%s)", len(items), self.advisory_active())
        await asyncio.gather(*(_bounded(item.sku) for item in items))

        # Data may have changed while jobs were running; decide on the current frame.
        current = self.store.frame()
        counts = current.groupby("sku").size()
        remaining = {item.sku: item for item in self.cache.needs_optimization(current, self.model_configs)}
        for item in items:
            sku = item.sku
            left = remaining.get(sku)
            if sku not in unbuildable and left is not None:
                outstanding = self._outstanding(left, int(counts.get(sku, 0)))
                if outstanding:
                    LOGGER.info("SKU %s stays queued; models still pending: %s", sku, outstanding)
                    continue
                LOGGER.info("SKU %s has pending models no automated run can resolve: %s", sku, left.models)
            if not self.queue.remove_if_unchanged(sku, item.generation) and sku in self.queue:
                LOGGER.info("SKU %s was queued again during this run; keeping it", sku)

        summary.advisory_disabled = self._advisory_suspended
        summary.cache_version = self.cache.version
        return summary

    # ------------------------------------------------------------------
    def rebuild_queue(self, reason: str = "cache_invalid") -> int:
        """Enqueue every SKU the manifest reports as needing optimization."""

        pending = self.cache.needs_optimization(self.store.frame(), self.model_configs)
        return self.queue.rebuild(pending, reason)
