r"""forecast_backend\app\services\optimization_cache.py

Parameter cache for (SKU, model) pairs and its derived manifest.

Each pair holds up to one manual, one grid and one advisory proposal plus a
``selected`` pointer.  Entries are immutable pydantic records replaced
atomically under a lock, so readers only ever see complete entries.  Every
mutation bumps ``version`` for consumers that poll for changes.

The manifest records which pairs are valid for the last dataset fingerprint.
It is rebuilt only when the fingerprint (or the set of optimizable models)
changes; otherwise ``reconcile`` returns it untouched without hashing any SKU.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import joblib

from ..core.observability import CACHE_RECONCILES
from ..models.schemas import (
    METHODS,
    CacheEntry,
    CacheManifest,
    ModelConfig,
    ParameterProposal,
    PendingOptimization,
)
from .fingerprint_service import FingerprintService
from .model_registry import ModelRegistry, get_registry
from .observation_store import ObservationsLike, observations_frame

LOGGER = logging.getLogger(__name__)

MIN_SKU_OBSERVATIONS: int = 3
SNAPSHOT_FORMAT: int = 1

_PROPOSAL_META = ("confidence", "reasoning", "expected_accuracy", "factors", "timestamp")


class SelectionPolicy(str, Enum):
    """How an automated write picks ``selected`` when nobody chose explicitly."""

    PRIORITY = "priority"
    EXPECTED_ACCURACY = "expected_accuracy"


PRIORITY_ORDER: tuple[str, ...] = ("ai", "grid", "manual")


def choose_selection(
    entry: CacheEntry,
    policy: SelectionPolicy = SelectionPolicy.PRIORITY,
    fresh_hash: str | None = None,
) -> str | None:
    """Return the method ``entry`` should select under ``policy``.

    When ``fresh_hash`` is given, proposals computed on that data hash are
    preferred over older ones.
    """

    available = [method for method in PRIORITY_ORDER if entry.proposal(method) is not None]
    if fresh_hash is not None:
        fresh = [m for m in available if entry.proposal(m).data_hash == fresh_hash]
        available = fresh or available
    if not available:
        return None
    if policy == SelectionPolicy.EXPECTED_ACCURACY:
        def _score(method: str) -> tuple[float, int]:
            expected = entry.proposal(method).expected_accuracy
            return (expected if expected is not None else float("-inf"), -PRIORITY_ORDER.index(method))

        return max(available, key=_score)
    return available[0]


class OptimizationCache:
    """Explicitly owned store of parameter proposals."""

    def __init__(
        self,
        fingerprints: FingerprintService | None = None,
        registry: ModelRegistry | None = None,
        policy: SelectionPolicy | str = SelectionPolicy.PRIORITY,
    ) -> None:
        self.fingerprints = fingerprints or FingerprintService()
        self.registry = registry or get_registry()
        self.policy = SelectionPolicy(policy)
        self._lock = threading.RLock()
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._manifest = CacheManifest()
        self._version = 0
        self.stats: dict[str, int] = {"hits": 0, "misses": 0, "reconciles": 0, "rebuilds": 0}

    # ------------------------------------------------------------------
    @property
    def version(self) -> int:
        return self._version

    @property
    def manifest(self) -> CacheManifest:
        return self._manifest

    def __len__(self) -> int:
        return len(self._entries)

    def _bump(self) -> None:
        self._version += 1

    # ------------------------------------------------------------------
    def snapshot(self, sku: str, model_id: str) -> CacheEntry | None:
        return self._entries.get((sku, model_id))

    def entries_for(self, sku: str) -> list[CacheEntry]:
        with self._lock:
            return [entry for (entry_sku, _), entry in self._entries.items() if entry_sku == sku]

    def get_proposal(self, sku: str, model_id: str, method: str) -> ParameterProposal | None:
        entry = self.snapshot(sku, model_id)
        return entry.proposal(method) if entry else None

    # ------------------------------------------------------------------
    def set_proposal(
        self,
        sku: str,
        model_id: str,
        method: str,
        parameters: Mapping[str, Any],
        data_hash: str,
        meta: Mapping[str, Any] | None = None,
    ) -> CacheEntry:
        """Overwrite the ``method`` slot of ``(sku, model_id)``.

        A manual write always becomes the explicit selection.  Automated
        writes re-run the selection policy only while no explicit selection
        exists, so they can never displace a person's choice.
        """

        if method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}")
        extras = {key: value for key, value in (meta or {}).items() if key in _PROPOSAL_META and value is not None}
        proposal = ParameterProposal(
            parameters=dict(parameters), data_hash=data_hash, method=method, **extras
        )

        with self._lock:
            current = self._entries.get((sku, model_id)) or CacheEntry(sku=sku, model_id=model_id)
            updates: dict[str, Any] = {method: proposal}
            if method == "manual":
                updates.update(selected="manual", user_selected=True)
            elif not current.user_selected:
                candidate = current.model_copy(update=updates)
                updates["selected"] = choose_selection(candidate, self.policy, data_hash)
            entry = current.model_copy(update=updates)
            self._entries[(sku, model_id)] = entry
            self._refresh_manifest_entry(entry)
            self._bump()

        LOGGER.debug("Stored %s proposal for %s/%s (selected=%s)", method, sku, model_id, entry.selected)
        return entry

    # ------------------------------------------------------------------
    def select(self, sku: str, model_id: str, method: str) -> CacheEntry:
        """Explicitly select an existing proposal for ``(sku, model_id)``."""

        with self._lock:
            current = self._entries.get((sku, model_id))
            if current is None or current.proposal(method) is None:
                raise KeyError(f"No {method} proposal cached for {sku}/{model_id}")
            entry = current.model_copy(update={"selected": method, "user_selected": True})
            self._entries[(sku, model_id)] = entry
            self._refresh_manifest_entry(entry)
            self._bump()
        return entry

    # ------------------------------------------------------------------
    def best_available_method(self, sku: str, model_id: str) -> str | None:
        entry = self.snapshot(sku, model_id)
        return choose_selection(entry, self.policy) if entry else None

    # ------------------------------------------------------------------
    @staticmethod
    def _entry_is_valid(entry: CacheEntry | None, data_hash: str) -> bool:
        if entry is None:
            return False
        selected = entry.selected_proposal()
        return selected is not None and selected.data_hash == data_hash

    def is_valid(self, sku: str, model_id: str, current_data_hash: str) -> bool:
        valid = self._entry_is_valid(self.snapshot(sku, model_id), current_data_hash)
        with self._lock:
            self.stats["hits" if valid else "misses"] += 1
        return valid

    # ------------------------------------------------------------------
    def invalidate(self, sku: str) -> int:
        """Delete every entry of ``sku``; returns how many were removed."""

        with self._lock:
            keys = [key for key in self._entries if key[0] == sku]
            for key in keys:
                del self._entries[key]
            prefix = f"{sku}:"
            manifest = self._manifest
            self._manifest = manifest.model_copy(
                update={
                    "valid_entries": frozenset(
                        item for item in manifest.valid_entries if not item.startswith(prefix)
                    )
                }
            )
            self._bump()
        LOGGER.info("Invalidated %s cached entries for SKU %s", len(keys), sku)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._manifest = CacheManifest()
            self._bump()

    # ------------------------------------------------------------------
    # Manifest

    def _optimizable_models(self, models: Iterable[ModelConfig | str] | None) -> tuple[str, ...]:
        if models is None:
            models = self.registry.model_ids()
        selected: set[str] = set()
        for model in models:
            if isinstance(model, ModelConfig):
                if not model.enabled:
                    continue
                model_id = model.model_id
            else:
                model_id = str(model)
            if self.registry.describe(model_id).optimizable:
                selected.add(model_id)
        return tuple(sorted(selected))

    def _refresh_manifest_entry(self, entry: CacheEntry) -> None:
        manifest = self._manifest
        data_hash = manifest.sku_hashes.get(entry.sku)
        if data_hash is None or entry.model_id not in manifest.models:
            return
        key = f"{entry.sku}:{entry.model_id}"
        if self._entry_is_valid(entry, data_hash):
            valid = manifest.valid_entries | {key}
        else:
            valid = manifest.valid_entries - {key}
        if valid != manifest.valid_entries:
            self._manifest = manifest.model_copy(update={"valid_entries": frozenset(valid)})

    # ------------------------------------------------------------------
    def reconcile(
        self,
        observations: ObservationsLike,
        models: Iterable[ModelConfig | str] | None = None,
    ) -> CacheManifest:
        """Bring the manifest in line with ``observations``.

        Returns the current manifest unchanged when neither the dataset
        fingerprint nor the optimizable model set changed.
        """

        frame = observations_frame(observations)
        fingerprint = self.fingerprints.global_fingerprint(frame)
        model_ids = self._optimizable_models(models)

        with self._lock:
            self.stats["reconciles"] += 1
            current = self._manifest
            if (
                current.dataset_fingerprint is not None
                and current.dataset_fingerprint.global_hash == fingerprint.global_hash
                and current.models == model_ids
            ):
                CACHE_RECONCILES.labels("unchanged").inc()
                return current

        sku_hashes: dict[str, str] = {}
        for sku, group in frame.groupby("sku", sort=True):
            if len(group) < MIN_SKU_OBSERVATIONS:
                continue
            sku_hashes[str(sku)] = self.fingerprints.sku_data_hash(group["value"].to_numpy())

        with self._lock:
            valid = frozenset(
                f"{sku}:{model_id}"
                for sku, data_hash in sku_hashes.items()
                for model_id in model_ids
                if self._entry_is_valid(self._entries.get((sku, model_id)), data_hash)
            )
            manifest = CacheManifest(
                dataset_fingerprint=fingerprint,
                valid_entries=valid,
                sku_hashes=sku_hashes,
                models=model_ids,
                last_validated=datetime.now(timezone.utc),
            )
            self._manifest = manifest
            self.stats["rebuilds"] += 1

        CACHE_RECONCILES.labels("rebuilt").inc()
        LOGGER.info(
            "Rebuilt cache manifest: %s SKUs, %s valid of %s pairs",
            len(sku_hashes),
            len(valid),
            len(sku_hashes) * len(model_ids),
        )
        return manifest

    # ------------------------------------------------------------------
    def needs_optimization(
        self,
        observations: ObservationsLike,
        models: Iterable[ModelConfig | str] | None = None,
    ) -> list[PendingOptimization]:
        """List every (SKU, model) pair without a valid selected proposal."""

        manifest = self.reconcile(observations, models)
        pending: list[PendingOptimization] = []
        for sku, data_hash in sorted(manifest.sku_hashes.items()):
            missing = [
                model_id
                for model_id in manifest.models
                if f"{sku}:{model_id}" not in manifest.valid_entries
            ]
            if missing:
                pending.append(PendingOptimization(sku=sku, data_hash=data_hash, models=missing))
        return pending

    # ------------------------------------------------------------------
    # Snapshots

    def dump_snapshot(self, path: str | Path) -> Path:
        """Persist every entry with joblib."""

        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            payload = {
                "format": SNAPSHOT_FORMAT,
                "entries": [entry.model_dump(mode="json") for entry in self._entries.values()],
            }
        joblib.dump(payload, target)
        return target

    def load_snapshot(self, path: str | Path, max_age_hours: float | None = None) -> int:
        """Merge entries from a snapshot, dropping proposals older than ``max_age_hours``."""

        payload = joblib.load(Path(path))
        if not isinstance(payload, dict) or payload.get("format") != SNAPSHOT_FORMAT:
            raise ValueError(f"Unsupported cache snapshot at {path}")

        cutoff = None
        if max_age_hours:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=float(max_age_hours))

        loaded = 0
        with self._lock:
            for raw in payload.get("entries", []):
                entry = CacheEntry.model_validate(raw)
                if cutoff is not None:
                    expired = {
                        method: None
                        for method in METHODS
                        if entry.proposal(method) is not None and entry.proposal(method).timestamp < cutoff
                    }
                    if expired:
                        entry = entry.model_copy(update=expired)
                if all(entry.proposal(method) is None for method in METHODS):
                    continue
                if entry.selected_proposal() is None:
                    entry = entry.model_copy(
                        update={"selected": choose_selection(entry, self.policy), "user_selected": False}
                    )
                self._entries[(entry.sku, entry.model_id)] = entry
                loaded += 1
            self._manifest = CacheManifest()
            self._bump()

        LOGGER.info("Loaded %s cached entries from %s", loaded, path)
        return loaded
