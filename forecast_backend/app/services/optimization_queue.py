r"""forecast_backend\app\services\optimization_queue.py

Backlog of SKUs awaiting optimization.

Enqueueing a SKU that is already waiting does not add a second item; the new
reason is appended to the existing one.  The queue is in-memory only and can
always be rebuilt from the cache manifest.
"""

from __future__ import annotations

import itertools
import threading
from collections import OrderedDict
from typing import Iterable

from ..models.schemas import OptimizationQueueItem, PendingOptimization


class OptimizationQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: "OrderedDict[str, OptimizationQueueItem]" = OrderedDict()
        self._generations = itertools.count(1)

    def enqueue(self, sku: str, reason: str) -> OptimizationQueueItem:
        with self._lock:
            item = self._items.get(sku)
            if item is None:
                item = OptimizationQueueItem(sku=sku, reason=reason, reasons=[reason])
                self._items[sku] = item
            else:
                if reason not in item.reasons:
                    item.reasons.append(reason)
                item.reason = reason
            item.generation = next(self._generations)
            return item.model_copy(deep=True)

    def enqueue_many(self, skus: Iterable[str], reason: str) -> int:
        for sku in skus:
            self.enqueue(sku, reason)
        return self.size()

    def dequeue_all(self) -> list[OptimizationQueueItem]:
        with self._lock:
            items = list(self._items.values())
            self._items.clear()
        return items

    def peek(self) -> list[OptimizationQueueItem]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items.values()]

    def remove(self, sku: str) -> bool:
        with self._lock:
            return self._items.pop(sku, None) is not None

    def remove_if_unchanged(self, sku: str, generation: int) -> bool:
        """Remove ``sku`` unless it was enqueued again after ``generation`` was read."""

        with self._lock:
            item = self._items.get(sku)
            if item is None or item.generation != generation:
                return False
            del self._items[sku]
            return True

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, sku: object) -> bool:
        with self._lock:
            return sku in self._items

    def rebuild(self, pending: Iterable[PendingOptimization], reason: str = "cache_invalid") -> int:
        """Enqueue every SKU that still has pending models."""

        for item in pending:
            if item.models:
                self.enqueue(item.sku, reason)
        return self.size()
