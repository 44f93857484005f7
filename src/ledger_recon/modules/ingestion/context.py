from __future__ import annotations

import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field


@dataclass(frozen=True)
class VendorResolution:
    clean_name: str
    is_recurring: bool
    fallback: bool = False
    source: str = "provider"  # provider | rule | fallback


@dataclass(frozen=True)
class CategoryResolution:
    name: str
    confidence: float
    fallback: bool = False
    source: str = "provider"  # provider | rule | fallback


CategoryKey = tuple[str, str]


@dataclass
class BatchStats:
    vendor_calls: int = 0
    vendor_fallbacks: int = 0
    vendor_rule_hits: int = 0
    category_calls: int = 0
    category_fallbacks: int = 0
    category_rule_hits: int = 0
    skipped: Counter[str] = field(default_factory=Counter)

    def as_dict(self) -> dict[str, object]:
        return {
            "vendor_calls": self.vendor_calls,
            "vendor_fallbacks": self.vendor_fallbacks,
            "vendor_rule_hits": self.vendor_rule_hits,
            "category_calls": self.category_calls,
            "category_fallbacks": self.category_fallbacks,
            "category_rule_hits": self.category_rule_hits,
            "skipped": dict(self.skipped),
        }


@dataclass
class BatchContext:
    """State owned by one ingestion run and passed through every stage.

    Nothing here outlives the run: a new document gets a new context.
    """

    organization_id: uuid.UUID
    document_id: uuid.UUID | None = None
    vendors: dict[str, VendorResolution] = field(default_factory=dict)
    categories: dict[CategoryKey, CategoryResolution] = field(default_factory=dict)
    stats: BatchStats = field(default_factory=BatchStats)
    failures: list[Exception] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def count(self, counter: str, n: int = 1) -> None:
        with self._lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + n)

    def record_failure(self, error: Exception) -> None:
        with self._lock:
            self.failures.append(error)

    def skip(self, reason: str) -> None:
        self.stats.skipped[reason] += 1

    @property
    def skipped_total(self) -> int:
        return sum(self.stats.skipped.values())
