"""
LedgerMesh - Consolidation Cache Metrics

Prometheus counters and histogram observing the consolidated report cache.
All series are labelled by report type, group id and period.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY

logger = logging.getLogger(__name__)

METRIC_PREFIX = "ledgermesh_consol"
LABELS = ("report", "group", "period")


class ConsolidationCacheMetrics:
    """Cache hit/miss counters and view-model build durations."""
    
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY
        self.cache_hits = Counter(
            f"{METRIC_PREFIX}_cache_hits",
            "Number of cache hits for consolidated view models.",
            LABELS,
            registry=self.registry,
        )
        self.cache_misses = Counter(
            f"{METRIC_PREFIX}_cache_miss",
            "Number of cache misses for consolidated view models.",
            LABELS,
            registry=self.registry,
        )
        self.build_duration = Histogram(
            f"{METRIC_PREFIX}_vm_build_duration_seconds",
            "Duration required to build consolidated view models.",
            LABELS,
            registry=self.registry,
        )
    
    @staticmethod
    def _labels(report: str, group_id: int, period: str) -> dict:
        return {"report": report, "group": str(group_id), "period": period}
    
    def record_hit(self, report: str, group_id: int, period: str) -> None:
        self.cache_hits.labels(**self._labels(report, group_id, period)).inc()
    
    def record_miss(self, report: str, group_id: int, period: str) -> None:
        self.cache_misses.labels(**self._labels(report, group_id, period)).inc()
    
    def observe_build(self, report: str, group_id: int, period: str, seconds: float) -> None:
        self.build_duration.labels(**self._labels(report, group_id, period)).observe(seconds)
    
    def value(self, metric: str, report: str, group_id: int, period: str) -> float:
        """
        Current sample value, e.g. value("cache_hits_total", "pl", 1, "2024-01").
        Zero when the series has not been touched yet.
        """
        sample = self.registry.get_sample_value(
            f"{METRIC_PREFIX}_{metric}", self._labels(report, group_id, period)
        )
        return sample or 0.0


# Global metrics instance
_cache_metrics: Optional[ConsolidationCacheMetrics] = None


def get_cache_metrics() -> ConsolidationCacheMetrics:
    """Process-wide metrics registered on the default Prometheus registry."""
    global _cache_metrics
    if _cache_metrics is None:
        _cache_metrics = ConsolidationCacheMetrics()
    return _cache_metrics
