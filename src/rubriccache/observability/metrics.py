"""Prometheus metrics for the cache engine.

Collectors register in the default prometheus_client registry; the host
application exposes them on its own /metrics endpoint.

Provides:
- Cache store metrics (hits, misses, backend errors, latency)
- Invalidation metrics (namespace bumps, key deletes, master resets)
- Change detection and session reconcile outcomes

Usage:
    from rubriccache.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.cache_hits_total.labels(namespace="role_sheet").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import Counter, Histogram

from rubriccache.config import settings

logger = logging.getLogger(__name__)


class NoOpMetric:
    """No-op metric for when metrics are disabled."""

    def labels(self, **kwargs: Any) -> "NoOpMetric":
        """Return self for chaining."""
        return self

    def inc(self, amount: float = 1) -> None:
        """No-op."""
        pass

    def observe(self, value: float) -> None:
        """No-op."""
        pass


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Cache store
    cache_hits_total: Any = field(default_factory=NoOpMetric)
    cache_misses_total: Any = field(default_factory=NoOpMetric)
    cache_errors_total: Any = field(default_factory=NoOpMetric)
    cache_operation_duration_seconds: Any = field(default_factory=NoOpMetric)

    # Invalidation
    invalidations_total: Any = field(default_factory=NoOpMetric)

    # Change detection / session tracking
    source_checks_total: Any = field(default_factory=NoOpMetric)
    user_reconciles_total: Any = field(default_factory=NoOpMetric)

    # Internal state
    _initialized: bool = field(default=False, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self.cache_hits_total = Counter(
            "rubric_cache_hits_total",
            "Cache hits",
            ["namespace"],
        )

        self.cache_misses_total = Counter(
            "rubric_cache_misses_total",
            "Cache misses",
            ["namespace"],
        )

        self.cache_errors_total = Counter(
            "rubric_cache_errors_total",
            "Cache backend errors absorbed as misses",
            ["operation"],
        )

        self.cache_operation_duration_seconds = Histogram(
            "rubric_cache_operation_duration_seconds",
            "Cache operation latency in seconds",
            ["operation"],
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1),
        )

        self.invalidations_total = Counter(
            "rubric_cache_invalidations_total",
            "Cache invalidations by kind",
            ["kind"],
        )

        self.source_checks_total = Counter(
            "rubric_source_checks_total",
            "Backing-store snapshot checks",
            ["source", "changed"],
        )

        self.user_reconciles_total = Counter(
            "rubric_user_reconciles_total",
            "Session state reconciles by outcome",
            ["outcome"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry
