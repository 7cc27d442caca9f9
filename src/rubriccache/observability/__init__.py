"""Logging and metrics for the cache engine."""

from rubriccache.observability.logging import LogContext, configure_logging
from rubriccache.observability.metrics import get_metrics

__all__ = ["configure_logging", "LogContext", "get_metrics"]
