"""
Metrics Module: Diagnostics, counters, histograms.

- Counters: lateration_solves, robust_runs, radio_source_estimations, ...
- Failure reason codes: rank_deficient, not_converged, not_enough_inliers, ...
- Histograms: robust_iterations, robust_inlier_ratio, lateration_residual

Usage:
    from rsl_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('robust_runs')
    metrics.increment_failure('not_enough_inliers')
    metrics.record_histogram('robust_iterations', 17)
"""

from .counters import MetricsCollector, CounterSnapshot

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'get_metrics', 'reset_metrics']
