"""
Solver run counters, failure reasons and histograms.

Tracks, thread-safely:
- Run attempts and successes per estimator family
- Failure reason codes (rank deficiency, non-convergence, no consensus...)
- Histograms of robust iterations, inlier ratios and lateration residuals

Every discarded robust candidate and every failed run is counted under a
reason code, so a summary shows where estimation effort goes.
"""

import logging
import statistics
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Attempt counter -> success counter for each estimator family
RUN_COUNTERS = {
    'lateration_solves': 'lateration_successes',
    'robust_runs': 'robust_successes',
    'radio_source_estimations': 'radio_source_successes',
}


def _percentile(sorted_samples: List[float], fraction: float) -> float:
    if len(sorted_samples) == 1:
        return sorted_samples[0]
    return sorted_samples[int(len(sorted_samples) * fraction)]


@dataclass
class CounterSnapshot:
    """Copy of the collector state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    failure_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_failures(self) -> int:
        """Total failures across all reasons."""
        return sum(self.failure_reasons.values())

    def failure_rate(self, total_runs: int) -> float:
        """
        Failures per run, as a percentage.

        Args:
            total_runs: Number of runs the failures are spread over

        Returns:
            Percentage, 0.0 when there were no runs
        """
        if total_runs == 0:
            return 0.0
        return (self.total_failures() / total_runs) * 100.0

    def success_rate(self, attempts_counter: str) -> Optional[float]:
        """
        Successful runs of an estimator family, as a percentage.

        Args:
            attempts_counter: One of the RUN_COUNTERS keys

        Returns:
            Percentage, None when the family has not run
        """
        attempts = self.counters.get(attempts_counter, 0)
        if attempts == 0:
            return None
        successes = self.counters.get(RUN_COUNTERS[attempts_counter], 0)
        return (successes / attempts) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('robust_runs')
        collector.increment_failure('candidate_failed')
        collector.record_histogram('robust_iterations', 42)

        collector.log_summary()
    """

    # Failure reason codes and what they mean
    FAILURE_REASONS = {
        'rank_deficient': 'Linear lateration system is rank deficient',
        'point_at_infinity': 'Homogeneous solution has zero scale',
        'not_converged': 'Iterative solver reached its iteration cap',
        'not_enough_inliers': 'No candidate reached the minimum consensus',
        'candidate_failed': 'Minimal subset produced no candidate',
        'refinement_failed': 'Refinement on inliers did not converge',
        'singular_covariance': 'Information matrix could not be inverted',
    }

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._failure_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._init_standard_counters()

    def _init_standard_counters(self):
        # Zeroed keys keep summaries stable before the first run
        with self._lock:
            for attempts, successes in RUN_COUNTERS.items():
                self._counters.setdefault(attempts, 0)
                self._counters.setdefault(successes, 0)
            self._counters.setdefault('refinements', 0)
            for reason in self.FAILURE_REASONS:
                self._failure_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter.

        Args:
            counter_name: Name of counter to increment
            value: Amount to add (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_failure(self, reason: str, value: int = 1):
        """
        Count a failure under its reason code and in 'failures'.

        Args:
            reason: Failure reason code, normally one of FAILURE_REASONS
            value: Amount to add (default 1)
        """
        if reason not in self.FAILURE_REASONS:
            # still counted, but flagged so new call sites get registered
            logger.warning("Unknown failure reason '%s'", reason)

        with self._lock:
            self._failure_reasons[reason] += value
            self._counters['failures'] += value

    def get_counter(self, counter_name: str) -> int:
        """
        Current value of a counter.

        Args:
            counter_name: Name of counter

        Returns:
            Counter value, 0 for counters never incremented
        """
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_failure_count(self, reason: str) -> int:
        """
        Current count for a failure reason.

        Args:
            reason: Failure reason code

        Returns:
            Count, 0 for reasons never recorded
        """
        with self._lock:
            return self._failure_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Once exceeded, only the newest half is kept
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples // 2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics of a histogram.

        Args:
            histogram_name: Name of histogram

        Returns:
            Dict with count, min, max, mean, median, p95 and p99,
            or None if the histogram is empty
        """
        with self._lock:
            samples = sorted(self._histograms.get(histogram_name, []))

        if not samples:
            return None
        return {
            'count': len(samples),
            'min': samples[0],
            'max': samples[-1],
            'mean': statistics.mean(samples),
            'median': statistics.median(samples),
            'p95': _percentile(samples, 0.95),
            'p99': _percentile(samples, 0.99),
        }

    def snapshot(self) -> CounterSnapshot:
        """
        Copy the current state.

        Returns:
            CounterSnapshot unaffected by later updates
        """
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                failure_reasons=dict(self._failure_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Clear all counters, failure reasons and histograms."""
        with self._lock:
            self._counters.clear()
            self._failure_reasons.clear()
            self._histograms.clear()
        self._init_standard_counters()

    def format_summary(self) -> str:
        """
        Human-readable summary.

        Returns:
            Multi-line text with success rates, counters, failure
            reasons and histogram statistics
        """
        snapshot = self.snapshot()
        lines = ["=" * 70, "  METRICS SUMMARY", "=" * 70]

        lines.append("SUCCESS RATES:")
        for attempts in RUN_COUNTERS:
            rate = snapshot.success_rate(attempts)
            shown = "n/a" if rate is None else f"{rate:5.1f}%"
            lines.append(f"  {attempts:30s}: {snapshot.counters[attempts]:8d} ({shown})")

        lines.append("COUNTERS:")
        for name, value in sorted(snapshot.counters.items()):
            if name not in RUN_COUNTERS:
                lines.append(f"  {name:30s}: {value:8d}")

        total_failures = snapshot.total_failures()
        if total_failures > 0:
            lines.append("FAILURE REASONS:")
            for reason, count in sorted(snapshot.failure_reasons.items()):
                if count > 0:
                    pct = (count / total_failures) * 100
                    lines.append(f"  {reason:30s}: {count:8d} ({pct:5.1f}%)")

        if snapshot.histograms:
            lines.append("HISTOGRAMS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    lines.append(f"  {name}:")
                    lines.append(f"    count={stats['count']}, mean={stats['mean']:.3f}, "
                                 f"p95={stats['p95']:.3f}, p99={stats['p99']:.3f}")

        lines.append("=" * 70)
        return "\n".join(lines)

    def log_summary(self, level: int = logging.INFO):
        """Log the summary at the given level."""
        logger.log(level, "\n%s", self.format_summary())
