"""
Exception taxonomy for lateration and radio source estimation.

Configuration problems are reported as ValueError at construction or
setter time. Everything below is raised from solve()/estimate().
"""


class LaterationError(Exception):
    """Base class for all estimation errors in this package."""


class LockedError(LaterationError):
    """Raised when configuration is mutated while a run is in progress."""


class NotReadyError(LaterationError):
    """Raised when solve()/estimate() is called without enough valid input."""


class EstimationError(LaterationError):
    """Numerical failure while computing an estimate."""


class NumericalInstabilityError(EstimationError):
    """Rank-deficient system or singular matrix."""


class ConvergenceError(EstimationError):
    """Iterative solver exceeded its iteration cap without converging."""


class NotEnoughInliersError(EstimationError):
    """Robust estimator found no candidate with enough inliers."""


class RadioSourceEstimationError(EstimationError):
    """Radio source estimation failed; the underlying cause is chained."""
