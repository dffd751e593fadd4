"""
Estimation Output Schemas.

Defines what solvers and estimators hand back to callers: inlier
diagnostics, position and radio source estimates, and the lifecycle
events delivered to listeners.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Optional

import numpy as np


class EstimatorState(IntEnum):
    """Lifecycle of a solver or estimator instance."""

    IDLE = 0       # Never run, or last run failed
    RUNNING = 1    # solve()/estimate() in progress, configuration locked
    DONE = 2       # Last run succeeded, results available


class EventType(Enum):
    """Kind of lifecycle event delivered to listeners."""

    START = "start"
    ITERATION = "iteration"
    PROGRESS = "progress"
    END = "end"


@dataclass(frozen=True)
class EstimationEvent:
    """
    Lifecycle event.

    Attributes:
        type: Event kind
        source: Solver/estimator raising the event
        iteration: Iteration number (ITERATION events only)
        progress: Progress in [0, 1] (PROGRESS events only)
    """

    type: EventType
    source: Any
    iteration: Optional[int] = None
    progress: Optional[float] = None


@dataclass
class InliersData:
    """
    Consensus diagnostics of a robust estimation.

    Attributes:
        num_inliers: Number of samples classified as inliers
        inliers: Boolean mask over samples (None unless kept)
        residuals: Residual of every sample for the best solution (None unless kept)
        threshold: Threshold used to classify inliers. Fixed for
            RANSAC/MSAC/PROSAC, estimated from the median for LMedS/PROMedS.
        best_median_residual: Median residual of the best solution
            (LMedS/PROMedS only)
    """

    num_inliers: int
    inliers: Optional[np.ndarray] = None
    residuals: Optional[np.ndarray] = None
    threshold: Optional[float] = None
    best_median_residual: Optional[float] = None

    def __post_init__(self):
        if self.num_inliers < 0:
            raise ValueError(f"Number of inliers cannot be negative: {self.num_inliers}")

    @property
    def inlier_indices(self) -> Optional[np.ndarray]:
        """Indices of inlier samples, if the mask was kept."""
        if self.inliers is None:
            return None
        return np.flatnonzero(self.inliers)


@dataclass
class PositionEstimate:
    """
    Position estimate from lateration.

    Attributes:
        position: Estimated position (2 or 3 coordinates)
        covariance: Position covariance, if computed
        inliers_data: Consensus diagnostics for robust runs
        refined: True if the position was refined on the inliers
        refinement_failed: True if refinement was requested but did not converge
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    inliers_data: Optional[InliersData] = None
    refined: bool = False
    refinement_failed: bool = False

    @property
    def dims(self) -> int:
        return len(self.position)

    @property
    def position_std(self) -> Optional[np.ndarray]:
        """Standard deviation per coordinate (sqrt of covariance diagonal)."""
        if self.covariance is None:
            return None
        return np.sqrt(np.diag(self.covariance))


@dataclass
class RadioSourceEstimate:
    """
    Radio source estimate: position, transmitted power and path loss exponent.

    Attributes:
        position: Estimated (or fixed) source position
        transmitted_power_dbm: Estimated (or fixed) transmitted power (dBm)
        path_loss_exponent: Estimated (or fixed) path loss exponent
        position_covariance: Covariance of the position block
        transmitted_power_variance: Variance of power (dB^2), when estimated
        path_loss_exponent_variance: Variance of exponent, when estimated
        covariance: Covariance of all estimated unknowns, ordered as
            position coordinates, transmitted power, path loss exponent
            (only the estimated ones)
        inliers_data: Consensus diagnostics for robust runs
        refined: True if the solution was refined on the inliers
        refinement_failed: True if refinement was requested but did not converge

    Notes:
        - Unknowns that were not estimated echo their initial values and
          have no variance.
    """

    position: Optional[np.ndarray]
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    covariance: Optional[np.ndarray] = None
    inliers_data: Optional[InliersData] = None
    refined: bool = False
    refinement_failed: bool = False

    def __post_init__(self):
        if self.path_loss_exponent is not None and self.path_loss_exponent <= 0:
            raise ValueError(f"Path loss exponent must be positive: {self.path_loss_exponent}")

    @property
    def transmitted_power_mw(self) -> Optional[float]:
        """Transmitted power in milliwatts."""
        if self.transmitted_power_dbm is None:
            return None
        return 10.0 ** (self.transmitted_power_dbm / 10.0)

    @property
    def transmitted_power_std(self) -> Optional[float]:
        if self.transmitted_power_variance is None:
            return None
        return float(np.sqrt(self.transmitted_power_variance))

    @property
    def path_loss_exponent_std(self) -> Optional[float]:
        if self.path_loss_exponent_variance is None:
            return None
        return float(np.sqrt(self.path_loss_exponent_variance))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': None if self.position is None else self.position.tolist(),
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'path_loss_exponent': self.path_loss_exponent,
            'transmitted_power_variance': self.transmitted_power_variance,
            'path_loss_exponent_variance': self.path_loss_exponent_variance,
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'num_inliers': None if self.inliers_data is None else self.inliers_data.num_inliers,
            'refined': self.refined,
            'refinement_failed': self.refinement_failed,
        }
