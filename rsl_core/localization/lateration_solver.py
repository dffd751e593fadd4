"""
Lateration Solvers.

Map a set of (reference position, distance) pairs to the position that
best agrees with them, in 2D (circles) or 3D (spheres). The number of
dimensions is taken from the reference positions.

Linear solvers subtract the first sphere equation from the others:

    |x - p_i|^2 - |x - p_0|^2 = d_i^2 - d_0^2
    =>  -2 (p_i - p_0) . x + (|p_i|^2 - d_i^2) - (|p_0|^2 - d_0^2) = 0

The homogeneous solver treats this as A [x; w] = 0 and takes the SVD null
vector; the inhomogeneous solver moves the constant term to the right-hand
side and solves by ordinary least squares. The non-linear solver minimises
sum(w_i (|x - p_i| - d_i)^2) with Levenberg-Marquardt.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from rsl_core.config import LATERATION_CONFIG
from rsl_core.errors import EstimationError, NotReadyError, NumericalInstabilityError
from rsl_core.localization.lifecycle import Listener, LockableEstimator
from rsl_core.localization.refinement import FitResult, fit_least_squares
from rsl_core.proto.estimates import EventType

logger = logging.getLogger(__name__)


@dataclass
class LaterationSolverConfig:
    """
    Configuration for lateration solvers.

    Attributes:
        max_iterations: Cap on residual evaluations for the non-linear solver
        default_distance_std: Distance std (m) assumed when none is given
        min_singular_value_ratio: Relative singular value under which a
            linear system is considered rank deficient
        scale_covariance: Scale covariance by the residual variance
    """

    max_iterations: int = LATERATION_CONFIG["max_iterations"]
    default_distance_std: float = LATERATION_CONFIG["default_distance_std"]
    min_singular_value_ratio: float = LATERATION_CONFIG["min_singular_value_ratio"]
    scale_covariance: bool = True

    def __post_init__(self):
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive: {self.max_iterations}")
        if self.default_distance_std <= 0:
            raise ValueError(f"default_distance_std must be positive: {self.default_distance_std}")
        if not 0 <= self.min_singular_value_ratio < 1:
            raise ValueError(
                f"min_singular_value_ratio must be in [0, 1): {self.min_singular_value_ratio}"
            )


def validate_lateration_inputs(
    positions,
    distances,
    standard_deviations=None,
) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
    """
    Convert and validate lateration inputs.

    Returns:
        (positions (n, dims), distances (n,), standard_deviations (n,) or None)

    Raises:
        ValueError: on mismatched lengths, bad dimensions, negative distances
            or non-positive standard deviations
    """
    positions = np.atleast_2d(np.asarray(positions, dtype=float))
    distances = np.asarray(distances, dtype=float).reshape(-1)

    if positions.shape[1] not in (2, 3):
        raise ValueError(f"Positions must have 2 or 3 coordinates, got {positions.shape[1]}")
    if positions.shape[0] != distances.shape[0]:
        raise ValueError(
            f"Got {positions.shape[0]} positions but {distances.shape[0]} distances"
        )
    if np.any(distances < 0):
        raise ValueError("Distances cannot be negative")

    if standard_deviations is not None:
        standard_deviations = np.asarray(standard_deviations, dtype=float).reshape(-1)
        if standard_deviations.shape[0] != distances.shape[0]:
            raise ValueError(
                f"Got {distances.shape[0]} distances but "
                f"{standard_deviations.shape[0]} standard deviations"
            )
        if np.any(standard_deviations <= 0):
            raise ValueError("Standard deviations must be strictly positive")

    return positions, distances, standard_deviations


def fold_position_covariances(
    positions: np.ndarray,
    standard_deviations: np.ndarray,
    position_covariances: Sequence[Optional[np.ndarray]],
    estimated_position: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Inflate distance std by the uncertainty of each reference position.

    First-order propagation assuming independence: the distance variance
    grows by u' S u, with u the unit vector from the reference towards the
    estimated position. Without an estimate, trace(S) / dims is used.
    """
    variances = np.asarray(standard_deviations, dtype=float) ** 2
    dims = positions.shape[1]
    for i, cov in enumerate(position_covariances):
        if cov is None:
            continue
        extra = None
        if estimated_position is not None:
            diff = np.asarray(estimated_position, dtype=float) - positions[i]
            norm = np.linalg.norm(diff)
            if norm > 0:
                u = diff / norm
                extra = float(u @ cov @ u)
        if extra is None:
            extra = float(np.trace(cov)) / dims
        variances[i] += max(extra, 0.0)
    return np.sqrt(variances)


def subtracted_system(positions: np.ndarray, distances: np.ndarray):
    """Rows of -2 (p_i - p_0) and constants (|p_i|^2 - d_i^2) - (|p_0|^2 - d_0^2)."""
    p0 = positions[0]
    d0 = distances[0]
    a = -2.0 * (positions[1:] - p0)
    b = (np.sum(positions[1:] ** 2, axis=1) - distances[1:] ** 2) - (p0 @ p0 - d0 ** 2)
    return a, b


def linear_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    min_singular_value_ratio: float = LATERATION_CONFIG["min_singular_value_ratio"],
) -> Optional[np.ndarray]:
    """
    Inhomogeneous least squares position.

    Returns None when the references are collinear (2D) or coplanar (3D).
    """
    dims = positions.shape[1]
    a, b = subtracted_system(positions, distances)
    solution, _, rank, singular_values = np.linalg.lstsq(a, -b, rcond=None)
    if rank < dims or singular_values[-1] <= min_singular_value_ratio * singular_values[0]:
        return None
    return solution

def fit_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    standard_deviations: np.ndarray,
    initial_position,
    max_iterations: int = LATERATION_CONFIG["max_iterations"],
    scale_covariance: bool = True,
) -> FitResult:
    """
    Weighted Levenberg-Marquardt fit of a position to ranges.

    Residuals are (|x - p_i| - d_i) / sigma_i.
    """
    def residuals(x):
        return (np.linalg.norm(positions - x, axis=1) - distances) / standard_deviations

    def jacobian(x):
        diff = x - positions
        norms = np.linalg.norm(diff, axis=1)
        norms = np.where(norms > 0, norms, 1.0)
        return diff / (norms * standard_deviations)[:, np.newaxis]

    return fit_least_squares(
        residuals,
        initial_position,
        jacobian=jacobian,
        max_iterations=max_iterations,
        scale_covariance=scale_covariance,
    )


class LaterationSolver(LockableEstimator, ABC):
    """
    Base class for lateration solvers.

    Usage:
        solver = InhomogeneousLinearLaterationSolver(positions, distances)
        position = solver.solve()
    """

    def __init__(
        self,
        positions=None,
        distances=None,
        standard_deviations=None,
        config: Optional[LaterationSolverConfig] = None,
        listener: Optional[Listener] = None,
    ):
        super().__init__(listener)
        self.config = config or LaterationSolverConfig()
        self._positions: Optional[np.ndarray] = None
        self._distances: Optional[np.ndarray] = None
        self._standard_deviations: Optional[np.ndarray] = None
        self._position_covariances = None
        self._estimated_position: Optional[np.ndarray] = None
        self._covariance: Optional[np.ndarray] = None
        self._chi_sq: Optional[float] = None

        if positions is not None and distances is not None:
            self.set_positions_and_distances(positions, distances, standard_deviations)

    @property
    def positions(self) -> Optional[np.ndarray]:
        return self._positions

    @property
    def distances(self) -> Optional[np.ndarray]:
        return self._distances

    @property
    def standard_deviations(self) -> Optional[np.ndarray]:
        return self._standard_deviations

    def set_positions_and_distances(self, positions, distances, standard_deviations=None,
                                    position_covariances=None):
        """
        Set reference positions, measured distances and (optionally) their std.

        position_covariances, when given, holds one covariance (or None) per
        reference and is folded into the distance std before solving.

        Raises:
            LockedError: if the solver is running
            ValueError: if inputs are inconsistent

        Fewer than the minimum number of readings is accepted here and
        reported by is_ready / solve().
        """
        self._check_unlocked()
        positions, distances, standard_deviations = validate_lateration_inputs(
            positions, distances, standard_deviations
        )
        if position_covariances is not None and len(position_covariances) != distances.shape[0]:
            raise ValueError(
                f"Got {distances.shape[0]} distances but {len(position_covariances)} position covariances"
            )
        self._positions = positions
        self._distances = distances
        self._standard_deviations = standard_deviations
        self._position_covariances = position_covariances

    @property
    def number_of_dimensions(self) -> Optional[int]:
        if self._positions is None:
            return None
        return self._positions.shape[1]

    @property
    def min_required_positions_and_distances(self) -> Optional[int]:
        """N + 1 for N spatial dimensions."""
        if self._positions is None:
            return None
        return self.number_of_dimensions + 1

    @property
    def is_ready(self) -> bool:
        return (
            self._positions is not None
            and self._positions.shape[0] >= self.min_required_positions_and_distances
        )

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._estimated_position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        """Position covariance (non-linear solver only)."""
        return self._covariance

    @property
    def chi_sq(self) -> Optional[float]:
        return self._chi_sq

    def solve(self) -> np.ndarray:
        """
        Solve for the position.

        Returns:
            Estimated position

        Raises:
            LockedError: if already running
            NotReadyError: if inputs are missing
            EstimationError: on numerical failure
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(f"{type(self).__name__} is not ready")

        with self._running():
            self._estimated_position = None
            self._covariance = None
            self._chi_sq = None
            self.metrics.increment('lateration_solves')
            self._notify(EventType.START)

            seed = self._seed(self._positions, self._distances)
            stds = self._effective_stds(self._standard_deviations)
            if self._position_covariances is not None:
                stds = fold_position_covariances(
                    self._positions, stds, self._position_covariances, seed
                )
            position, covariance, chi_sq = self._compute(
                self._positions, self._distances, stds, seed
            )

            self._estimated_position = position
            self._covariance = covariance
            self._chi_sq = chi_sq
            self.metrics.increment('lateration_successes')
            residual = np.abs(np.linalg.norm(self._positions - position, axis=1) - self._distances)
            self.metrics.record_histogram('lateration_residual', float(np.sqrt(np.mean(residual ** 2))))
            self._notify(EventType.END)

        return position

    def solve_preliminary(self, positions, distances, standard_deviations=None) -> List[np.ndarray]:
        """
        Candidate positions for a minimal subset of N + 1 readings.

        Does not modify the solver's own inputs or results. Numerical
        failures yield an empty list.
        """
        positions = np.asarray(positions, dtype=float)
        distances = np.asarray(distances, dtype=float)
        try:
            position, _, _ = self._compute(
                positions, distances, self._effective_stds(standard_deviations, len(distances)),
                self._seed(positions, distances),
            )
        except EstimationError as e:
            logger.debug("%s: no preliminary solution: %s", type(self).__name__, e)
            return []
        return [position]

    def _effective_stds(self, standard_deviations, n: int = None) -> np.ndarray:
        if standard_deviations is not None:
            return np.asarray(standard_deviations, dtype=float)
        if n is None:
            n = self._distances.shape[0]
        return np.full(n, self.config.default_distance_std)

    def _seed(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        return positions.mean(axis=0)

    @abstractmethod
    def _compute(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        standard_deviations: np.ndarray,
        initial_position: np.ndarray,
    ) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[float]]:
        """Return (position, covariance or None, chi_sq or None)."""


class HomogeneousLinearLaterationSolver(LaterationSolver):
    """Linear lateration solved on the homogeneous system via SVD."""

    def _compute(self, positions, distances, standard_deviations, initial_position):
        dims = positions.shape[1]
        a, b = subtracted_system(positions, distances)
        system = np.column_stack([a, b])

        _, singular_values, vt = np.linalg.svd(system, full_matrices=True)
        if (singular_values.shape[0] < dims
                or singular_values[dims - 1] <= self.config.min_singular_value_ratio * singular_values[0]):
            self.metrics.increment_failure('rank_deficient')
            raise NumericalInstabilityError("homogeneous lateration system is rank deficient")

        null_vector = vt[-1]
        w = null_vector[dims]
        if abs(w) <= np.finfo(float).eps * np.linalg.norm(null_vector):
            self.metrics.increment_failure('point_at_infinity')
            raise NumericalInstabilityError("homogeneous solution lies at infinity")

        return null_vector[:dims] / w, None, None


class InhomogeneousLinearLaterationSolver(LaterationSolver):
    """Linear lateration solved by ordinary least squares."""

    def _compute(self, positions, distances, standard_deviations, initial_position):
        solution = linear_lateration(positions, distances, self.config.min_singular_value_ratio)
        if solution is None:
            self.metrics.increment_failure('rank_deficient')
            raise NumericalInstabilityError(
                "references are collinear/coplanar, inhomogeneous system is rank deficient"
            )
        return solution, None, None


class NonLinearLaterationSolver(LaterationSolver):
    """
    Weighted non-linear least squares lateration.

    Minimises sum(((|x - p_i| - d_i) / sigma_i)^2) starting from
    initial_position, or from the linear least squares solution when none
    is set. Produces the position covariance.
    """

    def __init__(self, positions=None, distances=None, standard_deviations=None,
                 initial_position=None, config: Optional[LaterationSolverConfig] = None,
                 listener: Optional[Listener] = None):
        super().__init__(positions, distances, standard_deviations, config, listener)
        self._initial_position = None
        if initial_position is not None:
            self.initial_position = initial_position

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position):
        self._check_unlocked()
        self._initial_position = None if position is None else np.asarray(position, dtype=float)

    def _seed(self, positions, distances):
        if self._initial_position is not None:
            if self._initial_position.shape[0] != positions.shape[1]:
                raise ValueError(
                    f"Initial position has {self._initial_position.shape[0]} coordinates, "
                    f"references have {positions.shape[1]}"
                )
            return self._initial_position
        linear = linear_lateration(positions, distances, self.config.min_singular_value_ratio)
        if linear is None:
            logger.debug("no linear seed for %d references, starting from their centroid",
                         positions.shape[0])
            return positions.mean(axis=0)
        return linear

    def _compute(self, positions, distances, standard_deviations, initial_position):
        fit = fit_lateration(
            positions, distances, standard_deviations, initial_position,
            max_iterations=self.config.max_iterations,
            scale_covariance=self.config.scale_covariance,
        )
        return fit.x, fit.covariance, fit.chi_sq


def create_linear_solver(use_homogeneous: bool = False, **kwargs) -> LaterationSolver:
    """Linear lateration solver of the requested kind."""
    if use_homogeneous:
        return HomogeneousLinearLaterationSolver(**kwargs)
    return InhomogeneousLinearLaterationSolver(**kwargs)
