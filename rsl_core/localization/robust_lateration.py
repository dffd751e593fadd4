"""
Robust Lateration.

Lateration that tolerates outlying distances: minimal subsets of N + 1
references are solved by a linear (or non-linear) preliminary solver,
every reference is scored by its range residual |‖x - p_i‖ - d_i| and
the best consensus is optionally refined on its inliers with weighted
Levenberg-Marquardt.

Usage:
    solver = RobustLaterationSolver(positions, distances,
                                    method=RobustEstimatorMethod.RANSAC,
                                    config=RobustEstimatorConfig(threshold=0.1),
                                    random_state=0)
    estimate = solver.solve()
"""

import logging
from typing import Optional

import numpy as np

from rsl_core.config import LATERATION_CONFIG
from rsl_core.errors import NotReadyError
from rsl_core.localization.lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    create_linear_solver,
    fit_lateration,
    fold_position_covariances,
    validate_lateration_inputs,
)
from rsl_core.localization.lifecycle import Listener, LockableEstimator
from rsl_core.localization.refinement import refine_or_none
from rsl_core.localization.robust_estimator import (
    RobustEstimator,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    RobustProblem,
    trim_inliers_data,
)
from rsl_core.proto.estimates import EstimationEvent, EventType, PositionEstimate

logger = logging.getLogger(__name__)


class LaterationProblem(RobustProblem):
    """Robust problem over (position, distance) readings."""

    def __init__(self, positions: np.ndarray, distances: np.ndarray,
                 standard_deviations: np.ndarray, preliminary_solver: LaterationSolver,
                 quality_scores: Optional[np.ndarray] = None):
        self.positions = positions
        self.distances = distances
        self.standard_deviations = standard_deviations
        self.preliminary_solver = preliminary_solver
        self._quality_scores = quality_scores

    @property
    def total_samples(self) -> int:
        return self.positions.shape[0]

    @property
    def subset_size(self) -> int:
        return self.positions.shape[1] + 1

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    def generate_candidates(self, indices):
        return self.preliminary_solver.solve_preliminary(
            self.positions[indices],
            self.distances[indices],
            self.standard_deviations[indices],
        )

    def compute_residual(self, candidate, index: int) -> float:
        return abs(float(np.linalg.norm(self.positions[index] - candidate)) - self.distances[index])

    def compute_residuals(self, candidate) -> np.ndarray:
        return np.abs(np.linalg.norm(self.positions - candidate, axis=1) - self.distances)


class RobustLaterationSolver(LockableEstimator):
    """
    Robust lateration solver.

    Works with any RobustEstimatorMethod. Events from the underlying
    robust loop are forwarded to the listener with this solver as source.
    """

    def __init__(
        self,
        positions=None,
        distances=None,
        standard_deviations=None,
        method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS,
        config: Optional[RobustEstimatorConfig] = None,
        quality_scores=None,
        position_covariances=None,
        preliminary_solver: Optional[LaterationSolver] = None,
        lateration_config: Optional[LaterationSolverConfig] = None,
        listener: Optional[Listener] = None,
        random_state=None,
    ):
        super().__init__(listener)
        self.config = config or RobustEstimatorConfig()
        self._lateration_config = lateration_config or LaterationSolverConfig()
        self._method = RobustEstimatorMethod(method)
        self._random_state = random_state
        self._preliminary_solver = preliminary_solver or create_linear_solver(
            LATERATION_CONFIG["use_homogeneous_linear_solver"], config=self._lateration_config
        )
        self._positions = None
        self._distances = None
        self._standard_deviations = None
        self._position_covariances = None
        self._quality_scores = None
        self._estimate: Optional[PositionEstimate] = None

        if positions is not None and distances is not None:
            self.set_positions_and_distances(positions, distances, standard_deviations,
                                             position_covariances)
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def set_positions_and_distances(self, positions, distances, standard_deviations=None,
                                    position_covariances=None):
        """
        Set references, measured distances and optional std / reference covariances.

        Raises:
            LockedError: if the solver is running
            ValueError: if inputs are inconsistent
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
    def positions(self) -> Optional[np.ndarray]:
        return self._positions

    @property
    def distances(self) -> Optional[np.ndarray]:
        return self._distances

    @property
    def lateration_config(self) -> LaterationSolverConfig:
        """Nominal distance std and refinement settings."""
        return self._lateration_config

    @lateration_config.setter
    def lateration_config(self, lateration_config: LaterationSolverConfig):
        self._check_unlocked()
        self._lateration_config = lateration_config

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @method.setter
    def method(self, method: RobustEstimatorMethod):
        self._check_unlocked()
        self._method = RobustEstimatorMethod(method)

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, scores):
        self._check_unlocked()
        self._quality_scores = None if scores is None else np.asarray(scores, dtype=float).reshape(-1)

    @property
    def random_state(self):
        return self._random_state

    @random_state.setter
    def random_state(self, random_state):
        self._check_unlocked()
        self._random_state = random_state

    @property
    def preliminary_solver(self) -> LaterationSolver:
        return self._preliminary_solver

    @preliminary_solver.setter
    def preliminary_solver(self, solver: LaterationSolver):
        self._check_unlocked()
        self._preliminary_solver = solver

    @property
    def number_of_dimensions(self) -> Optional[int]:
        return None if self._positions is None else self._positions.shape[1]

    @property
    def min_required_positions_and_distances(self) -> Optional[int]:
        return None if self._positions is None else self._positions.shape[1] + 1

    @property
    def is_ready(self) -> bool:
        if self._positions is None:
            return False
        if self._positions.shape[0] < self.min_required_positions_and_distances:
            return False
        if self._method.uses_quality_scores:
            return (self._quality_scores is not None
                    and self._quality_scores.shape[0] == self._positions.shape[0])
        return True

    @property
    def result(self) -> Optional[PositionEstimate]:
        """Result of the last successful solve()."""
        return self._estimate

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._estimate is None else self._estimate.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._estimate is None else self._estimate.covariance

    @property
    def inliers_data(self):
        return None if self._estimate is None else self._estimate.inliers_data

    def _stds(self) -> np.ndarray:
        if self._standard_deviations is not None:
            return self._standard_deviations
        return np.full(self._distances.shape[0], self.lateration_config.default_distance_std)

    def _forward(self, event: EstimationEvent):
        if event.type in (EventType.ITERATION, EventType.PROGRESS):
            self._notify(event.type, iteration=event.iteration, progress=event.progress)

    def solve(self) -> PositionEstimate:
        """
        Robustly estimate the position.

        Raises:
            LockedError: if already running
            NotReadyError: if readings or quality scores are missing
            NotEnoughInliersError: if no consensus was found
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(
                f"RobustLaterationSolver ({self._method.name}) is not ready"
            )

        with self._running():
            self._estimate = None
            self.metrics.increment('lateration_solves')
            self._notify(EventType.START)

            stds = self._stds()
            if self._position_covariances is not None:
                stds = fold_position_covariances(self._positions, stds, self._position_covariances)

            problem = LaterationProblem(self._positions, self._distances, stds,
                                        self._preliminary_solver, self._quality_scores)
            engine = RobustEstimator(problem, self._method, self.config,
                                     listener=self._forward, random_state=self._random_state)
            result = engine.estimate()

            self._estimate = self._finish(result, stds)
            self.metrics.increment('lateration_successes')
            self._notify(EventType.END)

        return self._estimate

    def _finish(self, result, stds: np.ndarray) -> PositionEstimate:
        config = self.config
        position = np.asarray(result.solution, dtype=float)
        covariance = None
        refined = False
        refinement_failed = False

        if config.refine_result:
            inliers = result.inliers
            inlier_stds = stds[inliers]
            if self._position_covariances is not None:
                covs = [c for c, keep in zip(self._position_covariances, inliers) if keep]
                inlier_stds = fold_position_covariances(
                    self._positions[inliers], self._stds()[inliers], covs, position
                )
            fit = refine_or_none(
                lambda: fit_lateration(
                    self._positions[inliers], self._distances[inliers], inlier_stds, position,
                    max_iterations=self.lateration_config.max_iterations,
                    scale_covariance=self.lateration_config.scale_covariance,
                ),
                f"robust lateration ({self._method.name})",
            )
            if fit is None:
                refinement_failed = True
            else:
                position = fit.x
                refined = True
                if config.keep_covariance:
                    covariance = fit.covariance

        return PositionEstimate(
            position=position,
            covariance=covariance,
            inliers_data=trim_inliers_data(result.inliers_data, config),
            refined=refined,
            refinement_failed=refinement_failed,
        )
