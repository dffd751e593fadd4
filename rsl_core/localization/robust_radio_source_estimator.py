"""
Robust Radio Source Estimators.

Outlier-tolerant versions of the radio source estimators. Each one runs
the robust engine over its readings with the selected method and then
refines the consensus on its inliers:

- RobustRssiRadioSourceEstimator: minimal subsets of (unknowns + 1) RSSI
  readings are fitted, readings are scored by |rssi - predicted| in dB.
- RobustRangingRadioSourceEstimator: robust lateration over the distances.
- RobustRangingAndRssiRadioSourceEstimator: robust lateration, then robust
  RSSI with the position frozen. result.inliers_data is the ranging
  consensus; both stages are available separately.

PROSAC and PROMedS need one quality score per reading (higher is better).
"""

import logging
from dataclasses import replace
from typing import Optional

import numpy as np

from rsl_core.config import RADIO_SOURCE_CONFIG, ROBUST_CONFIG
from rsl_core.errors import EstimationError, RadioSourceEstimationError
from rsl_core.localization.lateration_solver import create_linear_solver
from rsl_core.localization.lifecycle import Listener
from rsl_core.localization.power import PathLossModel
from rsl_core.localization.radio_source_estimator import (
    RadioSourceConfig,
    RadioSourceEstimator,
    RangingAndRssiRadioSourceEstimator,
    RangingRadioSourceEstimator,
    RssiParameters,
    RssiRadioSourceEstimator,
    SourceSolution,
    block_diagonal_covariance,
    fit_rssi,
    ranging_arrays,
    rssi_arrays,
    rssi_standard_deviations,
)
from rsl_core.localization.refinement import refine_or_none
from rsl_core.localization.robust_estimator import (
    RobustEstimator,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    RobustProblem,
    RobustResult,
    trim_inliers_data,
)
from rsl_core.localization.robust_lateration import RobustLaterationSolver
from rsl_core.proto.estimates import EstimationEvent, EventType, InliersData, RadioSourceEstimate

logger = logging.getLogger(__name__)


class RssiProblem(RobustProblem):
    """Robust problem over RSSI readings."""

    def __init__(self, path_loss_model: PathLossModel, positions: np.ndarray, rssi: np.ndarray,
                 standard_deviations: np.ndarray, make_parameters, subset_size: int,
                 max_iterations: int, quality_scores: Optional[np.ndarray] = None):
        self.path_loss_model = path_loss_model
        self.positions = positions
        self.rssi = rssi
        self.standard_deviations = standard_deviations
        self.make_parameters = make_parameters
        self._subset_size = subset_size
        self.max_iterations = max_iterations
        self._quality_scores = quality_scores

    @property
    def total_samples(self) -> int:
        return self.positions.shape[0]

    @property
    def subset_size(self) -> int:
        return self._subset_size

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    def generate_candidates(self, indices):
        positions = self.positions[indices]
        rssi = self.rssi[indices]
        stds = self.standard_deviations[indices]
        parameters = self.make_parameters(positions, rssi, stds)
        fit = fit_rssi(parameters, positions, rssi, stds, self.max_iterations,
                       scale_covariance=False)
        return [parameters.to_solution(fit.x)]

    def _predict(self, solution: SourceSolution, positions: np.ndarray):
        distances = np.linalg.norm(positions - solution.position, axis=-1)
        return self.path_loss_model.received_power(
            distances, solution.transmitted_power_dbm, solution.path_loss_exponent
        )

    def compute_residual(self, candidate: SourceSolution, index: int) -> float:
        return abs(float(self.rssi[index] - self._predict(candidate, self.positions[index])))

    def compute_residuals(self, candidate: SourceSolution) -> np.ndarray:
        return np.abs(self.rssi - self._predict(candidate, self.positions))


class RobustRadioSourceEstimator(RadioSourceEstimator):
    """
    Robust configuration shared by robust radio source estimators.

    Concrete classes combine this base with a plain estimator, which
    supplies readings handling, minimum reading counts and readiness.
    """

    default_threshold = ROBUST_CONFIG["threshold"]

    def __init__(
        self,
        readings=None,
        config: Optional[RadioSourceConfig] = None,
        method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS,
        robust_config: Optional[RobustEstimatorConfig] = None,
        quality_scores=None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: Optional[float] = None,
        listener: Optional[Listener] = None,
        random_state=None,
    ):
        self._robust_config = robust_config or RobustEstimatorConfig(threshold=self.default_threshold)
        self._method = RobustEstimatorMethod(method)
        self._random_state = random_state
        self._quality_scores = None
        super().__init__(
            readings=readings,
            config=config,
            initial_position=initial_position,
            initial_transmitted_power_dbm=initial_transmitted_power_dbm,
            initial_path_loss_exponent=initial_path_loss_exponent,
            listener=listener,
        )
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def configure_robust(self, **changes):
        """
        Update robust configuration fields.

        Raises:
            LockedError: if a run is in progress
            ValueError: if the resulting configuration is invalid
        """
        self._check_unlocked()
        self.robust_config = replace(self._robust_config, **changes)

    @property
    def robust_config(self) -> RobustEstimatorConfig:
        return self._robust_config

    @robust_config.setter
    def robust_config(self, robust_config: RobustEstimatorConfig):
        self._check_unlocked()
        self._robust_config = robust_config

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
    def inliers_data(self) -> Optional[InliersData]:
        return None if self._result is None else self._result.inliers_data

    @property
    def is_ready(self) -> bool:
        if not super().is_ready:
            return False
        if self._method.uses_quality_scores:
            return (self._quality_scores is not None
                    and self._quality_scores.shape[0] == len(self._readings))
        return True

    def _forward(self, event: EstimationEvent):
        if event.type in (EventType.ITERATION, EventType.PROGRESS):
            self._notify(event.type, iteration=event.iteration, progress=event.progress)

    def _run_robust(self, problem: RobustProblem) -> RobustResult:
        engine = RobustEstimator(problem, self._method, self.robust_config,
                                 listener=self._forward, random_state=self._random_state)
        return engine.estimate()

    def _lateration_solver(self, positions, distances, stds, covariances) -> RobustLaterationSolver:
        lateration_config = self.config.lateration_config()
        return RobustLaterationSolver(
            positions, distances, stds,
            method=self._method,
            config=self.robust_config,
            quality_scores=self._quality_scores,
            position_covariances=covariances,
            preliminary_solver=create_linear_solver(
                self.config.use_homogeneous_linear_solver, config=lateration_config
            ),
            lateration_config=lateration_config,
            listener=self._forward,
            random_state=self._random_state,
        )


class RobustRssiRadioSourceEstimator(RobustRadioSourceEstimator, RssiRadioSourceEstimator):
    """
    Robust radio source estimation from received power.

    The default inlier threshold is RADIO_SOURCE_CONFIG["rssi_threshold_db"].
    """

    default_threshold = RADIO_SOURCE_CONFIG["rssi_threshold_db"]

    def _estimate(self) -> RadioSourceEstimate:
        config = self.config
        robust_config = self.robust_config
        positions, rssi, stds, covariances = rssi_arrays(self._readings, config)

        problem = RssiProblem(
            config.path_loss_model, positions, rssi, stds,
            self._make_parameters, self.min_required_readings,
            config.max_iterations, self._quality_scores,
        )
        result = self._run_robust(problem)
        solution = result.solution

        parameters = RssiParameters(
            config.path_loss_model, solution.position,
            solution.transmitted_power_dbm, solution.path_loss_exponent,
            estimate_position=config.position_estimation_enabled,
            estimate_power=config.transmitted_power_estimation_enabled,
            estimate_exponent=config.path_loss_estimation_enabled,
        )
        x = parameters.pack()
        covariance = None
        refined = False
        refinement_failed = False

        if robust_config.refine_result:
            inliers = result.inliers
            inlier_covariances = None
            if covariances is not None:
                inlier_covariances = [covariances[i] for i in np.flatnonzero(inliers)]
            inlier_stds = rssi_standard_deviations(
                positions[inliers], stds[inliers], inlier_covariances,
                solution.position, solution.path_loss_exponent,
            )
            fit = refine_or_none(
                lambda: fit_rssi(parameters, positions[inliers], rssi[inliers], inlier_stds,
                                 config.max_iterations, config.scale_covariance),
                f"robust RSSI estimation ({self._method.name})",
            )
            if fit is None:
                refinement_failed = True
            else:
                x = fit.x
                refined = True
                if robust_config.keep_covariance:
                    covariance = fit.covariance

        return parameters.to_estimate(
            x, covariance,
            inliers_data=trim_inliers_data(result.inliers_data, robust_config),
            refined=refined,
            refinement_failed=refinement_failed,
        )


class RobustRangingRadioSourceEstimator(RobustRadioSourceEstimator, RangingRadioSourceEstimator):
    """Robust radio source position from ranging readings."""

    def _estimate(self) -> RadioSourceEstimate:
        positions, distances, stds, covariances = ranging_arrays(self._readings, self.config)
        estimate = self._lateration_solver(positions, distances, stds, covariances).solve()
        return RadioSourceEstimate(
            position=estimate.position,
            transmitted_power_dbm=self._initial_transmitted_power_dbm,
            path_loss_exponent=self.path_loss_exponent_seed,
            position_covariance=estimate.covariance,
            covariance=estimate.covariance,
            inliers_data=estimate.inliers_data,
            refined=estimate.refined,
            refinement_failed=estimate.refinement_failed,
        )


class RobustRangingAndRssiRadioSourceEstimator(RobustRadioSourceEstimator,
                                               RangingAndRssiRadioSourceEstimator):
    """
    Two-stage robust radio source estimation from combined readings.

    robust_config drives the ranging stage (threshold in meters) and
    rssi_robust_config the RSSI stage (threshold in dB). Both stages use
    the same method, quality scores and random state.
    """

    def __init__(self, readings=None, config: Optional[RadioSourceConfig] = None,
                 method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS,
                 robust_config: Optional[RobustEstimatorConfig] = None,
                 rssi_robust_config: Optional[RobustEstimatorConfig] = None,
                 quality_scores=None, initial_position=None,
                 initial_transmitted_power_dbm: Optional[float] = None,
                 initial_path_loss_exponent: Optional[float] = None,
                 listener: Optional[Listener] = None, random_state=None):
        self._rssi_robust_config = rssi_robust_config or RobustEstimatorConfig(
            threshold=RADIO_SOURCE_CONFIG["rssi_threshold_db"]
        )
        self._ranging_inliers_data: Optional[InliersData] = None
        self._rssi_inliers_data: Optional[InliersData] = None
        super().__init__(
            readings=readings,
            config=config,
            method=method,
            robust_config=robust_config,
            quality_scores=quality_scores,
            initial_position=initial_position,
            initial_transmitted_power_dbm=initial_transmitted_power_dbm,
            initial_path_loss_exponent=initial_path_loss_exponent,
            listener=listener,
            random_state=random_state,
        )

    @property
    def rssi_robust_config(self) -> RobustEstimatorConfig:
        return self._rssi_robust_config

    @rssi_robust_config.setter
    def rssi_robust_config(self, rssi_robust_config: RobustEstimatorConfig):
        self._check_unlocked()
        self._rssi_robust_config = rssi_robust_config

    @property
    def ranging_inliers_data(self) -> Optional[InliersData]:
        """Consensus of the ranging stage of the last run."""
        return self._ranging_inliers_data

    @property
    def rssi_inliers_data(self) -> Optional[InliersData]:
        """Consensus of the RSSI stage of the last run."""
        return self._rssi_inliers_data

    def _estimate(self) -> RadioSourceEstimate:
        self._ranging_inliers_data = None
        self._rssi_inliers_data = None

        ranging = [r.to_ranging_reading() for r in self._readings]
        positions, distances, stds, covariances = ranging_arrays(ranging, self.config)
        try:
            position_estimate = self._lateration_solver(positions, distances, stds, covariances).solve()
        except EstimationError as e:
            raise RadioSourceEstimationError(f"robust ranging stage failed: {e}") from e
        self._ranging_inliers_data = position_estimate.inliers_data

        if not self.config.rssi_unknowns_enabled:
            return RadioSourceEstimate(
                position=position_estimate.position,
                transmitted_power_dbm=self._initial_transmitted_power_dbm,
                path_loss_exponent=self.path_loss_exponent_seed,
                position_covariance=position_estimate.covariance,
                covariance=position_estimate.covariance,
                inliers_data=position_estimate.inliers_data,
                refined=position_estimate.refined,
                refinement_failed=position_estimate.refinement_failed,
            )

        stage = RobustRssiRadioSourceEstimator(
            readings=[r.to_rssi_reading() for r in self._readings],
            config=self._rssi_stage_config(),
            method=self._method,
            robust_config=self.rssi_robust_config,
            quality_scores=self._quality_scores,
            initial_position=position_estimate.position,
            initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
            initial_path_loss_exponent=self._initial_path_loss_exponent,
            listener=self._forward,
            random_state=self._random_state,
        )
        try:
            rssi_estimate = stage.estimate()
        except EstimationError as e:
            raise RadioSourceEstimationError(f"robust RSSI stage failed: {e}") from e
        self._rssi_inliers_data = rssi_estimate.inliers_data

        return RadioSourceEstimate(
            position=position_estimate.position,
            transmitted_power_dbm=rssi_estimate.transmitted_power_dbm,
            path_loss_exponent=rssi_estimate.path_loss_exponent,
            position_covariance=position_estimate.covariance,
            transmitted_power_variance=rssi_estimate.transmitted_power_variance,
            path_loss_exponent_variance=rssi_estimate.path_loss_exponent_variance,
            covariance=block_diagonal_covariance(position_estimate.covariance, rssi_estimate.covariance),
            inliers_data=position_estimate.inliers_data,
            refined=position_estimate.refined and rssi_estimate.refined,
            refinement_failed=position_estimate.refinement_failed or rssi_estimate.refinement_failed,
        )
