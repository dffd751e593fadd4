"""
Radio Source Estimators.

Locate a radio source and characterise its emission from readings taken
at known positions:

- RssiRadioSourceEstimator: position, transmitted power and path loss
  exponent from received power, using the log-distance model
  Pr = Pt - 10 n log10(d / d0). Each unknown can be disabled, in which
  case its initial value is echoed back.
- RangingRadioSourceEstimator: position from distances (linear seed, then
  weighted non-linear fit with covariance).
- RangingAndRssiRadioSourceEstimator: two stages. Position from the
  ranging part, then power/exponent from RSSI with the position frozen.
  The joint covariance is block diagonal: the two stages are treated as
  independent.

Usage:
    estimator = RssiRadioSourceEstimator(readings, initial_position=[0, 0])
    estimate = estimator.estimate()
    print(estimate.position, estimate.transmitted_power_dbm)
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg

from rsl_core.config import LATERATION_CONFIG, RADIO_SOURCE_CONFIG
from rsl_core.errors import EstimationError, NotReadyError, NumericalInstabilityError, RadioSourceEstimationError
from rsl_core.localization.lateration_solver import (
    LaterationSolverConfig,
    create_linear_solver,
    fit_lateration,
    fold_position_covariances,
)
from rsl_core.localization.lifecycle import Listener, LockableEstimator
from rsl_core.localization.power import MIN_DISTANCE, PathLossModel, dbm_to_power, power_to_dbm
from rsl_core.localization.refinement import FitResult, fit_least_squares
from rsl_core.proto.estimates import EventType, RadioSourceEstimate
from rsl_core.proto.readings import RangingAndRssiReading, RangingReading, RssiReading, as_position

logger = logging.getLogger(__name__)

LN10 = math.log(10.0)


@dataclass(frozen=True)
class SourceSolution:
    """Candidate radio source parameters."""

    position: np.ndarray
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float


@dataclass
class RadioSourceConfig:
    """
    Configuration for radio source estimators.

    Attributes:
        path_loss_model: Log-distance model (reference distance)
        position_estimation_enabled: Estimate position (RSSI estimators)
        transmitted_power_estimation_enabled: Estimate transmitted power
        path_loss_estimation_enabled: Estimate path loss exponent
        use_reading_position_covariances: Fold reading position covariances
            into measurement variances
        use_homogeneous_linear_solver: Linear solver used to seed ranging
        default_distance_std: Ranging std (m) for readings without one
        default_rssi_std_db: RSSI std (dB) for readings without one
        max_iterations: Cap on residual evaluations of non-linear fits
        scale_covariance: Scale covariances by the residual variance
    """

    path_loss_model: PathLossModel = field(default_factory=PathLossModel)
    position_estimation_enabled: bool = RADIO_SOURCE_CONFIG["position_estimation_enabled"]
    transmitted_power_estimation_enabled: bool = RADIO_SOURCE_CONFIG["transmitted_power_estimation_enabled"]
    path_loss_estimation_enabled: bool = RADIO_SOURCE_CONFIG["path_loss_estimation_enabled"]
    use_reading_position_covariances: bool = RADIO_SOURCE_CONFIG["use_reading_position_covariances"]
    use_homogeneous_linear_solver: bool = LATERATION_CONFIG["use_homogeneous_linear_solver"]
    default_distance_std: float = LATERATION_CONFIG["default_distance_std"]
    default_rssi_std_db: float = RADIO_SOURCE_CONFIG["default_rssi_std_db"]
    max_iterations: int = LATERATION_CONFIG["max_iterations"]
    scale_covariance: bool = True

    def __post_init__(self):
        if not isinstance(self.path_loss_model, PathLossModel):
            raise ValueError(f"path_loss_model must be a PathLossModel: {self.path_loss_model!r}")
        if self.default_distance_std <= 0:
            raise ValueError(f"default_distance_std must be positive: {self.default_distance_std}")
        if self.default_rssi_std_db <= 0:
            raise ValueError(f"default_rssi_std_db must be positive: {self.default_rssi_std_db}")
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive: {self.max_iterations}")

    @property
    def rssi_unknowns_enabled(self) -> bool:
        """True if power or path loss exponent is estimated."""
        return self.transmitted_power_estimation_enabled or self.path_loss_estimation_enabled

    def lateration_config(self) -> LaterationSolverConfig:
        return LaterationSolverConfig(
            max_iterations=self.max_iterations,
            default_distance_std=self.default_distance_std,
            scale_covariance=self.scale_covariance,
        )


# ---------------------------------------------------------------------------
# RSSI model
# ---------------------------------------------------------------------------

class RssiParameters:
    """
    Flat parameter vector of an RSSI fit.

    Enabled unknowns are packed in the order position coordinates,
    transmitted power, path loss exponent. Disabled unknowns keep the
    values given at construction.
    """

    def __init__(self, path_loss_model: PathLossModel, position, transmitted_power_dbm,
                 path_loss_exponent, estimate_position: bool, estimate_power: bool,
                 estimate_exponent: bool):
        self.path_loss_model = path_loss_model
        self.position = np.asarray(position, dtype=float)
        self.transmitted_power_dbm = transmitted_power_dbm
        self.path_loss_exponent = path_loss_exponent
        self.estimate_position = estimate_position
        self.estimate_power = estimate_power
        self.estimate_exponent = estimate_exponent

    @property
    def dims(self) -> int:
        return self.position.shape[0]

    @property
    def size(self) -> int:
        return ((self.dims if self.estimate_position else 0)
                + int(self.estimate_power) + int(self.estimate_exponent))

    def pack(self) -> np.ndarray:
        x = []
        if self.estimate_position:
            x.extend(self.position)
        if self.estimate_power:
            x.append(self.transmitted_power_dbm)
        if self.estimate_exponent:
            x.append(self.path_loss_exponent)
        return np.array(x, dtype=float)

    def unpack(self, x) -> Tuple[np.ndarray, float, float]:
        i = 0
        position = self.position
        power = self.transmitted_power_dbm
        exponent = self.path_loss_exponent
        if self.estimate_position:
            position = np.asarray(x[:self.dims], dtype=float)
            i = self.dims
        if self.estimate_power:
            power = float(x[i])
            i += 1
        if self.estimate_exponent:
            exponent = float(x[i])
        return position, power, exponent

    def predict(self, positions: np.ndarray, x) -> np.ndarray:
        position, power, exponent = self.unpack(x)
        distances = np.linalg.norm(positions - position, axis=1)
        return self.path_loss_model.received_power(distances, power, exponent)

    def prediction_jacobian(self, positions: np.ndarray, x) -> np.ndarray:
        position, power, exponent = self.unpack(x)
        diff = position - positions
        distances = np.maximum(np.linalg.norm(diff, axis=1), MIN_DISTANCE)
        columns = []
        if self.estimate_position:
            columns.append(-10.0 * exponent / LN10 * diff / (distances ** 2)[:, np.newaxis])
        if self.estimate_power:
            columns.append(np.ones((positions.shape[0], 1)))
        if self.estimate_exponent:
            columns.append(-self.path_loss_model.attenuation_term(distances)[:, np.newaxis])
        return np.hstack(columns)

    def to_solution(self, x) -> SourceSolution:
        position, power, exponent = self.unpack(x)
        return SourceSolution(position, power, exponent)

    def to_estimate(self, x, covariance: Optional[np.ndarray], **kwargs) -> RadioSourceEstimate:
        """Split a fitted vector and its covariance into a RadioSourceEstimate."""
        position, power, exponent = self.unpack(x)
        position_covariance = power_variance = exponent_variance = None
        if covariance is not None:
            i = 0
            if self.estimate_position:
                position_covariance = covariance[:self.dims, :self.dims]
                i = self.dims
            if self.estimate_power:
                power_variance = float(covariance[i, i])
                i += 1
            if self.estimate_exponent:
                exponent_variance = float(covariance[i, i])
        return RadioSourceEstimate(
            position=position,
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            position_covariance=position_covariance,
            transmitted_power_variance=power_variance,
            path_loss_exponent_variance=exponent_variance,
            covariance=covariance,
            **kwargs,
        )


def initial_rssi_values(
    path_loss_model: PathLossModel,
    positions: np.ndarray,
    rssi: np.ndarray,
    standard_deviations: np.ndarray,
    position: np.ndarray,
    transmitted_power_dbm: Optional[float],
    path_loss_exponent: float,
    solve_power: bool,
    solve_exponent: bool,
) -> Tuple[float, float]:
    """
    Seed power and exponent by weighted linear least squares at a fixed position.

    rssi_i = Pt - n * a_i with a_i = 10 log10(d_i / d0). Only the flagged
    unknowns are solved for, the other keeps its given value. A solved
    exponent that is not positive is discarded.

    Raises:
        NumericalInstabilityError: if the linear system is rank deficient
    """
    if not (solve_power or solve_exponent):
        return transmitted_power_dbm, path_loss_exponent

    attenuation = path_loss_model.attenuation_term(np.linalg.norm(positions - position, axis=1))
    rhs = np.array(rssi, dtype=float)
    columns = []
    if solve_power:
        columns.append(np.ones_like(rhs))
    else:
        rhs = rhs - transmitted_power_dbm
    if solve_exponent:
        columns.append(-attenuation)
    else:
        rhs = rhs + path_loss_exponent * attenuation

    a = np.column_stack(columns) / standard_deviations[:, np.newaxis]
    b = rhs / standard_deviations
    solution, _, rank, _ = np.linalg.lstsq(a, b, rcond=None)
    if rank < len(columns):
        raise NumericalInstabilityError("power/exponent seed system is rank deficient")

    i = 0
    if solve_power:
        transmitted_power_dbm = float(solution[0])
        i = 1
    if solve_exponent and solution[i] > 0:
        path_loss_exponent = float(solution[i])
    return transmitted_power_dbm, path_loss_exponent


def fit_rssi(parameters: RssiParameters, positions: np.ndarray, rssi: np.ndarray,
             standard_deviations: np.ndarray, max_iterations: int,
             scale_covariance: bool = True) -> FitResult:
    """Weighted Levenberg-Marquardt fit of the enabled RSSI unknowns."""
    def residuals(x):
        return (rssi - parameters.predict(positions, x)) / standard_deviations

    def jacobian(x):
        return -parameters.prediction_jacobian(positions, x) / standard_deviations[:, np.newaxis]

    fit = fit_least_squares(
        residuals,
        parameters.pack(),
        jacobian=jacobian,
        max_iterations=max_iterations,
        scale_covariance=scale_covariance,
    )
    _, _, exponent = parameters.unpack(fit.x)
    if exponent <= 0:
        raise EstimationError(f"fit converged to a non-positive path loss exponent: {exponent}")
    return fit


def rssi_standard_deviations(
    positions: np.ndarray,
    standard_deviations: np.ndarray,
    position_covariances: Optional[Sequence[Optional[np.ndarray]]],
    source_position: np.ndarray,
    path_loss_exponent: float,
) -> np.ndarray:
    """
    Fold reading position uncertainty into RSSI std.

    The distance std induced by a reference covariance maps to received
    power through |dPr/dd| = 10 n / (ln10 d).
    """
    if position_covariances is None:
        return standard_deviations
    distance_stds = fold_position_covariances(
        positions, np.zeros(positions.shape[0]), position_covariances, source_position
    )
    distances = np.maximum(np.linalg.norm(positions - source_position, axis=1), MIN_DISTANCE)
    gain = 10.0 * path_loss_exponent / (LN10 * distances)
    return np.sqrt(standard_deviations ** 2 + (gain * distance_stds) ** 2)


def estimate_ranging_position(
    positions: np.ndarray,
    distances: np.ndarray,
    standard_deviations: np.ndarray,
    position_covariances: Optional[Sequence[Optional[np.ndarray]]],
    initial_position: Optional[np.ndarray],
    config: RadioSourceConfig,
) -> FitResult:
    """
    Source position from ranging readings.

    A linear solution seeds the non-linear fit when no initial position
    is given.
    """
    lateration_config = config.lateration_config()
    if initial_position is None:
        solver = create_linear_solver(
            config.use_homogeneous_linear_solver,
            positions=positions,
            distances=distances,
            standard_deviations=standard_deviations,
            config=lateration_config,
        )
        initial_position = solver.solve()
    if position_covariances is not None:
        standard_deviations = fold_position_covariances(
            positions, standard_deviations, position_covariances, initial_position
        )
    return fit_lateration(
        positions, distances, standard_deviations, initial_position,
        max_iterations=lateration_config.max_iterations,
        scale_covariance=lateration_config.scale_covariance,
    )


def _position_covariances(readings, config: RadioSourceConfig) -> Optional[List[Optional[np.ndarray]]]:
    if not config.use_reading_position_covariances:
        return None
    covariances = [r.position_covariance for r in readings]
    if all(c is None for c in covariances):
        return None
    return covariances


def reading_positions(readings) -> np.ndarray:
    return np.vstack([r.position for r in readings])


def ranging_arrays(readings, config: RadioSourceConfig):
    """(positions, distances, stds, position covariances) of ranging readings."""
    positions = reading_positions(readings)
    distances = np.array([r.distance for r in readings], dtype=float)
    stds = np.array([
        r.distance_standard_deviation if r.distance_standard_deviation is not None
        else config.default_distance_std
        for r in readings
    ], dtype=float)
    return positions, distances, stds, _position_covariances(readings, config)


def rssi_arrays(readings, config: RadioSourceConfig):
    """(positions, rssi, stds, position covariances) of RSSI readings."""
    positions = reading_positions(readings)
    rssi = np.array([r.rssi_dbm for r in readings], dtype=float)
    stds = np.array([
        r.rssi_standard_deviation if r.rssi_standard_deviation is not None
        else config.default_rssi_std_db
        for r in readings
    ], dtype=float)
    return positions, rssi, stds, _position_covariances(readings, config)


def block_diagonal_covariance(position_covariance: Optional[np.ndarray],
                              rssi_covariance: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Joint covariance of two independent stages, None unless both are known."""
    if position_covariance is None or rssi_covariance is None:
        return None
    return scipy.linalg.block_diag(position_covariance, rssi_covariance)


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------

class RadioSourceEstimator(LockableEstimator, ABC):
    """
    Base class for radio source estimators.

    Holds readings, initial values and configuration; estimate() runs
    _estimate() under the RUNNING state and keeps its result.
    """

    reading_type = None

    def __init__(
        self,
        readings=None,
        config: Optional[RadioSourceConfig] = None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: Optional[float] = None,
        listener: Optional[Listener] = None,
    ):
        super().__init__(listener)
        self.config = config or RadioSourceConfig()
        self._readings: List = []
        self._initial_position = None
        self._initial_transmitted_power_dbm = None
        self._initial_path_loss_exponent = None
        self._result: Optional[RadioSourceEstimate] = None

        if readings is not None:
            self.readings = readings
        if initial_position is not None:
            self.initial_position = initial_position
        if initial_transmitted_power_dbm is not None:
            self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        if initial_path_loss_exponent is not None:
            self.initial_path_loss_exponent = initial_path_loss_exponent

    # -- inputs ---------------------------------------------------------------

    @property
    def readings(self) -> List:
        return list(self._readings)

    @readings.setter
    def readings(self, readings):
        self._check_unlocked()
        readings = list(readings)
        for reading in readings:
            if not isinstance(reading, self.reading_type):
                raise ValueError(
                    f"{type(self).__name__} expects {self.reading_type.__name__}, "
                    f"got {type(reading).__name__}"
                )
        if len({r.dims for r in readings}) > 1:
            raise ValueError("All readings must have the same number of dimensions")
        self._readings = readings

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position):
        self._check_unlocked()
        self._initial_position = None if position is None else as_position(position)

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        return self._initial_transmitted_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, power_dbm: Optional[float]):
        self._check_unlocked()
        self._initial_transmitted_power_dbm = None if power_dbm is None else float(power_dbm)

    @property
    def initial_transmitted_power_mw(self) -> Optional[float]:
        if self._initial_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self._initial_transmitted_power_dbm)

    @initial_transmitted_power_mw.setter
    def initial_transmitted_power_mw(self, power_mw: Optional[float]):
        self.initial_transmitted_power_dbm = None if power_mw is None else power_to_dbm(power_mw)

    @property
    def initial_path_loss_exponent(self) -> Optional[float]:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, exponent: Optional[float]):
        self._check_unlocked()
        if exponent is not None and exponent <= 0:
            raise ValueError(f"Path loss exponent must be positive: {exponent}")
        self._initial_path_loss_exponent = None if exponent is None else float(exponent)

    @property
    def path_loss_exponent_seed(self) -> float:
        """Initial exponent, or the nominal free-space value."""
        if self._initial_path_loss_exponent is not None:
            return self._initial_path_loss_exponent
        return RADIO_SOURCE_CONFIG["path_loss_exponent"]

    @property
    def number_of_dimensions(self) -> Optional[int]:
        if self._readings:
            return self._readings[0].dims
        if self._initial_position is not None:
            return self._initial_position.shape[0]
        return None

    @property
    @abstractmethod
    def min_required_readings(self) -> Optional[int]:
        """Minimum number of readings for the enabled unknowns."""

    @property
    def is_ready(self) -> bool:
        required = self.min_required_readings
        if required is None or len(self._readings) < required:
            return False
        return (self._initial_position is None
                or self._initial_position.shape[0] == self.number_of_dimensions)

    # -- results ----------------------------------------------------------------

    @property
    def result(self) -> Optional[RadioSourceEstimate]:
        """Result of the last successful estimate()."""
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_dbm

    @property
    def estimated_transmitted_power_mw(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_mw

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_variance

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return None if self._result is None else self._result.path_loss_exponent

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return None if self._result is None else self._result.path_loss_exponent_variance

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    # -- run --------------------------------------------------------------------

    def estimate(self) -> RadioSourceEstimate:
        """
        Estimate the radio source.

        Raises:
            LockedError: if already running
            NotReadyError: if readings or required initial values are missing
            EstimationError: on numerical failure
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(
                f"{type(self).__name__} is not ready: {len(self._readings)} readings, "
                f"{self.min_required_readings} required"
            )

        with self._running():
            self._result = None
            self.metrics.increment('radio_source_estimations')
            self._notify(EventType.START)

            self._result = self._estimate()

            self.metrics.increment('radio_source_successes')
            logger.info(
                "%s: position=%s power=%s dBm exponent=%.3f",
                type(self).__name__, self._result.position,
                self._result.transmitted_power_dbm, self._result.path_loss_exponent,
            )
            self._notify(EventType.END)

        return self._result

    @abstractmethod
    def _estimate(self) -> RadioSourceEstimate:
        """Compute the estimate from the current readings."""


class RssiRadioSourceEstimator(RadioSourceEstimator):
    """
    Radio source estimation from received power.

    Unknowns are the enabled subset of position, transmitted power and
    path loss exponent. Disabled ones are fixed at their initial value:
    an initial position is required when position estimation is disabled,
    an initial power when power estimation is disabled. The exponent
    falls back to the nominal free-space value.
    """

    reading_type = RssiReading

    @property
    def number_of_unknowns(self) -> Optional[int]:
        dims = self.number_of_dimensions
        if dims is None:
            return None
        config = self.config
        return ((dims if config.position_estimation_enabled else 0)
                + int(config.transmitted_power_estimation_enabled)
                + int(config.path_loss_estimation_enabled))

    @property
    def min_required_readings(self) -> Optional[int]:
        unknowns = self.number_of_unknowns
        return None if unknowns is None else unknowns + 1

    @property
    def is_ready(self) -> bool:
        config = self.config
        if self.number_of_unknowns == 0:
            return False
        if not config.position_estimation_enabled and self._initial_position is None:
            return False
        if (not config.transmitted_power_estimation_enabled
                and self._initial_transmitted_power_dbm is None):
            return False
        return super().is_ready

    def _make_parameters(self, positions, rssi, stds) -> RssiParameters:
        config = self.config
        position = self._initial_position
        if position is None:
            position = positions.mean(axis=0)
        power, exponent = initial_rssi_values(
            config.path_loss_model, positions, rssi, stds, position,
            self._initial_transmitted_power_dbm, self.path_loss_exponent_seed,
            solve_power=(config.transmitted_power_estimation_enabled
                         and self._initial_transmitted_power_dbm is None),
            solve_exponent=(config.path_loss_estimation_enabled
                            and self._initial_path_loss_exponent is None),
        )
        return RssiParameters(
            config.path_loss_model, position, power, exponent,
            estimate_position=config.position_estimation_enabled,
            estimate_power=config.transmitted_power_estimation_enabled,
            estimate_exponent=config.path_loss_estimation_enabled,
        )

    def _estimate(self) -> RadioSourceEstimate:
        config = self.config
        positions, rssi, stds, covariances = rssi_arrays(self._readings, config)
        parameters = self._make_parameters(positions, rssi, stds)
        stds = rssi_standard_deviations(positions, stds, covariances,
                                        parameters.position, parameters.path_loss_exponent)
        fit = fit_rssi(parameters, positions, rssi, stds,
                       config.max_iterations, config.scale_covariance)
        return parameters.to_estimate(fit.x, fit.covariance)


class RangingRadioSourceEstimator(RadioSourceEstimator):
    """
    Radio source position from ranging readings.

    Transmitted power and path loss exponent are not observable from
    distances and are echoed from their initial values.
    """

    reading_type = RangingReading

    @property
    def min_required_readings(self) -> Optional[int]:
        dims = self.number_of_dimensions
        return None if dims is None else dims + 1

    def _estimate(self) -> RadioSourceEstimate:
        positions, distances, stds, covariances = ranging_arrays(self._readings, self.config)
        fit = estimate_ranging_position(positions, distances, stds, covariances,
                                        self._initial_position, self.config)
        return RadioSourceEstimate(
            position=fit.x,
            transmitted_power_dbm=self._initial_transmitted_power_dbm,
            path_loss_exponent=self.path_loss_exponent_seed,
            position_covariance=fit.covariance,
            covariance=fit.covariance,
        )


class RangingAndRssiRadioSourceEstimator(RadioSourceEstimator):
    """
    Two-stage radio source estimation from combined readings.

    Position (and its covariance) comes from the ranging part. It is then
    frozen and fed to an RSSI estimator with position estimation disabled
    to obtain power and exponent. The joint covariance is block diagonal.
    """

    reading_type = RangingAndRssiReading

    def _rssi_stage_config(self) -> RadioSourceConfig:
        return replace(self.config, position_estimation_enabled=False)

    def _rssi_stage(self, position) -> RssiRadioSourceEstimator:
        return RssiRadioSourceEstimator(
            readings=[r.to_rssi_reading() for r in self._readings],
            config=self._rssi_stage_config(),
            initial_position=position,
            initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
            initial_path_loss_exponent=self._initial_path_loss_exponent,
        )

    @property
    def min_required_readings(self) -> Optional[int]:
        dims = self.number_of_dimensions
        if dims is None:
            return None
        if not self.config.rssi_unknowns_enabled:
            return dims + 1
        stage = RssiRadioSourceEstimator(config=self._rssi_stage_config(),
                                         initial_position=np.zeros(dims))
        return dims + stage.min_required_readings

    @property
    def is_ready(self) -> bool:
        if (not self.config.transmitted_power_estimation_enabled
                and self._initial_transmitted_power_dbm is None):
            return False
        return super().is_ready

    def _estimate(self) -> RadioSourceEstimate:
        ranging = [r.to_ranging_reading() for r in self._readings]
        positions, distances, stds, covariances = ranging_arrays(ranging, self.config)
        try:
            fit = estimate_ranging_position(positions, distances, stds, covariances,
                                            self._initial_position, self.config)
        except EstimationError as e:
            raise RadioSourceEstimationError(f"ranging stage failed: {e}") from e
        position, position_covariance = fit.x, fit.covariance

        if not self.config.rssi_unknowns_enabled:
            return RadioSourceEstimate(
                position=position,
                transmitted_power_dbm=self._initial_transmitted_power_dbm,
                path_loss_exponent=self.path_loss_exponent_seed,
                position_covariance=position_covariance,
                covariance=position_covariance,
            )

        try:
            rssi_estimate = self._rssi_stage(position).estimate()
        except EstimationError as e:
            raise RadioSourceEstimationError(f"RSSI stage failed: {e}") from e

        return RadioSourceEstimate(
            position=position,
            transmitted_power_dbm=rssi_estimate.transmitted_power_dbm,
            path_loss_exponent=rssi_estimate.path_loss_exponent,
            position_covariance=position_covariance,
            transmitted_power_variance=rssi_estimate.transmitted_power_variance,
            path_loss_exponent_variance=rssi_estimate.path_loss_exponent_variance,
            covariance=block_diagonal_covariance(position_covariance, rssi_estimate.covariance),
        )
