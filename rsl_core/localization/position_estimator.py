"""
Mixed Position Estimator.

Locates a receiver from a mix of readings:

- RangingReading: used as is
- RssiReading: turned into a distance through the path loss model of its
  source, which must have a known transmitted power
- RangingAndRssiReading: its ranging part is used

RSSI distances get the first-order propagated std
sigma_d = d * ln(10) / (10 n) * sigma_rssi. All distances then go
through robust lateration.

Usage:
    estimator = MixedPositionEstimator(readings, method=RobustEstimatorMethod.RANSAC,
                                       config=RobustEstimatorConfig(threshold=0.5))
    estimate = estimator.solve()
"""

import logging
from typing import List, Optional, Tuple

import numpy as np

from rsl_core.config import RADIO_SOURCE_CONFIG
from rsl_core.errors import NotReadyError
from rsl_core.localization.lateration_solver import LaterationSolverConfig
from rsl_core.localization.lifecycle import Listener, LockableEstimator
from rsl_core.localization.power import PathLossModel
from rsl_core.localization.robust_estimator import RobustEstimatorConfig, RobustEstimatorMethod
from rsl_core.localization.robust_lateration import RobustLaterationSolver
from rsl_core.proto.estimates import EstimationEvent, EventType, PositionEstimate
from rsl_core.proto.readings import RangingAndRssiReading, RangingReading, RssiReading

logger = logging.getLogger(__name__)

_READING_TYPES = (RangingReading, RssiReading, RangingAndRssiReading)


def path_loss_model_for(source) -> PathLossModel:
    """Friis model when the source frequency is known, default model otherwise."""
    if source.frequency_hz is not None:
        return PathLossModel.from_frequency(source.frequency_hz)
    return PathLossModel()


def reading_to_range(
    reading,
    default_distance_std: Optional[float] = None,
    default_rssi_std: Optional[float] = None,
) -> Tuple[np.ndarray, float, float, Optional[np.ndarray]]:
    """
    (position, distance, distance std, position covariance) of a reading.

    Readings without a std use the given defaults, or the configured
    nominals when those are None.
    """
    if isinstance(reading, RangingAndRssiReading):
        reading = reading.to_ranging_reading()
    if isinstance(reading, RangingReading):
        return (reading.position, reading.distance, reading.get_distance_std(default_distance_std),
                reading.position_covariance)

    source = reading.source
    model = path_loss_model_for(source)
    distance = model.distance(reading.rssi_dbm, source.transmitted_power_dbm,
                             source.path_loss_exponent)
    std = model.distance_std(distance, reading.get_rssi_std(default_rssi_std),
                             source.path_loss_exponent)
    return reading.position, distance, std, reading.position_covariance


class MixedPositionEstimator(LockableEstimator):
    """
    Robust receiver positioning from ranging and RSSI readings.

    Quality scores, when used (PROSAC/PROMedS), follow the reading order.
    """

    def __init__(
        self,
        readings=None,
        method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS,
        config: Optional[RobustEstimatorConfig] = None,
        quality_scores=None,
        lateration_config: Optional[LaterationSolverConfig] = None,
        use_reading_position_covariances: bool = True,
        default_rssi_std_db: float = RADIO_SOURCE_CONFIG["default_rssi_std_db"],
        listener: Optional[Listener] = None,
        random_state=None,
    ):
        super().__init__(listener)
        if default_rssi_std_db <= 0:
            raise ValueError(f"default_rssi_std_db must be positive: {default_rssi_std_db}")
        self.config = config or RobustEstimatorConfig()
        self._lateration_config = lateration_config or LaterationSolverConfig()
        self._use_reading_position_covariances = use_reading_position_covariances
        self._default_rssi_std_db = default_rssi_std_db
        self._method = RobustEstimatorMethod(method)
        self._random_state = random_state
        self._readings: List = []
        self._quality_scores = None
        self._result: Optional[PositionEstimate] = None

        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores

    @property
    def readings(self) -> List:
        return list(self._readings)

    @readings.setter
    def readings(self, readings):
        self._check_unlocked()
        readings = list(readings)
        for reading in readings:
            if not isinstance(reading, _READING_TYPES):
                raise ValueError(f"Unsupported reading type: {type(reading).__name__}")
            if isinstance(reading, RssiReading) and (
                    reading.source is None or reading.source.transmitted_power_dbm is None):
                raise ValueError("RSSI readings need a source with known transmitted power")
        if len({r.dims for r in readings}) > 1:
            raise ValueError("All readings must have the same number of dimensions")
        self._readings = readings

    @property
    def lateration_config(self) -> LaterationSolverConfig:
        """Nominal ranging std and refinement settings."""
        return self._lateration_config

    @lateration_config.setter
    def lateration_config(self, lateration_config: LaterationSolverConfig):
        self._check_unlocked()
        self._lateration_config = lateration_config

    @property
    def use_reading_position_covariances(self) -> bool:
        return self._use_reading_position_covariances

    @use_reading_position_covariances.setter
    def use_reading_position_covariances(self, enabled: bool):
        self._check_unlocked()
        self._use_reading_position_covariances = enabled

    @property
    def default_rssi_std_db(self) -> float:
        """RSSI std (dB) for readings without one."""
        return self._default_rssi_std_db

    @default_rssi_std_db.setter
    def default_rssi_std_db(self, std: float):
        self._check_unlocked()
        if std <= 0:
            raise ValueError(f"default_rssi_std_db must be positive: {std}")
        self._default_rssi_std_db = std

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
    def number_of_dimensions(self) -> Optional[int]:
        return self._readings[0].dims if self._readings else None

    @property
    def min_required_readings(self) -> Optional[int]:
        dims = self.number_of_dimensions
        return None if dims is None else dims + 1

    @property
    def is_ready(self) -> bool:
        required = self.min_required_readings
        if required is None or len(self._readings) < required:
            return False
        if self._method.uses_quality_scores:
            return (self._quality_scores is not None
                    and self._quality_scores.shape[0] == len(self._readings))
        return True

    @property
    def result(self) -> Optional[PositionEstimate]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    def _forward(self, event: EstimationEvent):
        if event.type in (EventType.ITERATION, EventType.PROGRESS):
            self._notify(event.type, iteration=event.iteration, progress=event.progress)

    def solve(self) -> PositionEstimate:
        """
        Estimate the receiver position.

        Raises:
            LockedError: if already running
            NotReadyError: if there are too few readings or quality scores are missing
            EstimationError: if no consensus was found
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(
                f"MixedPositionEstimator is not ready: {len(self._readings)} readings, "
                f"{self.min_required_readings} required"
            )

        with self._running():
            self._result = None
            self._notify(EventType.START)

            ranges = [
                reading_to_range(r, self._lateration_config.default_distance_std,
                                 self._default_rssi_std_db)
                for r in self._readings
            ]
            positions = np.vstack([r[0] for r in ranges])
            distances = np.array([r[1] for r in ranges], dtype=float)
            stds = np.array([r[2] for r in ranges], dtype=float)
            covariances = None
            if self._use_reading_position_covariances and any(r[3] is not None for r in ranges):
                covariances = [r[3] for r in ranges]

            solver = RobustLaterationSolver(
                positions, distances, stds,
                method=self._method,
                config=self.config,
                quality_scores=self._quality_scores,
                position_covariances=covariances,
                lateration_config=self._lateration_config,
                listener=self._forward,
                random_state=self._random_state,
            )
            self._result = solver.solve()

            num_rssi = sum(isinstance(r, RssiReading) for r in self._readings)
            logger.info(
                "MixedPositionEstimator: position=%s from %d readings (%d RSSI)",
                self._result.position, len(self._readings), num_rssi,
            )
            self._notify(EventType.END)

        return self._result
