"""
Unit tests for radio source estimators.

Tests cover:
- RSSI estimation of transmitted power, position and path loss exponent
- Ranging and two-stage ranging + RSSI estimation
- Block diagonal joint covariance
- Readiness and minimum reading counts
- Robust variants with outlying readings
"""

import numpy as np
import pytest

from rsl_core.errors import ConvergenceError, LockedError, NotReadyError, RadioSourceEstimationError
from rsl_core.localization import (
    PathLossModel,
    RadioSourceConfig,
    RangingAndRssiRadioSourceEstimator,
    RangingRadioSourceEstimator,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    RobustRangingAndRssiRadioSourceEstimator,
    RobustRangingRadioSourceEstimator,
    RobustRssiRadioSourceEstimator,
    RssiRadioSourceEstimator,
    dbm_to_power,
)
from rsl_core.proto import EstimatorState, EventType, RangingAndRssiReading, RangingReading, RssiReading

from tests.conftest import exact_distances, make_ranging_readings, make_rssi_readings

ALL_METHODS = list(RobustEstimatorMethod)

EXTRA_REFERENCES_2D = np.array([[5.0, 10.0], [15.0, 5.0], [12.0, 12.0]])


def quality_for(outliers: np.ndarray) -> np.ndarray:
    """Quality scores favouring inliers, decreasing with index."""
    return np.where(outliers, 0.2, 1.0) - 0.001 * np.arange(outliers.shape[0])


def power_only_config(**kwargs) -> RadioSourceConfig:
    return RadioSourceConfig(position_estimation_enabled=False, **kwargs)


# =============================================================================
# RSSI
# =============================================================================


class TestRssiRadioSourceEstimator:
    """Tests for RSSI radio source estimation."""

    def test_power_at_known_position(self, path_loss_model):
        """Source at the origin, references at 1, 2 and 4 m, n = 2."""
        positions = np.array([[1.0, 0.0], [2.0, 0.0], [4.0, 0.0]])
        readings = make_rssi_readings(positions, [0.0, 0.0], 0.0, 2.0, path_loss_model)
        np.testing.assert_allclose([r.rssi_dbm for r in readings], [0.0, -6.0206, -12.0412],
                                   atol=1e-4)

        estimator = RssiRadioSourceEstimator(readings, config=power_only_config(),
                                             initial_position=[0.0, 0.0])
        assert estimator.min_required_readings == 2

        estimate = estimator.estimate()

        assert estimate.transmitted_power_dbm == pytest.approx(0.0, abs=1e-6)
        assert estimate.path_loss_exponent == 2.0
        np.testing.assert_array_equal(estimate.position, [0.0, 0.0])
        assert estimate.position_covariance is None
        assert estimate.transmitted_power_variance is not None
        assert estimate.path_loss_exponent_variance is None
        assert estimator.state == EstimatorState.DONE

    def test_position_and_power(self, rssi_readings_2d):
        readings, source = rssi_readings_2d
        estimator = RssiRadioSourceEstimator(readings, initial_position=[7.0, 5.0])
        assert estimator.min_required_readings == 4

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-4)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-4)
        assert estimate.covariance.shape == (3, 3)
        assert estimate.position_covariance.shape == (2, 2)
        np.testing.assert_allclose(estimator.estimated_position, estimate.position)

    def test_position_power_and_exponent(self, references_2d, path_loss_model):
        positions = np.vstack([references_2d, EXTRA_REFERENCES_2D])
        source = np.array([8.0, 6.0])
        readings = make_rssi_readings(positions, source, -10.0, 2.5, path_loss_model)
        config = RadioSourceConfig(path_loss_estimation_enabled=True)
        estimator = RssiRadioSourceEstimator(readings, config=config, initial_position=[7.0, 5.0])
        assert estimator.min_required_readings == 5

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-3)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-3)
        assert estimate.path_loss_exponent == pytest.approx(2.5, abs=1e-4)
        assert estimate.covariance.shape == (4, 4)
        assert estimator.estimated_path_loss_exponent_variance is not None

    def test_power_disabled_echoes_initial(self, rssi_readings_2d):
        readings, source = rssi_readings_2d
        config = RadioSourceConfig(transmitted_power_estimation_enabled=False)
        estimator = RssiRadioSourceEstimator(readings, config=config,
                                             initial_position=[7.0, 5.0],
                                             initial_transmitted_power_dbm=-10.0)

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-4)
        assert estimate.transmitted_power_dbm == -10.0
        assert estimate.transmitted_power_variance is None

    def test_power_in_milliwatts(self, rssi_readings_2d):
        readings, _ = rssi_readings_2d
        estimator = RssiRadioSourceEstimator(readings, initial_position=[7.0, 5.0])
        estimator.initial_transmitted_power_mw = 1.0
        assert estimator.initial_transmitted_power_dbm == pytest.approx(0.0)

        estimator.estimate()

        assert estimator.estimated_transmitted_power_mw == pytest.approx(dbm_to_power(-10.0), rel=1e-4)

    def test_position_covariances_widen_power_variance(self, path_loss_model):
        """Reference position uncertainty inflates the RSSI variances."""
        positions = np.array([[1.0, 0.0], [2.0, 0.0], [4.0, 0.0], [0.0, 3.0]])
        plain = make_rssi_readings(positions, [0.0, 0.0], -5.0, 2.0, path_loss_model, std=1.0)
        uncertain = [
            RssiReading(position=r.position, rssi_dbm=r.rssi_dbm, rssi_standard_deviation=1.0,
                        position_covariance=np.eye(2) * 0.25)
            for r in plain
        ]

        def power_variance(readings, use_covariances=True):
            config = power_only_config(scale_covariance=False,
                                       use_reading_position_covariances=use_covariances)
            estimator = RssiRadioSourceEstimator(readings, config=config, initial_position=[0.0, 0.0])
            return estimator.estimate().transmitted_power_variance

        assert power_variance(plain) == pytest.approx(0.25)
        assert power_variance(uncertain) > power_variance(plain)
        assert power_variance(uncertain, use_covariances=False) == pytest.approx(0.25)

    def test_not_ready(self, rssi_readings_2d):
        readings, _ = rssi_readings_2d

        assert not RssiRadioSourceEstimator().is_ready
        assert not RssiRadioSourceEstimator(readings[:3]).is_ready
        assert not RssiRadioSourceEstimator(readings, config=power_only_config()).is_ready
        assert not RssiRadioSourceEstimator(
            readings, config=RadioSourceConfig(transmitted_power_estimation_enabled=False)
        ).is_ready
        assert not RssiRadioSourceEstimator(
            readings,
            config=RadioSourceConfig(position_estimation_enabled=False,
                                     transmitted_power_estimation_enabled=False),
            initial_position=[0.0, 0.0],
            initial_transmitted_power_dbm=-10.0,
        ).is_ready
        with pytest.raises(NotReadyError):
            RssiRadioSourceEstimator(readings[:3]).estimate()

    def test_rejects_other_reading_types(self, references_2d):
        with pytest.raises(ValueError):
            RssiRadioSourceEstimator(make_ranging_readings(references_2d, [1.0, 1.0]))

    def test_rejects_mixed_dimensions(self):
        readings = [RssiReading(position=[0.0, 0.0], rssi_dbm=-40.0),
                    RssiReading(position=[1.0, 0.0, 0.0], rssi_dbm=-42.0)]
        with pytest.raises(ValueError):
            RssiRadioSourceEstimator(readings)

    def test_invalid_initial_exponent(self):
        with pytest.raises(ValueError):
            RssiRadioSourceEstimator(initial_path_loss_exponent=0.0)

    def test_locked_while_running(self, rssi_readings_2d):
        readings, _ = rssi_readings_2d
        errors = []

        def listener(event):
            if event.type == EventType.START:
                for mutate in (
                    lambda: setattr(event.source, 'readings', []),
                    lambda: setattr(event.source, 'initial_position', [0.0, 0.0]),
                    lambda: event.source.configure(max_iterations=5),
                    lambda: setattr(event.source, 'config', RadioSourceConfig()),
                ):
                    try:
                        mutate()
                    except LockedError as e:
                        errors.append(e)

        estimator = RssiRadioSourceEstimator(readings, initial_position=[7.0, 5.0],
                                             listener=listener)
        estimator.estimate()

        assert len(errors) == 4
        assert len(estimator.readings) == 5


# =============================================================================
# Ranging
# =============================================================================


class TestRangingRadioSourceEstimator:
    """Tests for ranging radio source estimation."""

    def test_exact_position(self, references_2d):
        source = np.array([8.0, 6.0])
        estimator = RangingRadioSourceEstimator(make_ranging_readings(references_2d, source, std=0.1))
        assert estimator.min_required_readings == 3

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-6)
        assert estimate.position_covariance.shape == (2, 2)
        assert estimate.transmitted_power_dbm is None
        assert estimate.path_loss_exponent == 2.0

    def test_echoes_power_and_exponent(self, references_3d):
        source = np.array([6.0, 5.0, 3.0])
        estimator = RangingRadioSourceEstimator(make_ranging_readings(references_3d, source),
                                                initial_transmitted_power_dbm=-5.0,
                                                initial_path_loss_exponent=3.0)
        assert estimator.min_required_readings == 4

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-6)
        assert estimate.transmitted_power_dbm == -5.0
        assert estimate.path_loss_exponent == 3.0

    def test_not_ready(self, references_2d):
        estimator = RangingRadioSourceEstimator(make_ranging_readings(references_2d[:2], [1.0, 1.0]))

        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()


# =============================================================================
# Ranging + RSSI
# =============================================================================


class TestRangingAndRssiRadioSourceEstimator:
    """Tests for two-stage ranging + RSSI estimation."""

    def test_exact_readings(self, ranging_and_rssi_readings_2d):
        readings, source = ranging_and_rssi_readings_2d
        estimator = RangingAndRssiRadioSourceEstimator(readings)
        assert estimator.min_required_readings == 4

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-6)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-4)
        assert estimate.path_loss_exponent == 2.0

    def test_min_required_readings(self, ranging_and_rssi_readings_2d):
        readings, _ = ranging_and_rssi_readings_2d

        with_exponent = RangingAndRssiRadioSourceEstimator(
            readings, config=RadioSourceConfig(path_loss_estimation_enabled=True))
        ranging_only = RangingAndRssiRadioSourceEstimator(
            readings, config=RadioSourceConfig(transmitted_power_estimation_enabled=False))

        assert with_exponent.min_required_readings == 5
        assert ranging_only.min_required_readings == 3
        assert not ranging_only.is_ready
        ranging_only.initial_transmitted_power_dbm = -7.0
        assert ranging_only.is_ready

    def test_block_diagonal_covariance(self, path_loss_model):
        """Noisy readings: the joint covariance has independent blocks."""
        rng = np.random.default_rng(21)
        positions = rng.uniform(-20.0, 20.0, size=(10, 2))
        source = np.array([3.0, -2.0])
        distances = exact_distances(positions, source)
        rssi = path_loss_model.received_power(distances, -10.0, 2.0)
        readings = [
            RangingAndRssiReading(position=p, distance=d + rng.normal(0.0, 0.05),
                                  rssi_dbm=r + rng.normal(0.0, 0.5),
                                  distance_standard_deviation=0.05, rssi_standard_deviation=0.5)
            for p, d, r in zip(positions, distances, rssi)
        ]

        estimate = RangingAndRssiRadioSourceEstimator(readings).estimate()

        np.testing.assert_allclose(estimate.position, source, atol=0.2)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1.5)
        covariance = estimate.covariance
        assert covariance.shape == (3, 3)
        np.testing.assert_array_equal(covariance[:2, 2], 0.0)
        np.testing.assert_array_equal(covariance[2, :2], 0.0)
        np.testing.assert_allclose(covariance[:2, :2], estimate.position_covariance)
        assert covariance[2, 2] == pytest.approx(estimate.transmitted_power_variance)
        assert np.all(np.diag(covariance) > 0)

    def test_rssi_unknowns_disabled(self, ranging_and_rssi_readings_2d):
        readings, source = ranging_and_rssi_readings_2d
        estimator = RangingAndRssiRadioSourceEstimator(
            readings,
            config=RadioSourceConfig(transmitted_power_estimation_enabled=False),
            initial_transmitted_power_dbm=-7.0,
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-6)
        assert estimate.transmitted_power_dbm == -7.0
        np.testing.assert_array_equal(estimate.covariance, estimate.position_covariance)

    def test_rssi_stage_failure(self, ranging_and_rssi_readings_2d, monkeypatch):
        readings, _ = ranging_and_rssi_readings_2d

        def failing_fit(*args, **kwargs):
            raise ConvergenceError("evaluation cap reached")

        monkeypatch.setattr("rsl_core.localization.radio_source_estimator.fit_rssi", failing_fit)
        estimator = RangingAndRssiRadioSourceEstimator(readings)

        with pytest.raises(RadioSourceEstimationError) as exc_info:
            estimator.estimate()

        assert isinstance(exc_info.value.__cause__, ConvergenceError)
        assert estimator.state == EstimatorState.IDLE
        assert estimator.result is None


# =============================================================================
# Robust Variants
# =============================================================================


class TestRobustRadioSourceEstimators:
    """Tests for robust radio source estimators."""

    @pytest.fixture
    def power_outliers(self, path_loss_model):
        """10 RSSI readings of a source at the origin, 3 of them 10 dB off."""
        rng = np.random.default_rng(77)
        positions = rng.uniform(1.0, 30.0, size=(10, 2))
        readings = make_rssi_readings(positions, [0.0, 0.0], -10.0, 2.0, path_loss_model)
        outliers = np.zeros(10, dtype=bool)
        outliers[[2, 5, 9]] = True
        for i in np.flatnonzero(outliers):
            readings[i].rssi_dbm += 10.0
        return readings, outliers

    @pytest.mark.parametrize("method", ALL_METHODS)
    def test_robust_power(self, method, power_outliers):
        readings, outliers = power_outliers
        estimator = RobustRssiRadioSourceEstimator(
            readings,
            config=power_only_config(),
            method=method,
            quality_scores=quality_for(outliers),
            initial_position=[0.0, 0.0],
            random_state=5,
        )
        estimator.configure_robust(keep_inliers=True)
        assert estimator.robust_config.threshold == 0.5

        estimate = estimator.estimate()

        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-6)
        np.testing.assert_array_equal(estimate.inliers_data.inliers, ~outliers)
        assert estimate.refined
        assert estimator.inliers_data is estimate.inliers_data

    def test_robust_position_and_power(self, references_2d, path_loss_model):
        rng = np.random.default_rng(3)
        positions = rng.uniform(-20.0, 30.0, size=(12, 2))
        source = np.array([8.0, 6.0])
        readings = make_rssi_readings(positions, source, -10.0, 2.0, path_loss_model)
        for i in (0, 4, 7):
            readings[i].rssi_dbm -= 8.0

        estimator = RobustRssiRadioSourceEstimator(readings, method=RobustEstimatorMethod.RANSAC,
                                                   random_state=1)
        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, source, atol=1e-4)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-4)
        assert estimate.inliers_data.num_inliers == 9

    def test_robust_ranging(self, outlier_ranging_2d):
        positions, distances, true_position, outliers = outlier_ranging_2d
        readings = [RangingReading(position=p, distance=d) for p, d in zip(positions, distances)]
        estimator = RobustRangingRadioSourceEstimator(
            readings,
            method=RobustEstimatorMethod.MSAC,
            robust_config=RobustEstimatorConfig(threshold=0.1, keep_inliers=True),
            initial_transmitted_power_dbm=-3.0,
            random_state=0,
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, true_position, atol=1e-6)
        np.testing.assert_array_equal(estimate.inliers_data.inliers, ~outliers)
        assert estimate.transmitted_power_dbm == -3.0
        assert estimate.refined

    def test_robust_ranging_and_rssi(self, outlier_ranging_2d, path_loss_model):
        """Both stages reject their own outliers."""
        positions, distances, true_position, ranging_outliers = outlier_ranging_2d
        rssi = path_loss_model.received_power(exact_distances(positions, true_position), -10.0, 2.0)
        rssi_outliers = np.zeros(20, dtype=bool)
        rssi_outliers[[0, 5, 12]] = True
        rssi[rssi_outliers] += 12.0
        readings = [RangingAndRssiReading(position=p, distance=d, rssi_dbm=r)
                    for p, d, r in zip(positions, distances, rssi)]

        estimator = RobustRangingAndRssiRadioSourceEstimator(
            readings,
            method=RobustEstimatorMethod.RANSAC,
            robust_config=RobustEstimatorConfig(threshold=0.1, keep_inliers=True),
            rssi_robust_config=RobustEstimatorConfig(threshold=0.5, keep_inliers=True),
            random_state=8,
        )
        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, true_position, atol=1e-6)
        assert estimate.transmitted_power_dbm == pytest.approx(-10.0, abs=1e-4)
        np.testing.assert_array_equal(estimator.ranging_inliers_data.inliers, ~ranging_outliers)
        np.testing.assert_array_equal(estimator.rssi_inliers_data.inliers, ~rssi_outliers)
        assert estimate.inliers_data is estimator.ranging_inliers_data
        assert estimate.refined
        assert estimate.covariance.shape == (3, 3)

    def test_rssi_stage_config_locked_while_running(self, outlier_ranging_2d, path_loss_model):
        positions, distances, true_position, _ = outlier_ranging_2d
        rssi = path_loss_model.received_power(exact_distances(positions, true_position), -10.0, 2.0)
        readings = [RangingAndRssiReading(position=p, distance=d, rssi_dbm=r)
                    for p, d, r in zip(positions, distances, rssi)]
        errors = []

        def listener(event):
            if event.type == EventType.START:
                try:
                    event.source.rssi_robust_config = RobustEstimatorConfig(threshold=9.0)
                except LockedError as e:
                    errors.append(e)

        estimator = RobustRangingAndRssiRadioSourceEstimator(readings, listener=listener,
                                                             random_state=0)
        estimator.estimate()

        assert len(errors) == 1
        assert estimator.rssi_robust_config.threshold == 0.5

    def test_progressive_needs_matching_scores(self, power_outliers):
        readings, _ = power_outliers
        estimator = RobustRssiRadioSourceEstimator(readings, config=power_only_config(),
                                                   method=RobustEstimatorMethod.PROSAC,
                                                   initial_position=[0.0, 0.0])
        assert not estimator.is_ready

        estimator.quality_scores = np.ones(4)
        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()

        estimator.quality_scores = np.ones(10)
        assert estimator.is_ready

    def test_robust_config_locked_while_running(self, power_outliers):
        readings, _ = power_outliers
        errors = []

        def listener(event):
            if event.type == EventType.ITERATION and not errors:
                for mutate in (
                    lambda: event.source.configure_robust(threshold=3.0),
                    lambda: setattr(event.source, 'robust_config', RobustEstimatorConfig()),
                ):
                    try:
                        mutate()
                    except LockedError as e:
                        errors.append(e)

        estimator = RobustRssiRadioSourceEstimator(readings, config=power_only_config(),
                                                   initial_position=[0.0, 0.0],
                                                   listener=listener, random_state=0)
        estimator.estimate()

        assert len(errors) == 2
        assert estimator.robust_config.threshold == 0.5
