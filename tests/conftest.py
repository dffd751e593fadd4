"""
Pytest configuration and shared fixtures for RSL core tests.

This module provides reusable reference layouts, reading factories and
helpers for testing lateration, robust estimation and radio source
estimation.
"""

import math
from typing import List, Sequence, Tuple

import numpy as np
import pytest

from rsl_core.localization.power import PathLossModel
from rsl_core.metrics import get_metrics, reset_metrics
from rsl_core.proto import RangingAndRssiReading, RangingReading, RssiReading


# =============================================================================
# Metrics
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """
    Reset the global metrics collector around every test.

    Returns:
        The MetricsCollector used by the test.
    """
    reset_metrics()
    yield get_metrics()
    reset_metrics()


# =============================================================================
# Reference Layout Fixtures
# =============================================================================


@pytest.fixture
def references_2d() -> np.ndarray:
    """
    Five well spread 2D reference positions (m).

    Returns:
        (5, 2) array.
    """
    return np.array([
        [0.0, 0.0],
        [20.0, 0.0],
        [20.0, 15.0],
        [0.0, 15.0],
        [10.0, -5.0],
    ])


@pytest.fixture
def references_3d() -> np.ndarray:
    """
    Six non-coplanar 3D reference positions (m).

    Returns:
        (6, 3) array.
    """
    return np.array([
        [0.0, 0.0, 0.0],
        [20.0, 0.0, 2.0],
        [20.0, 15.0, 5.0],
        [0.0, 15.0, 1.0],
        [10.0, 7.0, 12.0],
        [5.0, -6.0, 8.0],
    ])


@pytest.fixture
def circle_references_2d() -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Scenario: true position (0, 0), references on a circle of radius 10.

    Returns:
        (positions, distances, true_position)
    """
    positions = np.array([[10.0, 0.0], [0.0, 10.0], [-10.0, 0.0]])
    distances = np.array([10.0, 10.0, 10.0])
    return positions, distances, np.array([0.0, 0.0])


@pytest.fixture
def outlier_ranging_2d() -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    20 exact 2D ranges to (7, 4) with 6 (30%) gross outliers.

    Returns:
        (positions, distances, true_position, outlier_mask)
    """
    rng = np.random.default_rng(1234)
    true_position = np.array([7.0, 4.0])
    positions = rng.uniform(-30.0, 30.0, size=(20, 2))
    distances = exact_distances(positions, true_position)
    outliers = np.zeros(20, dtype=bool)
    outliers[[1, 4, 8, 11, 15, 18]] = True
    distances[outliers] += rng.uniform(5.0, 20.0, size=outliers.sum())
    return positions, distances, true_position, outliers


# =============================================================================
# Reading Factories
# =============================================================================


@pytest.fixture
def path_loss_model() -> PathLossModel:
    """Log-distance model with d0 = 1 m."""
    return PathLossModel(reference_distance=1.0)


@pytest.fixture
def rssi_readings_2d(references_2d, path_loss_model) -> Tuple[List[RssiReading], np.ndarray]:
    """
    Exact RSSI readings of a source at (8, 6) with Pt = -10 dBm, n = 2.

    Returns:
        (readings, true_position)
    """
    source = np.array([8.0, 6.0])
    readings = make_rssi_readings(references_2d, source, -10.0, 2.0, path_loss_model)
    return readings, source


@pytest.fixture
def ranging_and_rssi_readings_2d(references_2d, path_loss_model):
    """
    Exact combined readings of a source at (8, 6) with Pt = -10 dBm, n = 2.

    Returns:
        (readings, true_position)
    """
    source = np.array([8.0, 6.0])
    distances = exact_distances(references_2d, source)
    rssi = path_loss_model.received_power(distances, -10.0, 2.0)
    readings = [
        RangingAndRssiReading(position=p, distance=d, rssi_dbm=r,
                              distance_standard_deviation=0.01, rssi_standard_deviation=0.5)
        for p, d, r in zip(references_2d, distances, rssi)
    ]
    return readings, source


# =============================================================================
# Helper Functions
# =============================================================================


def exact_distances(positions: np.ndarray, point: Sequence[float]) -> np.ndarray:
    """
    Euclidean distance from every reference to a point.

    Args:
        positions: (n, dims) reference positions.
        point: Point with dims coordinates.

    Returns:
        (n,) distances.
    """
    return np.linalg.norm(np.asarray(positions, dtype=float) - np.asarray(point, dtype=float), axis=1)


def make_ranging_readings(positions, point, std: float = None) -> List[RangingReading]:
    """Exact ranging readings from each reference to a point."""
    return [
        RangingReading(position=p, distance=d, distance_standard_deviation=std)
        for p, d in zip(positions, exact_distances(positions, point))
    ]


def make_rssi_readings(positions, point, transmitted_power_dbm: float,
                       path_loss_exponent: float, model: PathLossModel,
                       std: float = None) -> List[RssiReading]:
    """Exact RSSI readings from each reference to a source."""
    rssi = model.received_power(exact_distances(positions, point),
                                transmitted_power_dbm, path_loss_exponent)
    return [
        RssiReading(position=p, rssi_dbm=r, rssi_standard_deviation=std)
        for p, r in zip(positions, rssi)
    ]


def free_space_loss_db(distance: float) -> float:
    """10 * 2 * log10(d): attenuation for n = 2 and d0 = 1 m."""
    return 20.0 * math.log10(distance)
