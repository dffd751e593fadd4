"""
Reading Message Schemas.

Observations tying a known reference position to a measured quantity:
a distance (ranging), a received power (RSSI) or both.

All readings carry the reference position and, optionally, its covariance
and the radio source that produced the measurement.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from rsl_core.config import LATERATION_CONFIG, RADIO_SOURCE_CONFIG


@dataclass
class RadioSource:
    """
    Radio emitter (WiFi access point, BLE beacon, UWB anchor...).

    Attributes:
        source_id: Identifier of the source (BSSID, beacon id...)
        transmitted_power_dbm: Equivalent transmitted power (dBm), if known
        path_loss_exponent: Path loss exponent of the source environment
        frequency_hz: Carrier frequency (Hz), if known
    """

    source_id: str
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: float = RADIO_SOURCE_CONFIG["path_loss_exponent"]
    frequency_hz: Optional[float] = None

    def __post_init__(self):
        if self.path_loss_exponent <= 0:
            raise ValueError(f"Path loss exponent must be positive: {self.path_loss_exponent}")
        if self.frequency_hz is not None and self.frequency_hz <= 0:
            raise ValueError(f"Frequency must be positive: {self.frequency_hz}")


def as_position(position) -> np.ndarray:
    """Convert a 2D/3D point to a float vector, validating its size."""
    pos = np.asarray(position, dtype=float).reshape(-1)
    if pos.shape[0] not in (2, 3):
        raise ValueError(f"Position must have 2 or 3 coordinates, got {pos.shape[0]}")
    if not np.all(np.isfinite(pos)):
        raise ValueError(f"Position must be finite: {pos}")
    return pos


def _as_covariance(covariance, dims: int) -> Optional[np.ndarray]:
    if covariance is None:
        return None
    cov = np.asarray(covariance, dtype=float)
    if cov.shape != (dims, dims):
        raise ValueError(f"Position covariance must be {dims}x{dims}, got {cov.shape}")
    return cov


def _check_std(name: str, value: Optional[float]):
    if value is not None and not value > 0:
        raise ValueError(f"{name} must be strictly positive: {value}")


def _check_distance(distance: float):
    if distance < 0:
        raise ValueError(f"Distance cannot be negative: {distance}")


@dataclass
class RangingReading:
    """
    Distance measured from a reference position.

    Attributes:
        position: Reference position (2 or 3 coordinates)
        distance: Measured distance (m)
        distance_standard_deviation: Ranging std (m), if available
        position_covariance: Covariance of the reference position, if known
        source: Radio source being ranged, if known
    """

    position: np.ndarray
    distance: float
    distance_standard_deviation: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None
    source: Optional[RadioSource] = None

    def __post_init__(self):
        self.position = as_position(self.position)
        self.position_covariance = _as_covariance(self.position_covariance, self.dims)
        _check_distance(self.distance)
        _check_std("Distance standard deviation", self.distance_standard_deviation)

    @property
    def dims(self) -> int:
        return self.position.shape[0]

    def get_distance_std(self, default: Optional[float] = None) -> float:
        """Ranging std, falling back to default or the configured nominal."""
        if self.distance_standard_deviation is not None:
            return self.distance_standard_deviation
        if default is not None:
            return default
        return LATERATION_CONFIG["default_distance_std"]


@dataclass
class RssiReading:
    """
    Received signal strength measured at a reference position.

    Attributes:
        position: Reference position (2 or 3 coordinates)
        rssi_dbm: Received power (dBm)
        rssi_standard_deviation: RSSI std (dB), if available
        position_covariance: Covariance of the reference position, if known
        source: Radio source that emitted the signal, if known
    """

    position: np.ndarray
    rssi_dbm: float
    rssi_standard_deviation: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None
    source: Optional[RadioSource] = None

    def __post_init__(self):
        self.position = as_position(self.position)
        self.position_covariance = _as_covariance(self.position_covariance, self.dims)
        _check_std("RSSI standard deviation", self.rssi_standard_deviation)

    @property
    def dims(self) -> int:
        return self.position.shape[0]

    def get_rssi_std(self, default: Optional[float] = None) -> float:
        """RSSI std, falling back to default or the configured nominal (1 dB)."""
        if self.rssi_standard_deviation is not None:
            return self.rssi_standard_deviation
        if default is not None:
            return default
        return RADIO_SOURCE_CONFIG["default_rssi_std_db"]


@dataclass
class RangingAndRssiReading:
    """Reading containing both a distance and a received power."""

    position: np.ndarray
    distance: float
    rssi_dbm: float
    distance_standard_deviation: Optional[float] = None
    rssi_standard_deviation: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None
    source: Optional[RadioSource] = None

    def __post_init__(self):
        self.position = as_position(self.position)
        self.position_covariance = _as_covariance(self.position_covariance, self.dims)
        _check_distance(self.distance)
        _check_std("Distance standard deviation", self.distance_standard_deviation)
        _check_std("RSSI standard deviation", self.rssi_standard_deviation)

    @property
    def dims(self) -> int:
        return self.position.shape[0]

    def to_ranging_reading(self) -> RangingReading:
        """Ranging part of this reading."""
        return RangingReading(
            position=self.position,
            distance=self.distance,
            distance_standard_deviation=self.distance_standard_deviation,
            position_covariance=self.position_covariance,
            source=self.source,
        )

    def to_rssi_reading(self) -> RssiReading:
        """RSSI part of this reading."""
        return RssiReading(
            position=self.position,
            rssi_dbm=self.rssi_dbm,
            rssi_standard_deviation=self.rssi_standard_deviation,
            position_covariance=self.position_covariance,
            source=self.source,
        )
