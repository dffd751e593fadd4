"""
Power units and log-distance path loss model.

Received power follows the log-distance model

    Pr(dBm) = Pt(dBm) - 10 * n * log10(d / d0)

where n is the path loss exponent and d0 the reference distance at which
Pr equals Pt. For an isotropic emitter in free space (Friis), d0 is
lambda / (4 * pi) = c / (4 * pi * f), so a carrier frequency fully
determines the reference distance.
"""

import math
from dataclasses import dataclass

import numpy as np

from rsl_core.config import RADIO_SOURCE_CONFIG

SPEED_OF_LIGHT = 299792458.0

# Distances below this are clamped to keep log10 finite
MIN_DISTANCE = 1e-9


def dbm_to_power(dbm: float) -> float:
    """Convert dBm to milliwatts."""
    return 10.0 ** (dbm / 10.0)


def power_to_dbm(mw: float) -> float:
    """Convert milliwatts to dBm."""
    if mw <= 0:
        raise ValueError(f"Power must be positive: {mw}")
    return 10.0 * math.log10(mw)


@dataclass(frozen=True)
class PathLossModel:
    """
    Log-distance path loss model.

    Attributes:
        reference_distance: Distance d0 (m) at which received power equals
            transmitted power
    """

    reference_distance: float = RADIO_SOURCE_CONFIG["reference_distance_m"]

    def __post_init__(self):
        if self.reference_distance <= 0:
            raise ValueError(f"Reference distance must be positive: {self.reference_distance}")

    @classmethod
    def from_frequency(cls, frequency_hz: float) -> "PathLossModel":
        """Friis model for a carrier frequency: d0 = c / (4 * pi * f)."""
        if frequency_hz <= 0:
            raise ValueError(f"Frequency must be positive: {frequency_hz}")
        return cls(SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz))

    def attenuation_term(self, distance):
        """10 * log10(d / d0), vectorised over distances."""
        d = np.maximum(np.asarray(distance, dtype=float), MIN_DISTANCE)
        return 10.0 * np.log10(d / self.reference_distance)

    def received_power(self, distance, transmitted_power_dbm: float,
                       path_loss_exponent: float):
        """Expected received power (dBm) at the given distance(s)."""
        return transmitted_power_dbm - path_loss_exponent * self.attenuation_term(distance)

    def distance(self, rssi_dbm: float, transmitted_power_dbm: float,
                 path_loss_exponent: float) -> float:
        """Invert the model: distance (m) at which rssi_dbm is expected."""
        exponent = (transmitted_power_dbm - rssi_dbm) / (10.0 * path_loss_exponent)
        return self.reference_distance * 10.0 ** exponent

    def distance_std(self, distance: float, rssi_std_db: float,
                     path_loss_exponent: float) -> float:
        """
        First-order propagation of RSSI std to distance std.

        d = d0 * 10^((Pt - Pr) / (10 n))  =>  |dd/dPr| = d * ln(10) / (10 n)
        """
        return distance * math.log(10.0) / (10.0 * path_loss_exponent) * rssi_std_db
