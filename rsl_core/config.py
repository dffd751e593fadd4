"""
Default configuration for lateration and radio source estimation.

Dataclass configs across the package read their defaults from the
sections below, so a deployment can tune them in one place.
"""

import logging

# Lateration solver defaults
LATERATION_CONFIG = {
    "default_distance_std": 1e-3,     # Nominal ranging std (m) when a reading has none
    "max_iterations": 200,            # Cap on residual evaluations for non-linear solves
    "use_homogeneous_linear_solver": False,
    "min_singular_value_ratio": 1e-12,  # Below this the linear system is rank deficient
}

# Robust estimator defaults
ROBUST_CONFIG = {
    "confidence": 0.99,
    "max_iterations": 5000,
    "progress_delta": 0.05,
    "threshold": 1e-2,                # RANSAC/MSAC/PROSAC inlier threshold
    "stop_threshold": 1e-4,           # LMedS/PROMedS early-exit residual
    "inlier_factor": 1.5,             # LMedS threshold = factor * robust std
    "keep_inliers": False,
    "keep_residuals": False,
    "refine_result": True,
    "keep_covariance": True,
}

# Radio source defaults
RADIO_SOURCE_CONFIG = {
    "default_rssi_std_db": 1.0,       # Nominal RSSI std (dB) when a reading has none
    "path_loss_exponent": 2.0,        # Free space
    "reference_distance_m": 1.0,
    "transmitted_power_estimation_enabled": True,
    "path_loss_estimation_enabled": False,
    "position_estimation_enabled": True,
    "use_reading_position_covariances": True,
    "rssi_threshold_db": 0.5,         # Robust RSSI inlier threshold
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def setup_logging(level: str = None):
    """
    Configure root logging from LOGGING_CONFIG.

    Args:
        level: Optional level name overriding LOGGING_CONFIG["level"]
    """
    logging.basicConfig(
        level=getattr(logging, level or LOGGING_CONFIG["level"]),
        format=LOGGING_CONFIG["format"],
    )
