"""
Robust Source Lateration (RSL) Core Package.

Position, transmitted power and path loss exponent estimation from noisy
ranging and RSSI readings, with robust (RANSAC, LMedS, MSAC, PROSAC,
PROMedS) consensus and covariance of refined solutions.

Package structure:
- proto: Reading and estimate schemas, lifecycle events
- localization: Lateration solvers, robust engine, radio source estimators
- metrics: Diagnostics, counters, histograms
- config: Default configuration sections and logging setup
- errors: Exception taxonomy
"""

__version__ = "0.1.0"
__author__ = "RSL Team"

from .errors import (
    LaterationError,
    LockedError,
    NotReadyError,
    EstimationError,
    NumericalInstabilityError,
    ConvergenceError,
    NotEnoughInliersError,
    RadioSourceEstimationError,
)
