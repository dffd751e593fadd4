"""
Localization Module: Lateration, robust estimation, radio source estimation.

Key classes:
- HomogeneousLinearLaterationSolver / InhomogeneousLinearLaterationSolver:
  closed-form lateration
- NonLinearLaterationSolver: weighted Levenberg-Marquardt lateration
- RobustEstimator: RANSAC, LMedS, MSAC, PROSAC and PROMedS over a RobustProblem
- RobustLaterationSolver: outlier-tolerant lateration
- Rssi/Ranging/RangingAndRssi RadioSourceEstimator (plain and robust):
  source position, transmitted power and path loss exponent
- MixedPositionEstimator: receiver position from ranging and RSSI readings
"""

from .power import (
    PathLossModel,
    dbm_to_power,
    power_to_dbm,
)
from .lifecycle import Listener, LockableEstimator
from .refinement import FitResult, fit_least_squares
from .lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    HomogeneousLinearLaterationSolver,
    InhomogeneousLinearLaterationSolver,
    NonLinearLaterationSolver,
    create_linear_solver,
    fold_position_covariances,
)
from .robust_estimator import (
    RobustEstimator,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    RobustProblem,
    RobustResult,
    compute_iterations,
)
from .robust_lateration import RobustLaterationSolver
from .radio_source_estimator import (
    RadioSourceConfig,
    RadioSourceEstimator,
    RssiRadioSourceEstimator,
    RangingRadioSourceEstimator,
    RangingAndRssiRadioSourceEstimator,
    SourceSolution,
)
from .robust_radio_source_estimator import (
    RobustRadioSourceEstimator,
    RobustRssiRadioSourceEstimator,
    RobustRangingRadioSourceEstimator,
    RobustRangingAndRssiRadioSourceEstimator,
)
from .position_estimator import MixedPositionEstimator

__all__ = [
    # Power
    'PathLossModel',
    'dbm_to_power',
    'power_to_dbm',
    # Lifecycle
    'Listener',
    'LockableEstimator',
    # Refinement
    'FitResult',
    'fit_least_squares',
    # Lateration
    'LaterationSolver',
    'LaterationSolverConfig',
    'HomogeneousLinearLaterationSolver',
    'InhomogeneousLinearLaterationSolver',
    'NonLinearLaterationSolver',
    'create_linear_solver',
    'fold_position_covariances',
    # Robust engine
    'RobustEstimator',
    'RobustEstimatorConfig',
    'RobustEstimatorMethod',
    'RobustProblem',
    'RobustResult',
    'compute_iterations',
    'RobustLaterationSolver',
    # Radio sources
    'RadioSourceConfig',
    'RadioSourceEstimator',
    'RssiRadioSourceEstimator',
    'RangingRadioSourceEstimator',
    'RangingAndRssiRadioSourceEstimator',
    'SourceSolution',
    'RobustRadioSourceEstimator',
    'RobustRssiRadioSourceEstimator',
    'RobustRangingRadioSourceEstimator',
    'RobustRangingAndRssiRadioSourceEstimator',
    # Receiver positioning
    'MixedPositionEstimator',
]
