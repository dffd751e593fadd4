"""
Levenberg-Marquardt least squares fitting with covariance.

Shared by the non-linear lateration solver, the RSSI radio source
estimator and the post-consensus refinement of robust estimators.
The minimisation itself is scipy's MINPACK wrapper.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import scipy.optimize

from rsl_core.errors import ConvergenceError, EstimationError
from rsl_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# leastsq return codes meaning a solution was found
_SUCCESS_CODES = (1, 2, 3, 4)
_MAXFEV_CODE = 5


@dataclass
class FitResult:
    """
    Outcome of a least squares fit.

    Attributes:
        x: Fitted parameters
        covariance: Parameter covariance, None if the information matrix is singular
        chi_sq: Sum of squared (weighted) residuals at x
        evaluations: Number of residual function evaluations
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    chi_sq: float
    evaluations: int


def fit_least_squares(
    residuals: Callable[[np.ndarray], np.ndarray],
    x0,
    jacobian: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    max_iterations: int = 200,
    scale_covariance: bool = True,
) -> FitResult:
    """
    Minimise sum(residuals(x)**2) starting from x0.

    Args:
        residuals: Weighted residual vector for a parameter vector
        x0: Initial parameters
        jacobian: Jacobian of residuals (numerical differences if None)
        max_iterations: Cap on residual evaluations
        scale_covariance: Scale the inverse information matrix by the
            residual variance chi_sq / (n - p) when n > p

    Returns:
        FitResult

    Raises:
        ConvergenceError: if the evaluation cap is reached
        EstimationError: if the problem is under-determined or MINPACK fails
    """
    x0 = np.atleast_1d(np.asarray(x0, dtype=float))
    n_params = x0.shape[0]
    n_residuals = np.asarray(residuals(x0)).shape[0]
    if n_residuals < n_params:
        raise EstimationError(
            f"Need at least {n_params} residuals, got {n_residuals}"
        )

    x_est, cov_x, infodict, mesg, ier = scipy.optimize.leastsq(
        residuals,
        x0,
        Dfun=jacobian,
        full_output=True,
        maxfev=max_iterations,
    )

    if ier == _MAXFEV_CODE:
        get_metrics().increment_failure('not_converged')
        raise ConvergenceError(mesg)
    if ier not in _SUCCESS_CODES:
        get_metrics().increment_failure('not_converged')
        raise EstimationError(mesg)

    x_est = np.atleast_1d(np.asarray(x_est, dtype=float))
    res = np.asarray(residuals(x_est), dtype=float)
    chi_sq = float(res @ res)

    if cov_x is None:
        # singular information matrix, estimate still usable
        get_metrics().increment_failure('singular_covariance')
        logger.debug("fit: singular information matrix, no covariance")
    else:
        cov_x = np.atleast_2d(np.asarray(cov_x, dtype=float))
        dof = n_residuals - n_params
        if scale_covariance and dof > 0:
            cov_x = cov_x * (chi_sq / dof)

    return FitResult(
        x=x_est,
        covariance=cov_x,
        chi_sq=chi_sq,
        evaluations=int(infodict['nfev']),
    )


def refine_or_none(fit: Callable[[], FitResult], description: str) -> Optional[FitResult]:
    """
    Run a refinement fit, degrading to None when it fails.

    Refinement is the one recoverable failure: the caller keeps its
    unrefined consensus solution and reports refinement_failed.
    """
    metrics = get_metrics()
    metrics.increment('refinements')
    try:
        return fit()
    except EstimationError as e:
        metrics.increment_failure('refinement_failed')
        logger.warning("%s: refinement failed, keeping unrefined solution: %s", description, e)
        return None
