"""
Robust Estimator Engine.

One resampling loop shared by every robust method. A RobustProblem says
how many samples there are, how many make a minimal subset, how to turn a
subset into candidate solutions and how far each sample is from a
candidate. RobustEstimatorMethod selects how subsets are drawn and how
candidates are scored:

    Method    Sampling              Score (lower is better)
    RANSAC    uniform               -(inliers at threshold)
    LMEDS     uniform               median of squared residuals
    MSAC      uniform               sum(min(r^2, threshold^2))
    PROSAC    quality-progressive   -(inliers at threshold)
    PROMEDS   quality-progressive   median of squared residuals

Ties are broken by the smaller sum of inlier residuals. The number of
iterations adapts to the best inlier ratio found so far:

    k = log(1 - confidence) / log(1 - ratio^subset_size)

capped by max_iterations.

Usage:
    estimator = RobustEstimator(problem, RobustEstimatorMethod.RANSAC,
                                RobustEstimatorConfig(threshold=0.1),
                                random_state=42)
    result = estimator.estimate()
    print(result.solution, result.inliers_data.num_inliers)
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

import numpy as np

from rsl_core.config import ROBUST_CONFIG
from rsl_core.errors import EstimationError, NotEnoughInliersError, NotReadyError
from rsl_core.localization.lifecycle import Listener, LockableEstimator
from rsl_core.proto.estimates import EventType, InliersData

logger = logging.getLogger(__name__)

# Consistency factor turning a median absolute residual into a std for
# normally distributed data
MAD_SCALE = 1.4826

# LMedS breakdown point, caps the inlier ratio that sizes median runs
MEDIAN_BREAKDOWN_RATIO = 0.5


class RobustEstimatorMethod(Enum):
    """Robust estimation method."""

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def uses_quality_scores(self) -> bool:
        """Subsets are drawn progressively by quality."""
        return self in (RobustEstimatorMethod.PROSAC, RobustEstimatorMethod.PROMEDS)

    @property
    def uses_median(self) -> bool:
        """Candidates are scored by their median squared residual."""
        return self in (RobustEstimatorMethod.LMEDS, RobustEstimatorMethod.PROMEDS)

    @property
    def uses_threshold(self) -> bool:
        return not self.uses_median


@dataclass
class RobustEstimatorConfig:
    """
    Configuration shared by all robust methods.

    Attributes:
        confidence: Probability of drawing at least one outlier-free subset
        max_iterations: Hard cap on the number of subsets drawn
        progress_delta: Minimum progress increase between PROGRESS events
        threshold: Inlier threshold on |residual| (RANSAC, MSAC, PROSAC)
        stop_threshold: Median residual under which LMedS/PROMedS stop early;
            also the lower bound of their estimated inlier threshold
        inlier_factor: LMedS/PROMedS threshold = factor * robust std
        keep_inliers: Keep the inlier mask in the result
        keep_residuals: Keep per-sample residuals in the result
        refine_result: Refine the consensus solution on its inliers
        keep_covariance: Keep the covariance of the refined solution
    """

    confidence: float = ROBUST_CONFIG["confidence"]
    max_iterations: int = ROBUST_CONFIG["max_iterations"]
    progress_delta: float = ROBUST_CONFIG["progress_delta"]
    threshold: float = ROBUST_CONFIG["threshold"]
    stop_threshold: float = ROBUST_CONFIG["stop_threshold"]
    inlier_factor: float = ROBUST_CONFIG["inlier_factor"]
    keep_inliers: bool = ROBUST_CONFIG["keep_inliers"]
    keep_residuals: bool = ROBUST_CONFIG["keep_residuals"]
    refine_result: bool = ROBUST_CONFIG["refine_result"]
    keep_covariance: bool = ROBUST_CONFIG["keep_covariance"]

    def __post_init__(self):
        if not 0 < self.confidence < 1:
            raise ValueError(f"confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive: {self.max_iterations}")
        if not 0 <= self.progress_delta <= 1:
            raise ValueError(f"progress_delta must be in [0, 1]: {self.progress_delta}")
        if self.threshold <= 0:
            raise ValueError(f"threshold must be positive: {self.threshold}")
        if self.stop_threshold <= 0:
            raise ValueError(f"stop_threshold must be positive: {self.stop_threshold}")
        if self.inlier_factor <= 0:
            raise ValueError(f"inlier_factor must be positive: {self.inlier_factor}")


class RobustProblem(ABC):
    """
    What the robust engine needs to know about a fitting problem.

    Subclasses implement compute_residual, and override compute_residuals
    when all samples can be evaluated at once.
    """

    @property
    @abstractmethod
    def total_samples(self) -> int:
        """Number of samples (readings)."""

    @property
    @abstractmethod
    def subset_size(self) -> int:
        """Number of samples in a minimal subset."""

    @abstractmethod
    def generate_candidates(self, indices: np.ndarray) -> List[Any]:
        """
        Candidate solutions for a minimal subset.

        Returns an empty list, or raises EstimationError, when the subset
        is degenerate.
        """

    @abstractmethod
    def compute_residual(self, candidate, index: int) -> float:
        """Residual of one sample with respect to a candidate."""

    def compute_residuals(self, candidate) -> np.ndarray:
        """Residuals of every sample with respect to a candidate."""
        return np.array(
            [self.compute_residual(candidate, i) for i in range(self.total_samples)],
            dtype=float,
        )

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Per-sample quality (higher is better), for PROSAC/PROMedS."""
        return None

    def is_ready(self) -> bool:
        return self.total_samples >= self.subset_size


def compute_iterations(inlier_ratio: float, subset_size: int, confidence: float,
                       max_iterations: int) -> int:
    """
    Iterations needed to draw an outlier-free subset with given confidence.

    Capped at max_iterations.
    """
    if inlier_ratio <= 0:
        return max_iterations
    p = inlier_ratio ** subset_size
    if p >= 1:
        return 1
    denominator = math.log(1.0 - p)
    if denominator == 0:
        return max_iterations
    needed = math.ceil(math.log(1.0 - confidence) / denominator)
    return int(max(1, min(needed, max_iterations)))


class UniformSampler:
    """Minimal subsets drawn uniformly without replacement."""

    def __init__(self, total_samples: int, subset_size: int, rng: np.random.Generator):
        self.total_samples = total_samples
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(self.total_samples, self.subset_size, replace=False)


class ProgressiveSampler:
    """
    PROSAC sampler (Chum & Matas, 2005).

    Samples are sorted by decreasing quality. Subsets are drawn from the
    top-n samples, always including the n-th, and n grows on the schedule
    T'_n. Once n reaches the full population, sampling is uniform.
    """

    def __init__(self, quality_scores: Sequence[float], subset_size: int,
                 rng: np.random.Generator, growth_limit: int):
        quality_scores = np.asarray(quality_scores, dtype=float)
        self.total_samples = quality_scores.shape[0]
        self.subset_size = subset_size
        self.rng = rng
        # stable, so equal scores keep their reading order
        self.order = np.argsort(-quality_scores, kind='stable')

        m = subset_size
        big_n = self.total_samples
        self.n = m
        self.t = 0
        t_n = float(growth_limit)
        for i in range(m):
            t_n *= (m - i) / (big_n - i)
        self.t_n = t_n
        self.t_n_prime = 1

    def sample(self) -> np.ndarray:
        m = self.subset_size
        self.t += 1

        if self.t > self.t_n_prime and self.n < self.total_samples:
            t_n_next = self.t_n * (self.n + 1) / (self.n + 1 - m)
            self.n += 1
            self.t_n_prime += int(math.ceil(t_n_next - self.t_n))
            self.t_n = t_n_next

        if self.t > self.t_n_prime:
            picked = self.rng.choice(self.n, m, replace=False)
        else:
            picked = np.append(self.rng.choice(self.n - 1, m - 1, replace=False), self.n - 1).astype(int)

        return self.order[picked]


@dataclass
class _Evaluation:
    """Score of one candidate."""

    score: float
    residual_sum: float
    num_inliers: int
    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float
    median_residual: Optional[float] = None

    def better_than(self, other: Optional["_Evaluation"]) -> bool:
        if other is None:
            return True
        return (self.score, self.residual_sum) < (other.score, other.residual_sum)


@dataclass
class RobustResult:
    """
    Outcome of a robust estimation.

    Attributes:
        solution: Best candidate solution
        inliers: Inlier mask of the best solution (always kept)
        inliers_data: Consensus diagnostics, trimmed per configuration
        iterations: Number of subsets drawn
    """

    solution: Any
    inliers: np.ndarray
    inliers_data: InliersData
    iterations: int


class RobustEstimator(LockableEstimator):
    """
    Generic robust estimator.

    Draws minimal subsets, scores every candidate they produce against all
    samples and keeps the best consensus. A fixed random_state makes runs
    reproducible: the generator is re-created at the start of each run.
    """

    def __init__(
        self,
        problem: Optional[RobustProblem] = None,
        method: RobustEstimatorMethod = RobustEstimatorMethod.LMEDS,
        config: Optional[RobustEstimatorConfig] = None,
        listener: Optional[Listener] = None,
        random_state=None,
    ):
        super().__init__(listener)
        self._problem = problem
        self._method = RobustEstimatorMethod(method)
        self.config = config or RobustEstimatorConfig()
        self._random_state = random_state
        self._result: Optional[RobustResult] = None

    @property
    def problem(self) -> Optional[RobustProblem]:
        return self._problem

    @problem.setter
    def problem(self, problem: RobustProblem):
        self._check_unlocked()
        self._problem = problem

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @method.setter
    def method(self, method: RobustEstimatorMethod):
        self._check_unlocked()
        self._method = RobustEstimatorMethod(method)

    @property
    def random_state(self):
        return self._random_state

    @random_state.setter
    def random_state(self, random_state):
        self._check_unlocked()
        self._random_state = random_state

    @property
    def result(self) -> Optional[RobustResult]:
        return self._result

    @property
    def is_ready(self) -> bool:
        if self._problem is None or not self._problem.is_ready():
            return False
        if self._method.uses_quality_scores:
            scores = self._problem.quality_scores
            return scores is not None and len(scores) == self._problem.total_samples
        return True

    def estimate(self) -> RobustResult:
        """
        Run the robust estimation.

        Returns:
            RobustResult with the best candidate and its consensus

        Raises:
            LockedError: if already running
            NotReadyError: if the problem is missing, too small, or lacks
                quality scores for PROSAC/PROMedS
            NotEnoughInliersError: if no candidate reaches subset_size inliers
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(
                f"{self._method.name} estimator is not ready "
                f"(problem set, enough samples, quality scores for progressive methods)"
            )

        with self._running():
            self._result = None
            self.metrics.increment('robust_runs')
            self._notify(EventType.START)

            result = self._run()
            self._result = result

            self.metrics.increment('robust_successes')
            self.metrics.record_histogram('robust_iterations', result.iterations)
            self.metrics.record_histogram(
                'robust_inlier_ratio',
                result.inliers_data.num_inliers / self._problem.total_samples,
            )
            logger.info(
                "%s: consensus after %d iterations, %d/%d inliers",
                self._method.name, result.iterations,
                result.inliers_data.num_inliers, self._problem.total_samples,
            )
            self._notify(EventType.END)

        return result

    def _make_rng(self) -> np.random.Generator:
        if isinstance(self._random_state, np.random.Generator):
            return self._random_state
        return np.random.default_rng(self._random_state)

    def _make_sampler(self, rng: np.random.Generator):
        problem = self._problem
        if self._method.uses_quality_scores:
            return ProgressiveSampler(problem.quality_scores, problem.subset_size, rng,
                                      self.config.max_iterations)
        return UniformSampler(problem.total_samples, problem.subset_size, rng)

    def _run(self) -> RobustResult:
        problem = self._problem
        config = self.config
        total = problem.total_samples
        subset_size = problem.subset_size
        sampler = self._make_sampler(self._make_rng())

        best: Optional[_Evaluation] = None
        best_solution = None
        iterations_needed = config.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < iterations_needed:
            indices = sampler.sample()
            iteration += 1

            try:
                candidates = problem.generate_candidates(indices)
            except (EstimationError, np.linalg.LinAlgError) as e:
                logger.debug("iteration %d: subset %s failed: %s", iteration, indices, e)
                candidates = []
            if not candidates:
                self.metrics.increment_failure('candidate_failed')

            for candidate in candidates:
                residuals = np.abs(np.asarray(problem.compute_residuals(candidate), dtype=float))
                evaluation = self._evaluate(residuals, subset_size)
                if evaluation.num_inliers < subset_size:
                    continue
                if evaluation.better_than(best):
                    best = evaluation
                    best_solution = candidate
                    inlier_ratio = best.num_inliers / total
                    if self._method.uses_median:
                        # median-derived thresholds accept everything for a bad candidate
                        inlier_ratio = min(inlier_ratio, MEDIAN_BREAKDOWN_RATIO)
                    iterations_needed = compute_iterations(
                        inlier_ratio, subset_size,
                        config.confidence, config.max_iterations,
                    )
                    logger.debug(
                        "iteration %d: new best score %.6g with %d inliers, %d iterations needed",
                        iteration, best.score, best.num_inliers, iterations_needed,
                    )

            self._notify(EventType.ITERATION, iteration=iteration)

            progress = min(1.0, iteration / iterations_needed)
            if progress - last_progress >= config.progress_delta:
                last_progress = progress
                self._notify(EventType.PROGRESS, progress=progress)

            if (self._method.uses_median and best is not None
                    and best.median_residual <= config.stop_threshold):
                break

        if best is None:
            self.metrics.increment_failure('not_enough_inliers')
            raise NotEnoughInliersError(
                f"{self._method.name}: no candidate reached {subset_size} inliers "
                f"after {iteration} iterations"
            )

        keep_mask = config.keep_inliers or config.refine_result
        keep_residuals = config.keep_residuals or config.refine_result
        inliers_data = InliersData(
            num_inliers=best.num_inliers,
            inliers=best.inliers.copy() if keep_mask else None,
            residuals=best.residuals.copy() if keep_residuals else None,
            threshold=best.threshold,
            best_median_residual=best.median_residual,
        )
        return RobustResult(
            solution=best_solution,
            inliers=best.inliers,
            inliers_data=inliers_data,
            iterations=iteration,
        )

    def _evaluate(self, residuals: np.ndarray, subset_size: int) -> _Evaluation:
        config = self.config
        method = self._method

        if method.uses_median:
            squared = residuals ** 2
            median = float(np.median(squared))
            median_residual = math.sqrt(median)
            total = residuals.shape[0]
            correction = 1.0 + 5.0 / (total - subset_size) if total > subset_size else 1.0
            robust_std = MAD_SCALE * correction * median_residual
            threshold = max(config.inlier_factor * robust_std, config.stop_threshold)
            inliers = residuals <= threshold
            return _Evaluation(
                score=median,
                residual_sum=float(residuals[inliers].sum()),
                num_inliers=int(inliers.sum()),
                inliers=inliers,
                residuals=residuals,
                threshold=threshold,
                median_residual=median_residual,
            )

        threshold = config.threshold
        inliers = residuals <= threshold
        num_inliers = int(inliers.sum())
        if method == RobustEstimatorMethod.MSAC:
            score = float(np.minimum(residuals ** 2, threshold ** 2).sum())
        else:
            score = -float(num_inliers)
        return _Evaluation(
            score=score,
            residual_sum=float(residuals[inliers].sum()),
            num_inliers=num_inliers,
            inliers=inliers,
            residuals=residuals,
            threshold=threshold,
        )


def trim_inliers_data(inliers_data: InliersData, config: RobustEstimatorConfig) -> InliersData:
    """Drop the mask and residuals kept only for refinement."""
    if not config.keep_inliers:
        inliers_data.inliers = None
    if not config.keep_residuals:
        inliers_data.residuals = None
    return inliers_data
