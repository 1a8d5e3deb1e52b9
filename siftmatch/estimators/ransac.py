"""
This module provides an adaptive RANSAC (Random Sample Consensus) loop for robustly fitting a model to
correspondences contaminated by outliers.

Unique minimal samples are drawn with :class:`.RandomCombinations`, a model is fit to each and scored by the number
of correspondences whose residual is within :attr:`~RANSACOptions.max_error`.  The number of iterations adapts to
the best inlier ratio seen so far (:func:`compute_num_trials`), clipped to
``[min_num_trials, max_num_trials]``.  The winning model is refit on all of its inliers at the end (local
optimization) and the refit is kept if it does not lose inliers.

The best-so-far state is local to :meth:`RANSAC.estimate`, so one instance can serve several threads as long as each
uses its own random generator.
"""

import logging

from dataclasses import dataclass

from typing import Callable, NamedTuple

import numpy as np
from numpy.typing import NDArray

from siftmatch.utilities.options import UserOptions, check_option_gt, check_option_ge, check_option_le
from siftmatch.utilities.mixins import UserOptionConfigured, AttributePrinting
from siftmatch.utilities.random_combination import RandomCombinations
from siftmatch._typing import DOUBLE_ARRAY, BOOL_ARRAY


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting RANSAC progress.
"""


@dataclass
class RANSACOptions(UserOptions):
    """
    Options for configuring the RANSAC loop.
    """

    max_error: float = 4.0
    """
    The maximum residual (in the units of the points) for a correspondence to be an inlier.
    """

    confidence: float = 0.999
    """
    The probability of having drawn at least one outlier free sample when the loop stops.
    """

    min_num_trials: int = 30
    """
    The minimum number of iterations.
    """

    max_num_trials: int = 10000
    """
    The maximum number of iterations.
    """

    min_inlier_ratio: float = 0.25
    """
    The inlier ratio assumed before any model has been found, used to compute the initial iteration budget.
    """

    def check(self) -> bool:
        checks = [check_option_gt(self.max_error, 0, 'max_error'),
                  check_option_ge(self.confidence, 0, 'confidence'),
                  check_option_le(self.confidence, 1, 'confidence'),
                  check_option_ge(self.min_num_trials, 0, 'min_num_trials'),
                  check_option_gt(self.max_num_trials, 0, 'max_num_trials'),
                  check_option_ge(self.max_num_trials, self.min_num_trials, 'max_num_trials'),
                  check_option_ge(self.min_inlier_ratio, 0, 'min_inlier_ratio'),
                  check_option_le(self.min_inlier_ratio, 1, 'min_inlier_ratio')]
        return all(checks)


class ModelEstimator(NamedTuple):
    """
    A model that can be fit by RANSAC.
    """

    sample_size: int
    """
    The number of correspondences in a minimal sample.
    """

    fit: Callable[[NDArray, NDArray], DOUBLE_ARRAY | None]
    """
    Fit the model to (at least) a minimal sample of correspondences, returning None if that is impossible.
    """

    residuals: Callable[[NDArray, NDArray, NDArray], DOUBLE_ARRAY]
    """
    Compute the squared residual of every correspondence for a model.
    """


class RANSACReport(NamedTuple):
    """
    The result of a RANSAC run.
    """

    success: bool
    """
    Whether a model with at least one inlier was found.
    """

    num_trials: int
    """
    The number of minimal samples that were drawn.
    """

    num_inliers: int

    model: DOUBLE_ARRAY | None
    """
    The best model, or None if none was found.
    """

    inlier_mask: BOOL_ARRAY
    """
    Which correspondences are inliers of :attr:`model`.
    """


def compute_num_trials(inlier_ratio: float, confidence: float, sample_size: int, max_num_trials: int) -> int:
    """
    The number of samples needed to draw an all-inlier sample with probability `confidence`.

    This is ``ceil(log(1 - confidence) / log(1 - inlier_ratio ** sample_size))``, or `max_num_trials` when the
    inlier ratio is 0 or the confidence is 1.

    >>> compute_num_trials(0.5, 0.99, 4, 10000)
    72

    :param inlier_ratio: the fraction of correspondences that are inliers
    :param confidence: the desired confidence
    :param sample_size: the minimal sample size
    :param max_num_trials: the value to return when no finite number of trials achieves the confidence
    :return: the number of trials
    """

    if inlier_ratio <= 0 or confidence >= 1:
        return max_num_trials

    if confidence <= 0:
        return 1

    outlier_probability = 1 - inlier_ratio ** sample_size
    if outlier_probability <= 0:
        return 1

    denominator = np.log(outlier_probability)
    if denominator >= 0:
        return max_num_trials

    return int(np.ceil(np.log(1 - confidence) / denominator))


class RANSAC(UserOptionConfigured[RANSACOptions], RANSACOptions, AttributePrinting):
    """
    Adaptive RANSAC over unique minimal samples.

    >>> from siftmatch.estimators.homography import estimate_homography, homography_residuals
    >>> ransac = RANSAC(RANSACOptions(max_error=2.0), rng=np.random.default_rng(0))
    >>> report = ransac.estimate(ModelEstimator(4, estimate_homography, homography_residuals), points1, points2)
    """

    def __init__(self, options: RANSACOptions | None = None, rng: np.random.Generator | None = None):
        """
        :param options: the options to configure the loop with
        :param rng: the random generator used to draw samples.  A fresh unseeded generator is used if None.
        """
        super().__init__(RANSACOptions, options=options)

        self.rng: np.random.Generator = rng if rng is not None else np.random.default_rng()
        """
        The random generator used to draw samples.
        """

    def _clip_trials(self, num_trials: int) -> int:
        return int(np.clip(num_trials, self.min_num_trials, self.max_num_trials))

    def estimate(self, estimator: ModelEstimator, points1: NDArray, points2: NDArray) -> RANSACReport:
        """
        Robustly fit a model to correspondences.

        :param estimator: the model to fit
        :param points1: the n x 2 points in the first image
        :param points2: the n x 2 points in the second image
        :return: the report of the run
        """

        points1 = np.asarray(points1, dtype=np.float64)
        points2 = np.asarray(points2, dtype=np.float64)
        num_points = points1.shape[0]

        best_model = None
        best_mask = np.zeros(num_points, dtype=bool)
        best_count = 0

        if num_points < estimator.sample_size:
            return RANSACReport(False, 0, 0, None, best_mask)

        threshold = self.max_error ** 2
        budget = self._clip_trials(compute_num_trials(self.min_inlier_ratio, self.confidence,
                                                      estimator.sample_size, self.max_num_trials))

        num_trials = 0
        for sample in RandomCombinations(num_points, estimator.sample_size, self.max_num_trials, rng=self.rng):
            if num_trials >= budget:
                break
            num_trials += 1

            indices = np.array(sample, dtype=np.int64)
            model = estimator.fit(points1[indices], points2[indices])
            if model is None:
                continue

            mask = estimator.residuals(model, points1, points2) <= threshold
            count = int(mask.sum())

            if count > best_count:
                best_model, best_mask, best_count = model, mask, count
                budget = self._clip_trials(compute_num_trials(count / num_points, self.confidence,
                                                              estimator.sample_size, self.max_num_trials))
                _LOGGER.debug(f'trial {num_trials}: {count} inliers, budget {budget} trials')

        if best_model is not None and best_count >= estimator.sample_size:
            refined = estimator.fit(points1[best_mask], points2[best_mask])
            if refined is not None:
                refined_mask = estimator.residuals(refined, points1, points2) <= threshold
                if refined_mask.sum() >= best_count:
                    best_model, best_mask, best_count = refined, refined_mask, int(refined_mask.sum())

        return RANSACReport(best_model is not None, num_trials, best_count, best_model, best_mask)
