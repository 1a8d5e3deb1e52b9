"""
This module matches SIFT descriptors between two images.

Descriptors are compared by the angle between their L2 normalized vectors.  For every descriptor of the first set
the nearest and second nearest descriptors of the second set are found, and the nearest is accepted when it is
close enough (:attr:`~SiftMatchingOptions.max_distance`) and distinctive enough (Lowe's ratio test with
:attr:`~SiftMatchingOptions.max_ratio`).  With :attr:`~SiftMatchingOptions.cross_check` a match is kept only if
matching in the opposite direction gives back the same pair.

The selection logic (:func:`find_best_matches`) works on a precomputed distance matrix and is shared by the CPU
strategy (:class:`SiftCPUMatcher`) and the accelerated strategy (:class:`.SiftGPUMatcher`), which only differ in how
the distance matrix is computed.

Example:
    >>> from siftmatch.feature import SiftMatchingOptions, create_sift_matcher
    >>> matcher = create_sift_matcher(SiftMatchingOptions(max_ratio=0.7))
    >>> matches = matcher.match(features1.descriptors, features2.descriptors)
"""

import logging

from abc import ABC, abstractmethod

from dataclasses import dataclass

from multiprocessing import cpu_count
from multiprocessing.pool import ThreadPool

from typing import Sequence, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from tqdm import tqdm

from siftmatch.utilities.options import (UserOptions, check_option_gt, check_option_ge, check_option_le,
                                         check_num_threads, check_gpu_index)
from siftmatch.utilities.mixins import UserOptionConfigured, AttributePrinting
from siftmatch._typing import DOUBLE_ARRAY, INDEX_ARRAY, BOOL_ARRAY, ARRAY_LIKE

if TYPE_CHECKING:
    from siftmatch.feature.device import DeviceContext
    from siftmatch.feature.types import FeatureSet
    from siftmatch.estimators.two_view_geometry import TwoViewGeometry


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting matching results.
"""


@dataclass
class SiftMatchingOptions(UserOptions):
    """
    Options for configuring descriptor matching and the two view geometry verification of the matches.
    """

    num_threads: int = -1
    """
    The number of worker threads used by :meth:`SiftCPUMatcher.match_pairs`.  -1 uses all cores.
    """

    use_gpu: bool = False
    """
    Whether :func:`create_sift_matcher` should select the accelerated strategy.
    """

    gpu_index: str = "-1"
    """
    The index of the device to use as a comma separated list (e.g. ``"0,1"``).  ``"-1"`` uses the default device.
    """

    max_ratio: float = 0.8
    """
    The maximum ratio of the distances to the nearest and the second nearest descriptor.
    """

    max_distance: float = 0.7
    """
    The maximum angle (radians) between matched descriptors.
    """

    cross_check: bool = True
    """
    Keep only matches that are also found when matching from the second set to the first.
    """

    max_num_matches: int = 32768
    """
    The maximum number of matches.  When more are found, the ones with the lowest distance are kept.
    """

    max_error: float = 4.0
    """
    The maximum residual in pixels for a match to be an inlier of a geometric model.
    """

    confidence: float = 0.999
    """
    The probability of having drawn at least one outlier free sample when RANSAC stops.
    """

    min_num_trials: int = 30
    """
    The minimum number of RANSAC iterations.
    """

    max_num_trials: int = 10000
    """
    The maximum number of RANSAC iterations.
    """

    min_inlier_ratio: float = 0.25
    """
    The inlier ratio assumed to compute the initial RANSAC iteration budget.
    """

    min_num_inliers: int = 15
    """
    The minimum number of inliers for a two view geometry to be valid.
    """

    multiple_models: bool = False
    """
    Estimate both the relative pose and a homography and keep the model with the most inliers.
    """

    guided_matching: bool = False
    """
    Re-match the descriptors using the verified geometry to find additional matches.
    """

    border: int = 0
    """
    When positive, both descriptor sets are the concatenation of two sets split at this index, and only descriptors
    on the same side of the split are matched.
    """

    def check(self) -> bool:
        """
        Check the ranges of the options, logging every violated condition.

        :return: ``True`` if the options are consistent
        """

        checks = [check_num_threads(self.num_threads),
                  check_gpu_index(self.gpu_index),
                  check_option_gt(self.max_ratio, 0, 'max_ratio'),
                  check_option_gt(self.max_distance, 0, 'max_distance'),
                  check_option_gt(self.max_num_matches, 0, 'max_num_matches'),
                  check_option_gt(self.max_error, 0, 'max_error'),
                  check_option_ge(self.confidence, 0, 'confidence'),
                  check_option_le(self.confidence, 1, 'confidence'),
                  check_option_ge(self.min_num_trials, 0, 'min_num_trials'),
                  check_option_gt(self.max_num_trials, 0, 'max_num_trials'),
                  check_option_ge(self.max_num_trials, self.min_num_trials, 'max_num_trials'),
                  check_option_ge(self.min_inlier_ratio, 0, 'min_inlier_ratio'),
                  check_option_le(self.min_inlier_ratio, 1, 'min_inlier_ratio'),
                  check_option_ge(self.min_num_inliers, 0, 'min_num_inliers'),
                  check_option_ge(self.border, 0, 'border')]

        return all(checks)


def empty_matches() -> INDEX_ARRAY:
    return np.empty((0, 2), dtype=np.int64)


def validate_descriptors(descriptors: ARRAY_LIKE, name: str) -> NDArray:
    """
    Check that descriptors are a 2D array.

    :raises ValueError: if they are not
    """
    descriptors = np.asarray(descriptors)
    if descriptors.ndim != 2:
        raise ValueError(f'{name} must be n x d, got shape {descriptors.shape}')
    return descriptors


def l2_normalized(descriptors: ARRAY_LIKE) -> DOUBLE_ARRAY:
    """
    Convert descriptors to float and normalize every row to unit length.  All-zero rows stay zero.
    """
    descriptors = np.asarray(descriptors, dtype=np.float64)
    norms = np.linalg.norm(descriptors, axis=1, keepdims=True)
    return np.divide(descriptors, norms, out=np.zeros_like(descriptors), where=norms > 0)


def same_side_mask(num_descriptors1: int, num_descriptors2: int, border: int) -> BOOL_ARRAY:
    """
    The pairs of indices that lie on the same side of `border`.

    :param num_descriptors1: the number of descriptors in the first set
    :param num_descriptors2: the number of descriptors in the second set
    :param border: the index splitting both sets
    :return: the num_descriptors1 x num_descriptors2 mask of pairs that may be matched
    """
    side1 = np.arange(num_descriptors1) < border
    side2 = np.arange(num_descriptors2) < border
    return side1[:, None] == side2[None, :]


def compute_distance_matrix(descriptors1: ARRAY_LIKE, descriptors2: ARRAY_LIKE, border: int = 0) -> DOUBLE_ARRAY:
    """
    Compute the angle between every pair of L2 normalized descriptors.

    :param descriptors1: the n1 x d first descriptors
    :param descriptors2: the n2 x d second descriptors
    :param border: when positive, pairs on different sides of this index are set to infinity
    :return: the n1 x n2 angles in radians
    :raises ValueError: if the descriptor dimensions differ
    """

    descriptors1 = validate_descriptors(descriptors1, 'descriptors1')
    descriptors2 = validate_descriptors(descriptors2, 'descriptors2')

    if descriptors1.shape[1] != descriptors2.shape[1]:
        raise ValueError(f'descriptor dimensions differ ({descriptors1.shape[1]} != {descriptors2.shape[1]})')

    distances = np.arccos(np.clip(l2_normalized(descriptors1) @ l2_normalized(descriptors2).T, -1, 1))

    return apply_border(distances, border)


def apply_border(distances: DOUBLE_ARRAY, border: int) -> DOUBLE_ARRAY:
    """
    Set the distance of pairs on different sides of `border` to infinity (nothing is done if `border` is 0).
    """
    if border > 0:
        distances[~same_side_mask(*distances.shape, border)] = np.inf
    return distances


def find_best_matches_one_way(distances: DOUBLE_ARRAY, max_ratio: float,
                              max_distance: float) -> tuple[INDEX_ARRAY, DOUBLE_ARRAY]:
    """
    Find the accepted nearest neighbor of every row of a distance matrix.

    The nearest neighbor is accepted if ``best <= max_distance`` and ``best / second <= max_ratio`` where ``second``
    is the distance to the second nearest neighbor (infinite if there is none).  Two candidates at distance 0 are
    ambiguous and never match.  Ties for the nearest neighbor are resolved in favor of the lower column index.

    :param distances: the n1 x n2 distance matrix
    :param max_ratio: the maximum distance ratio
    :param max_distance: the maximum distance
    :return: the matched column of every row (-1 if there is no match) and the distance of every match
    """

    num_rows, num_cols = distances.shape
    matched = np.full(num_rows, -1, dtype=np.int64)
    matched_distances = np.full(num_rows, np.inf)

    if num_rows == 0 or num_cols == 0:
        return matched, matched_distances

    rows = np.arange(num_rows)
    best = distances.argmin(axis=1)
    best_distance = distances[rows, best]

    if num_cols > 1:
        remaining = distances.copy()
        remaining[rows, best] = np.inf
        second_distance = remaining.min(axis=1)
    else:
        second_distance = np.full(num_rows, np.inf)

    accepted = ((best_distance <= max_distance) & (best_distance <= max_ratio * second_distance) &
                (second_distance > 0))

    matched[accepted] = best[accepted]
    matched_distances[accepted] = best_distance[accepted]

    return matched, matched_distances


def find_best_matches(distances: DOUBLE_ARRAY, max_ratio: float, max_distance: float, cross_check: bool,
                      max_num_matches: int) -> INDEX_ARRAY:
    """
    Select the matches from a distance matrix.

    See :func:`find_best_matches_one_way` for the per-row acceptance test.  With `cross_check` the column to row
    test must select the same pair.  When there are more than `max_num_matches` matches the ones with the lowest
    distance are kept (ties keep the lower row index).

    :param distances: the n1 x n2 distance matrix
    :param max_ratio: the maximum distance ratio
    :param max_distance: the maximum distance
    :param cross_check: whether to cross check the matches
    :param max_num_matches: the maximum number of matches
    :return: the m x 2 ``(index1, index2)`` matches ordered by index1
    """

    matches12, distances12 = find_best_matches_one_way(distances, max_ratio, max_distance)

    index1 = np.flatnonzero(matches12 >= 0)
    index2 = matches12[index1]

    if cross_check and index1.size:
        matches21, _ = find_best_matches_one_way(distances.T, max_ratio, max_distance)
        consistent = matches21[index2] == index1
        index1, index2 = index1[consistent], index2[consistent]

    if index1.size > max_num_matches:
        keep = np.sort(np.argsort(distances12[index1], kind='stable')[:max_num_matches])
        index1, index2 = index1[keep], index2[keep]

    if index1.size == 0:
        return empty_matches()

    return np.column_stack([index1, index2]).astype(np.int64)


class SiftMatcher(UserOptionConfigured[SiftMatchingOptions], SiftMatchingOptions, AttributePrinting, ABC):
    """
    The base class of the descriptor matching strategies.

    Subclasses provide the distance matrix through :meth:`compute_distances`.  The selection policies and guided
    matching are shared.
    """

    def __init__(self, options: SiftMatchingOptions | None = None):
        """
        :param options: the options to configure the matcher with
        :raises ValueError: if the options fail :meth:`SiftMatchingOptions.check`
        """
        super().__init__(SiftMatchingOptions, options=options)

    @abstractmethod
    def compute_distances(self, descriptors1: ARRAY_LIKE | None,
                          descriptors2: ARRAY_LIKE | None) -> DOUBLE_ARRAY | None:
        """
        Compute the distance matrix of two descriptor sets, honouring :attr:`~SiftMatchingOptions.border`.

        :param descriptors1: the first descriptors
        :param descriptors2: the second descriptors
        :return: the distance matrix, or None if it could not be computed
        """

    def select_matches(self, distances: DOUBLE_ARRAY) -> INDEX_ARRAY:
        """
        Apply the ratio, distance, cross check and cap policies of this matcher to a distance matrix.
        """
        return find_best_matches(distances, self.max_ratio, self.max_distance, self.cross_check,
                                 self.max_num_matches)

    def match(self, descriptors1: ARRAY_LIKE | None, descriptors2: ARRAY_LIKE | None) -> INDEX_ARRAY:
        """
        Match two descriptor sets.

        :param descriptors1: the n1 x d first descriptors
        :param descriptors2: the n2 x d second descriptors
        :return: the m x 2 ``(index1, index2)`` matches ordered by index1
        """

        distances = self.compute_distances(descriptors1, descriptors2)
        if distances is None:
            return empty_matches()

        matches = self.select_matches(distances)

        _LOGGER.debug(f'{matches.shape[0]} matches between {distances.shape[0]} and {distances.shape[1]} '
                      f'descriptors')

        return matches

    def match_guided(self, keypoints1: 'FeatureSet | ARRAY_LIKE', keypoints2: 'FeatureSet | ARRAY_LIKE',
                     descriptors1: ARRAY_LIKE | None, descriptors2: ARRAY_LIKE | None,
                     geometry: 'TwoViewGeometry') -> 'TwoViewGeometry':
        """
        Re-match the descriptors restricted to the pairs that agree with a verified two view geometry.

        See :func:`.guided_matching.match_guided` for details.

        :param keypoints1: the keypoints of the first image
        :param keypoints2: the keypoints of the second image
        :param descriptors1: the descriptors of the first image
        :param descriptors2: the descriptors of the second image
        :param geometry: the verified geometry
        :return: the geometry with the enlarged match set
        """
        from siftmatch.feature.guided_matching import match_guided

        return match_guided(self, keypoints1, keypoints2, descriptors1, descriptors2, geometry)


class SiftCPUMatcher(SiftMatcher):
    """
    Match descriptors on the CPU with an exhaustive distance matrix.
    """

    def compute_distances(self, descriptors1: ARRAY_LIKE | None,
                          descriptors2: ARRAY_LIKE | None) -> DOUBLE_ARRAY:
        if descriptors1 is None or descriptors2 is None:
            raise ValueError('the CPU matcher requires both descriptor sets')
        return compute_distance_matrix(descriptors1, descriptors2, border=self.border)

    def match_pairs(self, pairs: Sequence[tuple[ARRAY_LIKE, ARRAY_LIKE]],
                    show_progress: bool = False) -> list[INDEX_ARRAY]:
        """
        Match several independent descriptor pairs in parallel.

        :param pairs: the ``(descriptors1, descriptors2)`` pairs
        :param show_progress: whether to display a progress bar
        :return: the matches of every pair in the order of `pairs`
        """

        num_workers = cpu_count() if self.num_threads == -1 else self.num_threads

        with ThreadPool(num_workers) as pool:
            results = pool.imap(lambda pair: self.match(*pair), pairs)
            if show_progress:
                results = tqdm(results, total=len(pairs), desc='matching pairs')
            out = list(results)

        _LOGGER.info(f'matched {len(out)} pairs')

        return out


def create_sift_matcher(options: SiftMatchingOptions | None = None,
                        context: 'DeviceContext | None' = None) -> SiftMatcher | None:
    """
    Create the matching strategy selected by :attr:`~SiftMatchingOptions.use_gpu`.

    For the accelerated strategy a :class:`.DeviceContext` is created from :attr:`~SiftMatchingOptions.gpu_index` if
    none is supplied.

    :param options: the matching options
    :param context: an optional already initialized device context
    :return: the matcher, or None if the accelerated strategy cannot be initialized
    :raises ValueError: if the options fail :meth:`SiftMatchingOptions.check`
    """

    if options is None:
        options = SiftMatchingOptions()

    if not options.use_gpu:
        return SiftCPUMatcher(options)

    from siftmatch.feature.device import DeviceContext
    from siftmatch.feature.gpu_matching import SiftGPUMatcher

    if not options.check():
        raise ValueError('invalid SiftMatchingOptions, see the log for the failed checks')

    if context is None:
        context = DeviceContext.from_gpu_index(options.gpu_index)
        if not context.initialize():
            _LOGGER.error('unable to create the accelerated SIFT matcher')
            return None
    elif not context.initialized:
        _LOGGER.error('the supplied device context is not initialized')
        return None

    return SiftGPUMatcher(context, options)
