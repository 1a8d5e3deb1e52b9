"""
This module re-matches descriptors using a verified two view geometry.

Once the geometry of an image pair is known, the search for every descriptor can be restricted to the keypoints of
the other image that agree with it: the ones within :attr:`~.SiftMatchingOptions.max_error` of the transfer of a
homography, or with a small enough Sampson error for a fundamental matrix.  Within these candidates the usual
ratio, distance and cross check policies of the matcher apply.  Since far fewer candidates compete, the ratio test
accepts matches that were ambiguous over the whole image.

The verified inliers that do not conflict with a guided match are kept, and the geometry is re-scored (and refit)
on the enlarged match set, so guided matching never reduces the number of inliers.
"""

import logging

from dataclasses import replace

from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from siftmatch.estimators.two_view_geometry import (TwoViewGeometry, TwoViewGeometryConfiguration,
                                                    geometry_residuals)
from siftmatch.estimators.homography import estimate_homography, homography_residuals
from siftmatch.estimators.fundamental import estimate_fundamental, sampson_residuals
from siftmatch.estimators.utils import homogeneous
from siftmatch.feature.types import FeatureSet, keypoint_locations
from siftmatch._typing import BOOL_ARRAY, INDEX_ARRAY, ARRAY_LIKE

if TYPE_CHECKING:
    from siftmatch.feature.matching import SiftMatcher


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting guided matching results.
"""


def feasible_pairs(geometry: TwoViewGeometry, locations1: NDArray, locations2: NDArray,
                   max_error: float) -> BOOL_ARRAY:
    """
    Find every pair of keypoints that agrees with a geometry within `max_error` pixels.

    :param geometry: the geometry
    :param locations1: the n1 x 2 keypoint locations in the first image
    :param locations2: the n2 x 2 keypoint locations in the second image
    :param max_error: the maximum residual in pixels
    :return: the n1 x n2 mask of admissible pairs
    """

    x1 = homogeneous(locations1)
    x2 = homogeneous(locations2)

    if geometry.H is not None and (geometry.config == TwoViewGeometryConfiguration.PLANAR or geometry.F is None):
        projected = x1 @ geometry.H.T
        with np.errstate(divide='ignore', invalid='ignore'):
            transferred = projected[:, :2] / projected[:, 2:]
        residuals = np.sum((transferred[:, None, :] - x2[None, :, :2]) ** 2, axis=2)
    else:
        fx1 = x1 @ geometry.F.T
        ftx2 = x2 @ geometry.F
        numerator = (fx1 @ x2.T) ** 2
        denominator = (fx1[:, 0] ** 2 + fx1[:, 1] ** 2)[:, None] + (ftx2[:, 0] ** 2 + ftx2[:, 1] ** 2)[None, :]
        with np.errstate(divide='ignore', invalid='ignore'):
            residuals = numerator / denominator

    return np.nan_to_num(residuals, nan=np.inf) <= max_error ** 2


def merge_matches(guided: INDEX_ARRAY, previous: INDEX_ARRAY) -> INDEX_ARRAY:
    """
    Add the previous matches whose keypoints are not used by a guided match.

    :param guided: the m x 2 guided matches
    :param previous: the k x 2 previous matches
    :return: the combined matches ordered by index1
    """

    unused = ~np.isin(previous[:, 0], guided[:, 0]) & ~np.isin(previous[:, 1], guided[:, 1])
    combined = np.vstack([guided, previous[unused]]).astype(np.int64)

    return combined[np.argsort(combined[:, 0], kind='stable')]


def refit_geometry(geometry: TwoViewGeometry, points1: NDArray, points2: NDArray, inlier_mask: BOOL_ARRAY,
                   max_error: float) -> tuple[TwoViewGeometry, BOOL_ARRAY]:
    """
    Refit the model of a geometry on its inliers and keep the refit if it does not lose inliers.

    ``CALIBRATED`` geometries keep their model since refitting the essential matrix needs the intrinsics.

    :return: the (possibly refit) geometry and its inlier mask
    """

    if inlier_mask.sum() < 8 and geometry.config != TwoViewGeometryConfiguration.PLANAR:
        return geometry, inlier_mask

    if geometry.config == TwoViewGeometryConfiguration.PLANAR:
        refit = estimate_homography(points1[inlier_mask], points2[inlier_mask])
        if refit is None:
            return geometry, inlier_mask
        refit_mask = homography_residuals(refit, points1, points2) <= max_error ** 2
        candidate = replace(geometry, H=refit)
    elif geometry.config == TwoViewGeometryConfiguration.UNCALIBRATED:
        refit = estimate_fundamental(points1[inlier_mask], points2[inlier_mask])
        if refit is None:
            return geometry, inlier_mask
        refit_mask = sampson_residuals(refit, points1, points2) <= max_error ** 2
        candidate = replace(geometry, F=refit)
    else:
        return geometry, inlier_mask

    if refit_mask.sum() >= inlier_mask.sum():
        return candidate, refit_mask
    return geometry, inlier_mask


def match_guided(matcher: 'SiftMatcher', keypoints1: FeatureSet | ARRAY_LIKE, keypoints2: FeatureSet | ARRAY_LIKE,
                 descriptors1: ARRAY_LIKE | None, descriptors2: ARRAY_LIKE | None,
                 geometry: TwoViewGeometry) -> TwoViewGeometry:
    """
    Re-match descriptors restricted to the keypoint pairs that agree with a verified geometry.

    The geometry is returned unchanged if it is not valid or if the distances cannot be computed.

    :param matcher: the matcher whose policies and distance computation are used
    :param keypoints1: the keypoints of the first image
    :param keypoints2: the keypoints of the second image
    :param descriptors1: the descriptors of the first image
    :param descriptors2: the descriptors of the second image
    :param geometry: the verified geometry
    :return: a new geometry whose matches are the guided matches merged with the previous inliers
    :raises ValueError: if the number of keypoints and descriptors differ
    """

    if not geometry.valid:
        return geometry

    locations1 = keypoint_locations(keypoints1)
    locations2 = keypoint_locations(keypoints2)

    distances = matcher.compute_distances(descriptors1, descriptors2)
    if distances is None:
        _LOGGER.error('guided matching skipped, the descriptor distances could not be computed')
        return geometry

    if distances.shape != (locations1.shape[0], locations2.shape[0]):
        raise ValueError(f'{locations1.shape[0]} x {locations2.shape[0]} keypoints but {distances.shape[0]} x '
                         f'{distances.shape[1]} descriptors')

    distances[~feasible_pairs(geometry, locations1, locations2, matcher.max_error)] = np.inf

    guided = matcher.select_matches(distances)
    combined = merge_matches(guided, geometry.inlier_matches)

    points1 = locations1[combined[:, 0]]
    points2 = locations2[combined[:, 1]]
    inlier_mask = geometry_residuals(geometry, points1, points2) <= matcher.max_error ** 2

    refit, inlier_mask = refit_geometry(geometry, points1, points2, inlier_mask, matcher.max_error)

    if inlier_mask.sum() < geometry.num_inliers:
        # a guided match displaced two previous inliers
        _LOGGER.debug('guided matching lost inliers, keeping the previous matches')
        return geometry

    out = replace(refit, matches=combined, inlier_mask=inlier_mask,
                  valid=bool(inlier_mask.sum() >= matcher.min_num_inliers))

    _LOGGER.info(f'guided matching: {guided.shape[0]} guided matches, {out.num_inliers} inliers '
                 f'(previously {geometry.num_inliers})')

    return out
