"""
This module verifies putative matches between two images by robustly estimating their two view geometry.

The relation between the images is one of

* ``CALIBRATED``: an essential matrix, when the intrinsic matrices of both cameras are known,
* ``UNCALIBRATED``: a fundamental matrix otherwise,
* ``PLANAR``: a homography, for planar scenes or pure rotations (only with
  :attr:`~.SiftMatchingOptions.multiple_models`).

Every model is fit with :class:`.RANSAC`.  Degenerate match sets are detected before sampling, and geometries with
fewer than :attr:`~.SiftMatchingOptions.min_num_inliers` inliers are reported as invalid.

Example:
    >>> from siftmatch.estimators import TwoViewGeometryEstimator
    >>> estimator = TwoViewGeometryEstimator(rng=np.random.default_rng(0))
    >>> geometry = estimator.estimate(features1, features2, matches)
    >>> if geometry.valid:
    ...     print(geometry.config.name, geometry.num_inliers)
"""

import logging

import warnings

from dataclasses import dataclass, field

from enum import IntEnum

import numpy as np
from numpy.typing import NDArray

from siftmatch.estimators.utils import is_degenerate
from siftmatch.estimators.homography import estimate_homography, homography_residuals, HOMOGRAPHY_SAMPLE_SIZE
from siftmatch.estimators.fundamental import (estimate_fundamental, estimate_essential, sampson_residuals,
                                              normalize_image_points, fundamental_from_essential,
                                              FUNDAMENTAL_SAMPLE_SIZE, ESSENTIAL_SAMPLE_SIZE)
from siftmatch.estimators.ransac import RANSAC, RANSACOptions, RANSACReport, ModelEstimator
from siftmatch.feature.types import FeatureSet, keypoint_locations, as_matches
from siftmatch.feature.matching import SiftMatchingOptions
from siftmatch.utilities.mixins import UserOptionConfigured, AttributePrinting
from siftmatch._typing import DOUBLE_ARRAY, BOOL_ARRAY, INDEX_ARRAY, ARRAY_LIKE


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting geometric verification results.
"""


class TwoViewGeometryConfiguration(IntEnum):
    """
    The kind of geometric relation found between two images.
    """

    UNDEFINED = 0
    """
    No model with enough inliers was found.
    """

    DEGENERATE = 1
    """
    The matches cannot support any model (too few, coincident or collinear points).
    """

    CALIBRATED = 2
    """
    An essential matrix relates the images.
    """

    UNCALIBRATED = 3
    """
    A fundamental matrix relates the images.
    """

    PLANAR = 4
    """
    A homography relates the images.
    """


@dataclass
class TwoViewGeometry:
    """
    The verified geometry of an image pair.
    """

    config: TwoViewGeometryConfiguration = TwoViewGeometryConfiguration.UNDEFINED
    """
    The kind of relation.
    """

    matches: INDEX_ARRAY = field(default_factory=lambda: np.empty((0, 2), dtype=np.int64))
    """
    The m x 2 candidate matches the inlier mask refers to.
    """

    inlier_mask: BOOL_ARRAY = field(default_factory=lambda: np.zeros(0, dtype=bool))
    """
    Which of :attr:`matches` are inliers of the model.
    """

    E: DOUBLE_ARRAY | None = None
    """
    The essential matrix (``CALIBRATED`` only).
    """

    F: DOUBLE_ARRAY | None = None
    """
    The fundamental matrix in pixels (``CALIBRATED`` and ``UNCALIBRATED``).
    """

    H: DOUBLE_ARRAY | None = None
    """
    The homography (``PLANAR`` only).
    """

    num_trials: int = 0
    """
    The total number of RANSAC samples drawn.
    """

    valid: bool = False
    """
    Whether the geometry has at least the minimum number of inliers.
    """

    @property
    def inlier_matches(self) -> INDEX_ARRAY:
        """
        The matches that are inliers of the model.
        """
        return self.matches[self.inlier_mask]

    @property
    def num_inliers(self) -> int:
        return int(self.inlier_mask.sum())


def geometry_residuals(geometry: TwoViewGeometry, points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY:
    """
    The squared residuals in pixels of correspondences under a geometry.

    ``PLANAR`` geometries use the transfer error of :attr:`~TwoViewGeometry.H` and the others the Sampson error of
    :attr:`~TwoViewGeometry.F`.

    :param geometry: the geometry
    :param points1: the n x 2 points in the first image
    :param points2: the n x 2 points in the second image
    :return: the n squared residuals
    :raises ValueError: if the geometry holds no model
    """

    if geometry.H is not None and (geometry.config == TwoViewGeometryConfiguration.PLANAR or geometry.F is None):
        return homography_residuals(geometry.H, points1, points2)
    if geometry.F is not None:
        return sampson_residuals(geometry.F, points1, points2)
    raise ValueError(f'a {geometry.config.name} geometry without a model cannot score correspondences')


def matched_locations(keypoints1: FeatureSet | ARRAY_LIKE, keypoints2: FeatureSet | ARRAY_LIKE,
                      matches: INDEX_ARRAY) -> tuple[DOUBLE_ARRAY, DOUBLE_ARRAY]:
    """
    Gather the locations of the matched keypoints.

    :raises ValueError: if a match refers to a keypoint that does not exist
    """

    locations1 = keypoint_locations(keypoints1)
    locations2 = keypoint_locations(keypoints2)

    if matches.size and (matches.min() < 0 or matches[:, 0].max() >= locations1.shape[0] or
                         matches[:, 1].max() >= locations2.shape[0]):
        raise ValueError('the matches refer to keypoints that do not exist')

    return locations1[matches[:, 0]], locations2[matches[:, 1]]


def mean_focal_length(camera1: NDArray, camera2: NDArray) -> float:
    """
    The mean of the focal lengths (in pixels) of two intrinsic matrices.
    """
    return float(np.mean([camera1[0, 0], camera1[1, 1], camera2[0, 0], camera2[1, 1]]))


class TwoViewGeometryEstimator(UserOptionConfigured[SiftMatchingOptions], SiftMatchingOptions, AttributePrinting):
    """
    Estimate the two view geometry of putative matches.

    The RANSAC settings (:attr:`~.SiftMatchingOptions.max_error`, :attr:`~.SiftMatchingOptions.confidence`,
    :attr:`~.SiftMatchingOptions.min_num_trials`, :attr:`~.SiftMatchingOptions.max_num_trials` and
    :attr:`~.SiftMatchingOptions.min_inlier_ratio`) and the acceptance settings
    (:attr:`~.SiftMatchingOptions.min_num_inliers` and :attr:`~.SiftMatchingOptions.multiple_models`) come from the
    matching options.
    """

    def __init__(self, options: SiftMatchingOptions | None = None, rng: np.random.Generator | None = None):
        """
        :param options: the options to configure the estimator with
        :param rng: the random generator used for sampling.  A fresh unseeded generator is used if None.
        """
        super().__init__(SiftMatchingOptions, options=options)

        self.rng: np.random.Generator = rng if rng is not None else np.random.default_rng()
        """
        The random generator used for sampling.
        """

    def ransac(self, max_error: float | None = None) -> RANSAC:
        """
        Create the RANSAC loop configured from these options.

        :param max_error: overrides :attr:`~.SiftMatchingOptions.max_error`, for instance to express it in
                          normalized image coordinates
        """
        return RANSAC(RANSACOptions(max_error=self.max_error if max_error is None else max_error,
                                    confidence=self.confidence,
                                    min_num_trials=self.min_num_trials,
                                    max_num_trials=self.max_num_trials,
                                    min_inlier_ratio=self.min_inlier_ratio),
                      rng=self.rng)

    def _estimate_relative_pose(self, points1: DOUBLE_ARRAY, points2: DOUBLE_ARRAY, camera1: NDArray | None,
                                camera2: NDArray | None) -> tuple[TwoViewGeometryConfiguration, RANSACReport,
                                                                  DOUBLE_ARRAY | None, DOUBLE_ARRAY | None]:
        if camera1 is not None and camera2 is not None:
            normalized1 = normalize_image_points(points1, camera1)
            normalized2 = normalize_image_points(points2, camera2)

            report = self.ransac(self.max_error / mean_focal_length(camera1, camera2)).estimate(
                ModelEstimator(ESSENTIAL_SAMPLE_SIZE, estimate_essential, sampson_residuals), normalized1, normalized2)

            if report.model is None:
                return TwoViewGeometryConfiguration.CALIBRATED, report, None, None
            return (TwoViewGeometryConfiguration.CALIBRATED, report, report.model,
                    fundamental_from_essential(report.model, camera1, camera2))

        report = self.ransac().estimate(ModelEstimator(FUNDAMENTAL_SAMPLE_SIZE, estimate_fundamental,
                                                       sampson_residuals), points1, points2)
        return TwoViewGeometryConfiguration.UNCALIBRATED, report, None, report.model

    def estimate(self, keypoints1: FeatureSet | ARRAY_LIKE, keypoints2: FeatureSet | ARRAY_LIKE,
                 matches: ARRAY_LIKE, camera1: NDArray | None = None,
                 camera2: NDArray | None = None) -> TwoViewGeometry:
        """
        Estimate the geometry relating two images from putative matches.

        :param keypoints1: the keypoints of the first image (a feature set or an array whose first columns are x, y)
        :param keypoints2: the keypoints of the second image
        :param matches: the m x 2 putative matches
        :param camera1: the optional 3x3 intrinsic matrix of the first camera
        :param camera2: the optional 3x3 intrinsic matrix of the second camera
        :return: the geometry.  Its :attr:`~TwoViewGeometry.matches` are the putative matches.
        :raises ValueError: if the matches refer to keypoints that do not exist
        """

        matches = as_matches(matches)
        points1, points2 = matched_locations(keypoints1, keypoints2, matches)

        calibrated = camera1 is not None and camera2 is not None
        if not calibrated and (camera1 is not None or camera2 is not None):
            warnings.warn("Only one intrinsic matrix was given, falling back to the uncalibrated fundamental matrix")

        if calibrated:
            camera1 = np.asarray(camera1, dtype=np.float64)
            camera2 = np.asarray(camera2, dtype=np.float64)

        pose_sample_size = ESSENTIAL_SAMPLE_SIZE if calibrated else FUNDAMENTAL_SAMPLE_SIZE
        try_pose = not is_degenerate(points1, points2, pose_sample_size)
        try_planar = self.multiple_models and not is_degenerate(points1, points2, HOMOGRAPHY_SAMPLE_SIZE)

        if not (try_pose or try_planar):
            _LOGGER.debug(f'{matches.shape[0]} matches are degenerate')
            return TwoViewGeometry(TwoViewGeometryConfiguration.DEGENERATE, matches,
                                   np.zeros(matches.shape[0], dtype=bool), num_trials=0, valid=False)

        geometry = None
        num_trials = 0

        if try_pose:
            config, report, essential, fundamental = self._estimate_relative_pose(points1, points2, camera1, camera2)
            num_trials += report.num_trials
            geometry = TwoViewGeometry(config, matches, report.inlier_mask, E=essential, F=fundamental)

        if try_planar:
            report = self.ransac().estimate(ModelEstimator(HOMOGRAPHY_SAMPLE_SIZE, estimate_homography,
                                                           homography_residuals), points1, points2)
            num_trials += report.num_trials
            if geometry is None or int(report.inlier_mask.sum()) > geometry.num_inliers:
                geometry = TwoViewGeometry(TwoViewGeometryConfiguration.PLANAR, matches, report.inlier_mask,
                                           H=report.model)

        geometry.num_trials = num_trials
        has_model = geometry.F is not None or geometry.H is not None
        geometry.valid = has_model and geometry.num_inliers >= self.min_num_inliers

        if not geometry.valid:
            geometry.config = TwoViewGeometryConfiguration.UNDEFINED

        _LOGGER.info(f'{geometry.config.name} geometry with {geometry.num_inliers} of {matches.shape[0]} '
                     f'inliers after {num_trials} trials')

        return geometry
