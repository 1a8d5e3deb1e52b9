"""
This module estimates planar homographies with the normalized direct linear transform (DLT).

A homography ``H`` maps homogeneous points of the first image onto the second, ``x2 ~ H @ x1``.  It explains the
matches when the scene is planar or when the camera only rotates.
"""

import numpy as np
from numpy.typing import NDArray

from siftmatch.estimators.utils import center_and_normalize_points, homogeneous
from siftmatch._typing import DOUBLE_ARRAY


HOMOGRAPHY_SAMPLE_SIZE: int = 4


def estimate_homography(points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY | None:
    """
    Estimate the homography mapping `points1` onto `points2` from at least 4 correspondences.

    Both point sets are normalized (see :func:`.center_and_normalize_points`) before the DLT system is solved in the
    least squares sense with an SVD.

    :param points1: the n x 2 points in the first image
    :param points2: the n x 2 points in the second image
    :return: the 3x3 homography scaled so that its Frobenius norm is 1, or None if the system is degenerate
    """

    points1 = np.asarray(points1, dtype=np.float64)
    points2 = np.asarray(points2, dtype=np.float64)

    if points1.shape[0] < HOMOGRAPHY_SAMPLE_SIZE:
        return None

    normalized1, transform1 = center_and_normalize_points(points1)
    normalized2, transform2 = center_and_normalize_points(points2)

    x1, y1 = normalized1[:, 0], normalized1[:, 1]
    x2, y2 = normalized2[:, 0], normalized2[:, 1]
    zeros, ones = np.zeros_like(x1), np.ones_like(x1)

    rows_x = np.column_stack([-x1, -y1, -ones, zeros, zeros, zeros, x2 * x1, x2 * y1, x2])
    rows_y = np.column_stack([zeros, zeros, zeros, -x1, -y1, -ones, y2 * x1, y2 * y1, y2])

    _, singular_values, vt = np.linalg.svd(np.vstack([rows_x, rows_y]))

    # the null space must be one dimensional
    if singular_values.size >= 8 and singular_values[7] < 1e-12 * singular_values[0]:
        return None

    normalized_h = vt[-1].reshape(3, 3)

    homography = np.linalg.solve(transform2, normalized_h @ transform1)

    norm = np.linalg.norm(homography)
    if not np.isfinite(norm) or norm == 0:
        return None

    return homography / norm


def homography_residuals(homography: NDArray, points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY:
    """
    Compute the squared transfer error ``||project(H @ x1) - x2||^2`` of every correspondence.

    Points mapped to infinity get an infinite residual.

    :param homography: the 3x3 homography
    :param points1: the n x 2 points in the first image
    :param points2: the n x 2 points in the second image
    :return: the n squared residuals in pixels squared
    """

    projected = homogeneous(points1) @ np.asarray(homography, dtype=np.float64).T

    with np.errstate(divide='ignore', invalid='ignore'):
        transferred = projected[:, :2] / projected[:, 2:]

    residuals = np.sum((transferred - np.asarray(points2, dtype=np.float64)) ** 2, axis=1)
    residuals[~np.isfinite(residuals)] = np.inf

    return residuals
