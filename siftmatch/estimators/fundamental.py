"""
This module estimates fundamental and essential matrices with the normalized eight point algorithm.

The fundamental matrix ``F`` relates corresponding pixels by the epipolar constraint ``x2.T @ F @ x1 = 0``.  When
the camera intrinsic matrices ``K1`` and ``K2`` are known, the same constraint holds for normalized image
coordinates with the essential matrix ``E`` and ``F = K2^-T @ E @ K1^-1``.

Residuals are squared Sampson errors, a first order approximation of the squared geometric distance of a
correspondence to the epipolar constraint.
"""

import numpy as np
from numpy.typing import NDArray

from siftmatch.estimators.utils import center_and_normalize_points, homogeneous
from siftmatch._typing import DOUBLE_ARRAY


FUNDAMENTAL_SAMPLE_SIZE: int = 8

ESSENTIAL_SAMPLE_SIZE: int = 8


def _solve_epipolar_system(points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY | None:
    x1, y1 = points1[:, 0], points1[:, 1]
    x2, y2 = points2[:, 0], points2[:, 1]

    system = np.column_stack([x2 * x1, x2 * y1, x2, y2 * x1, y2 * y1, y2, x1, y1, np.ones_like(x1)])

    _, singular_values, vt = np.linalg.svd(system)

    if singular_values.size >= 8 and singular_values[7] < 1e-12 * singular_values[0]:
        return None

    return vt[-1].reshape(3, 3)


def estimate_fundamental(points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY | None:
    """
    Estimate the fundamental matrix from at least 8 correspondences.

    The points are normalized, the linear system is solved with an SVD and rank 2 is enforced by zeroing the
    smallest singular value.

    :param points1: the n x 2 pixels in the first image
    :param points2: the n x 2 pixels in the second image
    :return: the 3x3 rank 2 fundamental matrix with unit Frobenius norm, or None if the system is degenerate
    """

    points1 = np.asarray(points1, dtype=np.float64)
    points2 = np.asarray(points2, dtype=np.float64)

    if points1.shape[0] < FUNDAMENTAL_SAMPLE_SIZE:
        return None

    normalized1, transform1 = center_and_normalize_points(points1)
    normalized2, transform2 = center_and_normalize_points(points2)

    solution = _solve_epipolar_system(normalized1, normalized2)
    if solution is None:
        return None

    u, s, vt = np.linalg.svd(solution)
    s[2] = 0
    rank2 = u @ np.diag(s) @ vt

    fundamental = transform2.T @ rank2 @ transform1

    norm = np.linalg.norm(fundamental)
    if not np.isfinite(norm) or norm == 0:
        return None

    return fundamental / norm


def estimate_essential(points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY | None:
    """
    Estimate the essential matrix from at least 8 correspondences in normalized image coordinates.

    The linear eight point solution is projected onto the essential manifold by setting its singular values to
    (1, 1, 0).

    :param points1: the n x 2 normalized coordinates in the first image
    :param points2: the n x 2 normalized coordinates in the second image
    :return: the 3x3 essential matrix, or None if the system is degenerate
    """

    points1 = np.asarray(points1, dtype=np.float64)
    points2 = np.asarray(points2, dtype=np.float64)

    if points1.shape[0] < ESSENTIAL_SAMPLE_SIZE:
        return None

    solution = _solve_epipolar_system(points1, points2)
    if solution is None:
        return None

    u, _, vt = np.linalg.svd(solution)
    return u @ np.diag([1.0, 1.0, 0.0]) @ vt


def sampson_residuals(fundamental: NDArray, points1: NDArray, points2: NDArray) -> DOUBLE_ARRAY:
    """
    Compute the squared Sampson error of every correspondence.

    :param fundamental: the 3x3 fundamental (or essential) matrix
    :param points1: the n x 2 points in the first image
    :param points2: the n x 2 points in the second image
    :return: the n squared residuals
    """

    fundamental = np.asarray(fundamental, dtype=np.float64)
    x1 = homogeneous(points1)
    x2 = homogeneous(points2)

    fx1 = x1 @ fundamental.T
    ftx2 = x2 @ fundamental

    numerator = np.sum(x2 * fx1, axis=1) ** 2
    denominator = fx1[:, 0] ** 2 + fx1[:, 1] ** 2 + ftx2[:, 0] ** 2 + ftx2[:, 1] ** 2

    with np.errstate(divide='ignore', invalid='ignore'):
        residuals = numerator / denominator

    residuals[denominator == 0] = np.where(numerator[denominator == 0] == 0, 0.0, np.inf)

    return residuals


def normalize_image_points(points: NDArray, intrinsic_matrix: NDArray) -> DOUBLE_ARRAY:
    """
    Convert pixels to normalized image coordinates with ``K^-1``.
    """
    rays = homogeneous(points) @ np.linalg.inv(np.asarray(intrinsic_matrix, dtype=np.float64)).T
    return rays[:, :2] / rays[:, 2:]


def fundamental_from_essential(essential: NDArray, intrinsic_matrix1: NDArray,
                               intrinsic_matrix2: NDArray) -> DOUBLE_ARRAY:
    """
    Compute ``F = K2^-T @ E @ K1^-1``, normalized to unit Frobenius norm.
    """
    fundamental = (np.linalg.inv(np.asarray(intrinsic_matrix2, dtype=np.float64)).T @
                   np.asarray(essential, dtype=np.float64) @
                   np.linalg.inv(np.asarray(intrinsic_matrix1, dtype=np.float64)))
    return fundamental / np.linalg.norm(fundamental)
