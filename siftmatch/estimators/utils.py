"""
This module provides helpers shared by the minimal solvers: Hartley normalization of point sets, homogeneous
coordinates and the degeneracy tests run before sampling.
"""

import numpy as np
from numpy.typing import NDArray

from siftmatch._typing import DOUBLE_ARRAY


COINCIDENT_TOLERANCE: float = 1e-8
"""
Points closer than this (in pixels) are considered the same point.
"""

COLLINEAR_TOLERANCE: float = 1e-8
"""
Point sets whose smallest normalized singular value is below this are considered collinear.
"""


def homogeneous(points: NDArray) -> DOUBLE_ARRAY:
    """
    Append a column of ones to n x 2 points.
    """
    points = np.asarray(points, dtype=np.float64)
    return np.column_stack([points, np.ones(points.shape[0])])


def center_and_normalize_points(points: NDArray) -> tuple[DOUBLE_ARRAY, DOUBLE_ARRAY]:
    """
    Translate and scale points so that their centroid is at the origin and their mean distance from it is sqrt(2).

    :param points: the n x 2 points
    :return: the n x 2 normalized points and the 3x3 matrix that maps homogeneous points to normalized ones
    """

    points = np.asarray(points, dtype=np.float64)
    centroid = points.mean(axis=0)
    mean_distance = np.linalg.norm(points - centroid, axis=1).mean()

    scale = np.sqrt(2) / mean_distance if mean_distance > 0 else 1.0

    transform = np.array([[scale, 0, -scale * centroid[0]],
                          [0, scale, -scale * centroid[1]],
                          [0, 0, 1]], dtype=np.float64)

    return (points - centroid) * scale, transform


def count_distinct_points(points: NDArray) -> int:
    """
    The number of distinct points after merging points within :data:`COINCIDENT_TOLERANCE`.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.shape[0] == 0:
        return 0
    return np.unique(np.round(points / COINCIDENT_TOLERANCE), axis=0).shape[0]


def are_collinear(points: NDArray) -> bool:
    """
    Whether all points lie on a single line (or coincide).
    """
    points = np.asarray(points, dtype=np.float64)
    if points.shape[0] < 3:
        return True
    centered = points - points.mean(axis=0)
    singular_values = np.linalg.svd(centered, compute_uv=False)
    if singular_values[0] == 0:
        return True
    return singular_values[1] / singular_values[0] < COLLINEAR_TOLERANCE


def is_degenerate(points1: NDArray, points2: NDArray, sample_size: int) -> bool:
    """
    Whether a correspondence set cannot support a model with minimal sample size `sample_size`.

    A set is degenerate if it has fewer correspondences or distinct points (in either image) than the minimal sample,
    or if the points in either image are all collinear.

    :param points1: the n x 2 points in the first image
    :param points2: the n x 2 points in the second image
    :param sample_size: the minimal sample size of the model
    :return: whether the set is degenerate
    """

    if points1.shape[0] < sample_size:
        return True

    for points in (points1, points2):
        if count_distinct_points(points) < sample_size or are_collinear(points):
            return True

    return False
