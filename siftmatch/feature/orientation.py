"""
This module estimates the orientation and, optionally, the affine shape of detected features.

Orientations are the peaks of a 36 bin histogram of gradient directions around the feature, weighted by gradient
magnitude and a Gaussian window of 1.5 times the feature scale (:func:`estimate_orientations`).

Affine shapes are estimated by iteratively normalizing the second moment matrix of the gradients around the
feature until it becomes isotropic (:func:`estimate_affine_shape`).  The result is the 2x2 frame, with unit
determinant, that maps a circular neighborhood onto the elliptical one in the image.
"""

import numpy as np
from numpy.typing import NDArray

from siftmatch.feature.scale_space import ScaleSpace, Detection
from siftmatch._typing import DOUBLE_ARRAY


NUM_ORIENTATION_BINS: int = 36

ORIENTATION_WINDOW_FACTOR: float = 1.5
"""
The standard deviation of the orientation window in units of the feature scale.
"""

ORIENTATION_PEAK_RATIO: float = 0.8
"""
Secondary histogram peaks must reach this fraction of the highest peak.
"""

ORIENTATION_SMOOTHING_PASSES: int = 6

AFFINE_MAX_ITERATIONS: int = 16

AFFINE_CONVERGENCE_RATIO: float = 0.9
"""
Affine adaptation stops once the ratio of the smaller to the larger eigenvalue of the second moment matrix reaches
this value.
"""

AFFINE_MAX_ANISOTROPY: float = 6.0
"""
Detections whose frame becomes more elongated than this ratio of singular values are rejected.
"""

AFFINE_PATCH_HALF_EXTENT: float = 3.0

AFFINE_PATCH_SAMPLES: int = 25

AFFINE_WINDOW_SIGMA: float = 1.5


def detection_level(scale_space: ScaleSpace, detection: Detection) -> int:
    """
    The Gaussian level nearest to a refined detection.
    """
    return int(np.clip(np.round(detection.level), 0, scale_space.octave_resolution + 2))


def orientation_histogram(angles: NDArray, weights: NDArray) -> DOUBLE_ARRAY:
    """
    Build a smoothed circular histogram of gradient directions.

    Each sample is linearly split between the two nearest bins.  The histogram is smoothed with a 3 tap box filter
    :data:`ORIENTATION_SMOOTHING_PASSES` times.

    :param angles: gradient directions in radians
    :param weights: the weight of every sample
    :return: the :data:`NUM_ORIENTATION_BINS` histogram
    """

    angles = np.mod(np.ravel(angles), 2 * np.pi)
    weights = np.ravel(weights).astype(np.float64)

    bins = angles * NUM_ORIENTATION_BINS / (2 * np.pi) - 0.5
    lower = np.floor(bins)
    fraction = bins - lower
    lower = lower.astype(np.int64)

    histogram = np.zeros(NUM_ORIENTATION_BINS, dtype=np.float64)
    np.add.at(histogram, lower % NUM_ORIENTATION_BINS, weights * (1 - fraction))
    np.add.at(histogram, (lower + 1) % NUM_ORIENTATION_BINS, weights * fraction)

    for _ in range(ORIENTATION_SMOOTHING_PASSES):
        histogram = (np.roll(histogram, 1) + histogram + np.roll(histogram, -1)) / 3

    return histogram


def dominant_orientations(histogram: DOUBLE_ARRAY, max_num_orientations: int) -> list[float]:
    """
    Find the dominant orientations of a histogram from :func:`orientation_histogram`.

    Local maxima reaching :data:`ORIENTATION_PEAK_RATIO` of the global maximum are interpolated with a parabola and
    returned from the strongest to the weakest.  An empty histogram gives a single orientation of 0.

    :param histogram: the orientation histogram
    :param max_num_orientations: the maximum number of orientations to return
    :return: the orientations in [0, 2 pi)
    """

    peak = histogram.max()
    if peak <= 0:
        return [0.0]

    left = np.roll(histogram, 1)
    right = np.roll(histogram, -1)

    peaks = np.flatnonzero((histogram > left) & (histogram > right) & (histogram >= ORIENTATION_PEAK_RATIO * peak))
    if peaks.size == 0:
        # plateau, no strict maximum
        peaks = np.array([int(histogram.argmax())])

    peaks = peaks[np.argsort(-histogram[peaks], kind='stable')][:max_num_orientations]

    orientations = []
    for index in peaks:
        curvature = left[index] - 2 * histogram[index] + right[index]
        shift = 0.5 * (left[index] - right[index]) / curvature if curvature != 0 else 0.0
        orientations.append(float(np.mod(2 * np.pi * (index + 0.5 + shift) / NUM_ORIENTATION_BINS, 2 * np.pi)))

    return orientations


def estimate_orientations(scale_space: ScaleSpace, detection: Detection, max_num_orientations: int) -> list[float]:
    """
    Estimate up to `max_num_orientations` orientations for a detection.

    :param scale_space: the scale space the detection was found in
    :param detection: the detection
    :param max_num_orientations: the maximum number of orientations
    :return: the orientations in radians, strongest first
    """

    grad_x, grad_y = scale_space.gradients(detection.octave, detection_level(scale_space, detection))
    height, width = grad_x.shape

    window_sigma = ORIENTATION_WINDOW_FACTOR * detection.sigma
    radius = max(1, int(round(3 * window_sigma)))

    row, col = int(round(detection.y)), int(round(detection.x))
    rows = slice(max(row - radius, 0), min(row + radius + 1, height))
    cols = slice(max(col - radius, 0), min(col + radius + 1, width))

    sample_rows, sample_cols = np.mgrid[rows, cols]
    distance2 = (sample_cols - detection.x) ** 2 + (sample_rows - detection.y) ** 2
    inside = distance2 <= (radius + 0.5) ** 2

    patch_x = grad_x[rows, cols][inside]
    patch_y = grad_y[rows, cols][inside]

    weights = np.exp(-distance2[inside] / (2 * window_sigma ** 2)) * np.hypot(patch_x, patch_y)

    return dominant_orientations(orientation_histogram(np.arctan2(patch_y, patch_x), weights), max_num_orientations)


def estimate_affine_shape(scale_space: ScaleSpace, detection: Detection,
                          upright: bool = False) -> tuple[DOUBLE_ARRAY, float] | None:
    """
    Estimate the affine shape and orientation of a detection by affine adaptation.

    Starting from a circular frame, the gradients are sampled in the current frame, their Gaussian weighted second
    moment matrix ``M`` is computed, and the frame is updated with ``M^(-1/2)`` (normalized to unit determinant)
    until ``M`` is isotropic.  The orientation is then the dominant gradient direction in the normalized frame, or 0
    if `upright`.

    :param scale_space: the scale space the detection was found in
    :param detection: the detection
    :param upright: whether to fix the orientation to 0
    :return: the unit determinant 2x2 shape and the orientation in the normalized frame, or None if the neighborhood
             is flat or too elongated
    """

    level = detection_level(scale_space, detection)
    center = (detection.x, detection.y)

    shape = np.eye(2)
    window = None
    local_x = local_y = np.empty(0)
    for _ in range(AFFINE_MAX_ITERATIONS):
        local_x, local_y, grid_x, grid_y = scale_space.sample_gradients(detection.octave, level, center,
                                                                        detection.sigma * shape,
                                                                        AFFINE_PATCH_HALF_EXTENT,
                                                                        AFFINE_PATCH_SAMPLES)
        window = np.exp(-(grid_x ** 2 + grid_y ** 2) / (2 * AFFINE_WINDOW_SIGMA ** 2))

        moment = np.array([[np.sum(window * local_x * local_x), np.sum(window * local_x * local_y)],
                           [np.sum(window * local_x * local_y), np.sum(window * local_y * local_y)]],
                          dtype=np.float64)

        eigenvalues, eigenvectors = np.linalg.eigh(moment)
        if eigenvalues[0] <= 0:
            return None

        if eigenvalues[0] / eigenvalues[1] >= AFFINE_CONVERGENCE_RATIO:
            break

        shape = shape @ (eigenvectors @ np.diag(eigenvalues ** -0.5) @ eigenvectors.T)
        shape /= np.sqrt(np.linalg.det(shape))

        singular_values = np.linalg.svd(shape, compute_uv=False)
        if singular_values[0] / singular_values[1] > AFFINE_MAX_ANISOTROPY:
            return None

    if upright:
        return shape, 0.0

    histogram = orientation_histogram(np.arctan2(local_y, local_x), window * np.hypot(local_x, local_y))

    return shape, dominant_orientations(histogram, 1)[0]
