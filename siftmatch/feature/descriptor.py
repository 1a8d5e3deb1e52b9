"""
This module computes SIFT descriptors and normalizes them.

A descriptor is a 4 x 4 grid of spatial bins with 8 orientation bins each.  The gradients of the Gaussian level
closest to the feature scale are sampled on a regular grid aligned with the feature frame (position, scale,
orientation and optionally affine shape), weighted by a Gaussian window, and accumulated with trilinear
interpolation.  The raw histogram is L2 normalized, clamped at :data:`DESCRIPTOR_CLAMP` and normalized again.

With domain-size pooling, the descriptor is the average of the descriptors computed at several scale factors
around the detected scale (J. Dong and S. Soatto, "Domain-Size Pooling in Local Descriptors and Network
Architectures", CVPR 2015).

The final descriptor is either L2 normalized or L1 normalized followed by an element-wise square root (L1-root,
R. Arandjelovic and A. Zisserman, "Three things everyone should know to improve object retrieval", CVPR 2012) and
stored as bytes.
"""

import warnings

from enum import Enum

from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from siftmatch.feature.scale_space import ScaleSpace
from siftmatch._typing import DOUBLE_ARRAY, UINT8_ARRAY


NUM_SPATIAL_BINS: int = 4

NUM_DESCRIPTOR_ORIENTATION_BINS: int = 8

MAGNIFICATION: float = 3.0
"""
The width of a spatial bin in units of the feature scale.
"""

DESCRIPTOR_CLAMP: float = 0.2
"""
The maximum value of any entry of the L2 normalized raw descriptor.
"""

MIN_SAMPLES_PER_BIN: int = 4

MAX_SAMPLES_PER_BIN: int = 8


class SiftNormalization(Enum):
    """
    The normalization applied to the final descriptors.
    """

    L1_ROOT = 'L1_ROOT'
    """
    L1-normalizes each descriptor followed by element-wise square rooting.

    This normalization is usually better than standard L2-normalization.
    """

    L2 = 'L2'
    """
    Each vector is L2-normalized.
    """


def raw_descriptor(scale_space: ScaleSpace, octave_position: int, level: int, center: tuple[float, float],
                   frame: NDArray) -> DOUBLE_ARRAY:
    """
    Accumulate the un-normalized gradient histogram of one feature frame.

    :param scale_space: the scale space to sample
    :param octave_position: the octave to sample
    :param level: the Gaussian level to sample
    :param center: the (x, y) center of the feature in octave pixels
    :param frame: the 2x2 frame of the feature in octave pixels (columns are the scaled descriptor axes)
    :return: the flattened 4 x 4 x 8 histogram (row bin, column bin, orientation bin)
    """

    pixels_per_unit = np.sqrt(abs(np.linalg.det(frame)))
    samples_per_bin = int(np.clip(np.ceil(MAGNIFICATION * pixels_per_unit), MIN_SAMPLES_PER_BIN, MAX_SAMPLES_PER_BIN))

    # one extra half bin on each side so the outer bins receive their full interpolated share
    half_extent = MAGNIFICATION * (NUM_SPATIAL_BINS + 1) / 2
    samples = (NUM_SPATIAL_BINS + 1) * samples_per_bin

    grad_x, grad_y, local_x, local_y = scale_space.sample_gradients(octave_position, level, center, frame,
                                                                    half_extent, samples)

    window_sigma = MAGNIFICATION * NUM_SPATIAL_BINS / 2
    weights = np.hypot(grad_x, grad_y) * np.exp(-(local_x ** 2 + local_y ** 2) / (2 * window_sigma ** 2))

    bin_x = (local_x / MAGNIFICATION + (NUM_SPATIAL_BINS - 1) / 2).ravel()
    bin_y = (local_y / MAGNIFICATION + (NUM_SPATIAL_BINS - 1) / 2).ravel()
    bin_o = (np.mod(np.arctan2(grad_y, grad_x), 2 * np.pi) * NUM_DESCRIPTOR_ORIENTATION_BINS / (2 * np.pi)).ravel()
    weights = weights.ravel().astype(np.float64)

    floor_x, floor_y, floor_o = np.floor(bin_x), np.floor(bin_y), np.floor(bin_o)
    frac_x, frac_y, frac_o = bin_x - floor_x, bin_y - floor_y, bin_o - floor_o
    floor_x, floor_y, floor_o = floor_x.astype(np.int64), floor_y.astype(np.int64), floor_o.astype(np.int64)

    histogram = np.zeros((NUM_SPATIAL_BINS, NUM_SPATIAL_BINS, NUM_DESCRIPTOR_ORIENTATION_BINS), dtype=np.float64)

    for step_y in (0, 1):
        index_y = floor_y + step_y
        weight_y = frac_y if step_y else 1 - frac_y
        for step_x in (0, 1):
            index_x = floor_x + step_x
            weight_x = frac_x if step_x else 1 - frac_x
            valid = (index_x >= 0) & (index_x < NUM_SPATIAL_BINS) & (index_y >= 0) & (index_y < NUM_SPATIAL_BINS)
            for step_o in (0, 1):
                index_o = (floor_o + step_o) % NUM_DESCRIPTOR_ORIENTATION_BINS
                weight_o = frac_o if step_o else 1 - frac_o
                np.add.at(histogram, (index_y[valid], index_x[valid], index_o[valid]),
                          (weights * weight_y * weight_x * weight_o)[valid])

    return histogram.ravel()


def clamp_normalize(descriptor: DOUBLE_ARRAY) -> DOUBLE_ARRAY:
    """
    L2 normalize, clamp at :data:`DESCRIPTOR_CLAMP` and L2 normalize again.
    """
    norm = np.linalg.norm(descriptor)
    if norm == 0:
        return descriptor
    descriptor = np.minimum(descriptor / norm, DESCRIPTOR_CLAMP)
    return descriptor / np.linalg.norm(descriptor)


def compute_descriptor(scale_space: ScaleSpace, x: float, y: float, frame: NDArray,
                       scale_factors: Sequence[float] = (1.0,)) -> DOUBLE_ARRAY:
    """
    Compute the (possibly domain-size pooled) float descriptor of a feature.

    For every scale factor the frame is scaled, the Gaussian level closest to the scaled feature scale is found with
    :meth:`.ScaleSpace.nearest_level` and a clamped, normalized descriptor is computed there.  The result is the
    average over the scale factors.

    :param scale_space: the scale space of the image
    :param x: the column of the feature in base image pixels
    :param y: the row of the feature in base image pixels
    :param frame: the 2x2 frame of the feature in base image pixels
    :param scale_factors: the scale factors to pool over
    :return: the averaged descriptor (not yet normalized with :func:`normalize_descriptors`)
    """

    frame = np.asarray(frame, dtype=np.float64)
    scale = np.sqrt(abs(np.linalg.det(frame)))

    pooled = np.zeros(NUM_SPATIAL_BINS ** 2 * NUM_DESCRIPTOR_ORIENTATION_BINS, dtype=np.float64)
    for factor in scale_factors:
        octave_position, level = scale_space.nearest_level(scale * factor)
        step = scale_space.octaves[octave_position].step
        pooled += clamp_normalize(raw_descriptor(scale_space, octave_position, level, (x / step, y / step),
                                                 frame * factor / step))

    return pooled / len(scale_factors)


def domain_size_pooling_scales(min_scale: float, max_scale: float, num_scales: int) -> DOUBLE_ARRAY:
    """
    The logarithmically spaced scale factors used for domain-size pooling.

    A single scale uses `min_scale`.
    """
    if num_scales == 1:
        return np.array([min_scale], dtype=np.float64)
    return np.geomspace(min_scale, max_scale, num_scales)


def l2_normalize_descriptors(descriptors: NDArray) -> DOUBLE_ARRAY:
    """
    L2 normalize every row.  All-zero rows stay zero.
    """
    descriptors = np.asarray(descriptors, dtype=np.float64)
    norms = np.linalg.norm(descriptors, axis=1, keepdims=True)
    return np.divide(descriptors, norms, out=np.zeros_like(descriptors), where=norms > 0)


def l1_root_normalize_descriptors(descriptors: NDArray) -> DOUBLE_ARRAY:
    """
    L1 normalize every row and take the element-wise square root.  All-zero rows stay zero.
    """
    descriptors = np.asarray(descriptors, dtype=np.float64)
    norms = np.abs(descriptors).sum(axis=1, keepdims=True)
    return np.sqrt(np.divide(np.abs(descriptors), norms, out=np.zeros_like(descriptors), where=norms > 0))


def normalize_descriptors(descriptors: NDArray, normalization: SiftNormalization) -> DOUBLE_ARRAY:
    """
    Apply the final descriptor normalization.

    :param descriptors: n x d float descriptors
    :param normalization: the normalization to apply
    :return: the normalized descriptors
    """
    if normalization is SiftNormalization.L1_ROOT:
        return l1_root_normalize_descriptors(descriptors)
    if normalization is SiftNormalization.L2:
        return l2_normalize_descriptors(descriptors)
    raise ValueError(f'unknown normalization {normalization}')


def descriptors_to_unsigned_byte(descriptors: NDArray) -> UINT8_ARRAY:
    """
    Convert normalized float descriptors to bytes as ``min(255, round(512 * value))``.

    :param descriptors: the normalized descriptors with non-negative entries
    :return: the byte descriptors
    """
    descriptors = np.asarray(descriptors, dtype=np.float64)
    if (descriptors < 0).any():
        warnings.warn("Negative descriptor values were clipped to 0")

    scaled = np.round(512 * descriptors)
    return np.clip(scaled, 0, 255).astype(np.uint8)
