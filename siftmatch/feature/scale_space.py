"""
This module builds the difference of Gaussian (DoG) scale space of an image and detects scale-space extrema in it.

The scale space is a list of :class:`Octave`.  Each octave holds ``octave_resolution + 3`` Gaussian blurred levels
and the ``octave_resolution + 2`` differences between consecutive levels.  Level ``s`` of an octave has a blur of
``SIGMA0 * 2**(s / octave_resolution)`` octave pixels, and octave ``o`` has pixels that are ``2**o`` base image pixels
wide (octave ``-1`` is the image upsampled by 2).  The next octave starts from the level with twice the base blur,
subsampled by 2.

Detection looks for 3x3x3 extrema of the DoG stack, refines them to sub-pixel/sub-level accuracy with a quadratic
fit, and rejects low contrast peaks and peaks on edges (:meth:`ScaleSpace.detect`).

The construction of the octaves is split into small functions (:func:`prepare_base`, :func:`incremental_sigmas`,
:func:`minimum_octave_size`) so that the accelerated extractor can build identical octaves on a device.
"""

from dataclasses import dataclass, field

from typing import Callable, NamedTuple

import numpy as np
from numpy.typing import NDArray

import cv2

from scipy import ndimage

from siftmatch._typing import FLOAT_ARRAY


SIGMA0: float = 1.6
"""
The blur of level 0 of every octave, in octave pixels.
"""

NOMINAL_SIGMA: float = 0.5
"""
The blur assumed to be already present in the input image, in image pixels.
"""

MAX_REFINEMENT_ITERATIONS: int = 5
"""
The maximum number of times a detection is moved to a neighboring sample during sub-pixel refinement.
"""


class Octave(NamedTuple):
    """
    One octave of the scale space.
    """

    index: int
    """
    The octave number (``first_octave`` for the first built octave).
    """

    step: float
    """
    The size of one octave pixel in base image pixels (``2**index``).
    """

    gaussians: FLOAT_ARRAY
    """
    The ``(octave_resolution + 3) x h x w`` stack of Gaussian blurred levels.
    """

    dogs: FLOAT_ARRAY
    """
    The ``(octave_resolution + 2) x h x w`` stack of differences of consecutive Gaussian levels.
    """


class Detection(NamedTuple):
    """
    A refined scale-space extremum.
    """

    octave: int
    """
    The position of the octave in :attr:`ScaleSpace.octaves`.
    """

    level: float
    """
    The refined (continuous) level within the octave.
    """

    x: float
    """
    The refined column in octave pixels.
    """

    y: float
    """
    The refined row in octave pixels.
    """

    sigma: float
    """
    The blur of the detection in octave pixels.
    """

    response: float
    """
    The interpolated DoG value at the extremum.
    """


def to_gray_float(image: NDArray) -> FLOAT_ARRAY:
    """
    Convert an image to a float32 gray image with values in [0, 1].

    Integer images are scaled by the maximum of their dtype.  Floating point images with values larger than 1 are
    scaled by their maximum.  3 channel images are assumed to be BGR and 4 channel images BGRA, as read by OpenCV.

    :param image: the image to convert
    :return: the gray image
    :raises ValueError: if the image is empty, has an unsupported shape, or contains non-finite values
    """

    image = np.asarray(image)

    if image.size == 0:
        raise ValueError('the image is empty')

    if image.ndim == 3 and image.shape[2] == 1:
        image = image[..., 0]

    if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (3, 4)):
        raise ValueError(f'unsupported image shape {image.shape}')

    if np.issubdtype(image.dtype, np.integer):
        gray = image.astype(np.float32) / np.float32(np.iinfo(image.dtype).max)
    elif np.issubdtype(image.dtype, np.floating) or image.dtype == np.bool_:
        gray = image.astype(np.float32)
        if not np.isfinite(gray).all():
            raise ValueError('the image contains non-finite values')
        peak = gray.max()
        if peak > 1:
            gray /= peak
    else:
        raise ValueError(f'unsupported image dtype {image.dtype}')

    if gray.ndim == 3:
        code = cv2.COLOR_BGR2GRAY if gray.shape[2] == 3 else cv2.COLOR_BGRA2GRAY
        gray = cv2.cvtColor(gray, code)

    return np.clip(gray, 0, 1).astype(np.float32)


def gaussian_kernel(sigma: float) -> FLOAT_ARRAY:
    """
    A normalized 1D Gaussian kernel truncated at 4 sigma.

    :param sigma: the standard deviation in pixels
    :return: the kernel as float32 with odd length
    """
    radius = max(1, int(np.ceil(4 * sigma)))
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-offsets ** 2 / (2 * sigma ** 2))
    return (kernel / kernel.sum()).astype(np.float32)


def gaussian_blur(image: FLOAT_ARRAY, sigma: float) -> FLOAT_ARRAY:
    """
    Blur an image with a separable Gaussian kernel from :func:`gaussian_kernel` using reflected borders.

    :param image: the float32 image
    :param sigma: the standard deviation in pixels.  Values <= 0 return a copy of the image
    :return: the blurred image
    """
    if sigma <= 0:
        return image.copy()
    kernel = gaussian_kernel(sigma)
    return cv2.sepFilter2D(image, cv2.CV_32F, kernel, kernel, borderType=cv2.BORDER_REFLECT_101)


def upsample(image: FLOAT_ARRAY) -> FLOAT_ARRAY:
    """
    Upsample an image by 2 so that pixel ``(r, c)`` of the input lands on pixel ``(2r, 2c)`` of the output.

    The samples in between are bilinearly interpolated, the last row/column are replicated.

    :param image: the image to upsample
    :return: the upsampled image
    """
    padded = np.pad(image, ((0, 1), (0, 1)), mode='edge')
    height, width = image.shape
    out = np.empty((2 * height, 2 * width), dtype=np.float32)
    out[0::2, 0::2] = padded[:-1, :-1]
    out[0::2, 1::2] = 0.5 * (padded[:-1, :-1] + padded[:-1, 1:])
    out[1::2, 0::2] = 0.5 * (padded[:-1, :-1] + padded[1:, :-1])
    out[1::2, 1::2] = 0.25 * (padded[:-1, :-1] + padded[:-1, 1:] + padded[1:, :-1] + padded[1:, 1:])
    return out


def prepare_base(image: FLOAT_ARRAY, first_octave: int) -> tuple[FLOAT_ARRAY, float]:
    """
    Resample the image to the resolution of the first octave.

    :param image: the gray float32 image
    :param first_octave: the first octave.  Negative values upsample, positive values subsample
    :return: the resampled image and the blur it is assumed to already contain (in its own pixels)
    """
    base = image
    for _ in range(-first_octave):
        base = upsample(base)
    for _ in range(first_octave):
        base = np.ascontiguousarray(base[::2, ::2])
    return base, NOMINAL_SIGMA * 2.0 ** (-first_octave)


def level_sigmas(octave_resolution: int) -> NDArray[np.float64]:
    """
    The blur of every Gaussian level of an octave in octave pixels.
    """
    return SIGMA0 * 2.0 ** (np.arange(octave_resolution + 3) / octave_resolution)


def incremental_sigmas(octave_resolution: int) -> NDArray[np.float64]:
    """
    The blur to apply to level ``s - 1`` to get level ``s``, for ``s = 1 ... octave_resolution + 2``.
    """
    sigmas = level_sigmas(octave_resolution)
    return np.sqrt(sigmas[1:] ** 2 - sigmas[:-1] ** 2)


def minimum_octave_size(octave_resolution: int) -> int:
    """
    The smallest side length (in pixels) for which an octave is built.

    The largest blur kernel of the octave must fit inside the image.
    """
    largest_radius = int(np.ceil(4 * incremental_sigmas(octave_resolution).max()))
    return max(16, largest_radius + 1)


def find_extrema_candidates(dogs: FLOAT_ARRAY, peak_threshold: float) -> NDArray[np.int64]:
    """
    Find the samples of a DoG stack that are 3x3x3 extrema with a magnitude of at least 80% of the peak threshold.

    The first and last level and the outermost rows/columns are excluded since the refinement needs their neighbors.

    :param dogs: the levels x h x w DoG stack
    :param peak_threshold: the peak threshold
    :return: a k x 3 array of (level, row, column) indices
    """
    maxima = dogs == ndimage.maximum_filter(dogs, size=3, mode='nearest')
    minima = dogs == ndimage.minimum_filter(dogs, size=3, mode='nearest')

    screen = 0.8 * peak_threshold
    candidates = (maxima & (dogs >= screen)) | (minima & (dogs <= -screen))

    candidates[[0, -1]] = False
    candidates[:, [0, -1]] = False
    candidates[:, :, [0, -1]] = False

    return np.argwhere(candidates)


def refine_extremum(dogs: FLOAT_ARRAY, level: int, row: int, col: int, peak_threshold: float,
                    edge_threshold: float) -> tuple[float, float, float, float] | None:
    """
    Refine an extremum candidate with a quadratic fit and apply the contrast and edge tests.

    The candidate is moved to the neighboring sample whenever the fitted offset exceeds half a sample in any
    dimension, at most :data:`MAX_REFINEMENT_ITERATIONS` times.

    :param dogs: the levels x h x w DoG stack
    :param level: the level of the candidate
    :param row: the row of the candidate
    :param col: the column of the candidate
    :param peak_threshold: peaks with an interpolated magnitude below this are rejected
    :param edge_threshold: peaks whose principal curvature ratio exceeds this are rejected
    :return: the refined ``(level, row, col, response)`` or None if the candidate is rejected
    """

    num_levels, height, width = dogs.shape

    offset = np.zeros(3)
    gradient = np.zeros(3)
    dxx = dyy = dxy = 0.0

    for _ in range(MAX_REFINEMENT_ITERATIONS):
        center = float(dogs[level, row, col])
        dx = 0.5 * (dogs[level, row, col + 1] - dogs[level, row, col - 1])
        dy = 0.5 * (dogs[level, row + 1, col] - dogs[level, row - 1, col])
        ds = 0.5 * (dogs[level + 1, row, col] - dogs[level - 1, row, col])

        dxx = dogs[level, row, col + 1] + dogs[level, row, col - 1] - 2 * center
        dyy = dogs[level, row + 1, col] + dogs[level, row - 1, col] - 2 * center
        dss = dogs[level + 1, row, col] + dogs[level - 1, row, col] - 2 * center

        dxy = 0.25 * (dogs[level, row + 1, col + 1] - dogs[level, row + 1, col - 1] -
                      dogs[level, row - 1, col + 1] + dogs[level, row - 1, col - 1])
        dxs = 0.25 * (dogs[level + 1, row, col + 1] - dogs[level + 1, row, col - 1] -
                      dogs[level - 1, row, col + 1] + dogs[level - 1, row, col - 1])
        dys = 0.25 * (dogs[level + 1, row + 1, col] - dogs[level + 1, row - 1, col] -
                      dogs[level - 1, row + 1, col] + dogs[level - 1, row - 1, col])

        hessian = np.array([[dxx, dxy, dxs],
                            [dxy, dyy, dys],
                            [dxs, dys, dss]], dtype=np.float64)
        gradient = np.array([dx, dy, ds], dtype=np.float64)

        try:
            offset = -np.linalg.solve(hessian, gradient)
        except np.linalg.LinAlgError:
            return None

        if not np.isfinite(offset).all():
            return None

        shift = np.where(np.abs(offset) > 0.5, np.sign(offset), 0).astype(int)
        if not shift.any():
            break

        col += shift[0]
        row += shift[1]
        level += shift[2]

        if not (1 <= col < width - 1 and 1 <= row < height - 1 and 1 <= level < num_levels - 1):
            return None

    if np.abs(offset).max() > 1.5:
        return None

    response = float(dogs[level, row, col]) + 0.5 * float(gradient @ offset)
    if abs(response) < peak_threshold:
        return None

    trace = dxx + dyy
    determinant = dxx * dyy - dxy ** 2
    if determinant <= 0 or trace ** 2 * edge_threshold >= (edge_threshold + 1) ** 2 * determinant:
        return None

    return level + offset[2], row + offset[1], col + offset[0], response


@dataclass
class ScaleSpace:
    """
    The DoG scale space of an image along with lazily computed gradients of its Gaussian levels.

    >>> scale_space = ScaleSpace.build(image, first_octave=-1, num_octaves=4, octave_resolution=3)
    >>> detections = scale_space.detect(peak_threshold=0.02 / 3, edge_threshold=10)
    """

    octaves: list[Octave]
    """
    The octaves, finest first.
    """

    octave_resolution: int
    """
    The number of DoG levels per octave that can hold detections.
    """

    _gradients: dict[tuple[int, int], tuple[FLOAT_ARRAY, FLOAT_ARRAY]] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, image: FLOAT_ARRAY, first_octave: int, num_octaves: int, octave_resolution: int,
              blur: Callable[[FLOAT_ARRAY, float], FLOAT_ARRAY] = gaussian_blur) -> 'ScaleSpace':
        """
        Build the scale space of a gray float32 image.

        Octaves that would be smaller than :func:`minimum_octave_size` are not built, so small images can produce
        fewer than `num_octaves` octaves (or none at all).

        :param image: the gray image with values in [0, 1]
        :param first_octave: the first octave, -1 upsamples the image once
        :param num_octaves: the maximum number of octaves
        :param octave_resolution: the number of detection levels per octave
        :param blur: the function used to blur a level
        :return: the scale space
        """

        base, nominal = prepare_base(image, first_octave)
        increments = incremental_sigmas(octave_resolution)
        min_size = minimum_octave_size(octave_resolution)

        current = blur(base, float(np.sqrt(max(SIGMA0 ** 2 - nominal ** 2, 0))))

        octaves = []
        for octave_number in range(first_octave, first_octave + num_octaves):
            if min(current.shape) < min_size:
                break

            levels = [current]
            for increment in increments:
                levels.append(blur(levels[-1], float(increment)))

            gaussians = np.stack(levels).astype(np.float32)
            octaves.append(Octave(octave_number, 2.0 ** octave_number, gaussians, gaussians[1:] - gaussians[:-1]))

            current = np.ascontiguousarray(gaussians[octave_resolution, ::2, ::2])

        return cls(octaves, octave_resolution)

    def level_sigma(self, level: float) -> float:
        """
        The blur of a (continuous) level in octave pixels.
        """
        return SIGMA0 * 2.0 ** (level / self.octave_resolution)

    def detect(self, peak_threshold: float, edge_threshold: float,
               candidates: list[NDArray[np.int64]] | None = None) -> list[Detection]:
        """
        Detect and refine the DoG extrema of every octave.

        Candidates that refine onto the same sample as an earlier candidate are dropped.

        :param peak_threshold: the minimum magnitude of the interpolated DoG response
        :param edge_threshold: the maximum ratio of the principal curvatures
        :param candidates: optional precomputed candidates for each octave (see :func:`find_extrema_candidates`)
        :return: the detections, ordered by octave and then by candidate order
        """

        detections = []

        for octave_position, octave in enumerate(self.octaves):
            if candidates is None:
                octave_candidates = find_extrema_candidates(octave.dogs, peak_threshold)
            else:
                octave_candidates = candidates[octave_position]

            seen = set()
            for level, row, col in octave_candidates:
                refined = refine_extremum(octave.dogs, int(level), int(row), int(col), peak_threshold,
                                          edge_threshold)
                if refined is None:
                    continue

                refined_level, refined_row, refined_col, response = refined
                key = (round(refined_level), round(refined_row), round(refined_col))
                if key in seen:
                    continue
                seen.add(key)

                detections.append(Detection(octave_position, refined_level, refined_col, refined_row,
                                            self.level_sigma(refined_level), response))

        return detections

    def gradients(self, octave_position: int, level: int) -> tuple[FLOAT_ARRAY, FLOAT_ARRAY]:
        """
        The x and y gradients of a Gaussian level, computed with central differences.

        :param octave_position: the position of the octave in :attr:`octaves`
        :param level: the Gaussian level
        :return: the column (x) and row (y) derivative images
        """

        key = (octave_position, level)
        if key not in self._gradients:
            grad_y, grad_x = np.gradient(self.octaves[octave_position].gaussians[level])
            self._gradients[key] = (grad_x.astype(np.float32), grad_y.astype(np.float32))
        return self._gradients[key]

    def sample_gradients(self, octave_position: int, level: int, center: tuple[float, float], frame: NDArray,
                         half_extent: float, samples: int) -> tuple[FLOAT_ARRAY, FLOAT_ARRAY, FLOAT_ARRAY,
                                                                     FLOAT_ARRAY]:
        """
        Sample the gradients of a Gaussian level on a regular grid defined in a local frame.

        Grid point ``u`` (with both coordinates in ``[-half_extent, half_extent]``) lies at ``center + frame @ u`` in
        octave pixels.  The returned gradients are taken with respect to ``u`` (``frame.T @ gradient``) so they are
        expressed in the local frame.  Samples falling outside of the image have zero gradient.

        :param octave_position: the position of the octave in :attr:`octaves`
        :param level: the Gaussian level
        :param center: the (x, y) origin of the frame in octave pixels
        :param frame: the 2x2 matrix mapping local coordinates to octave pixel offsets
        :param half_extent: half the side length of the grid in local units
        :param samples: the number of grid points per side
        :return: the x and y gradients in the local frame and the x and y local coordinates of the grid points
        """

        grad_x, grad_y = self.gradients(octave_position, level)

        offsets = np.linspace(-half_extent, half_extent, samples)
        local_x, local_y = np.meshgrid(offsets, offsets)

        map_x = (center[0] + frame[0, 0] * local_x + frame[0, 1] * local_y).astype(np.float32)
        map_y = (center[1] + frame[1, 0] * local_x + frame[1, 1] * local_y).astype(np.float32)

        sampled_x = cv2.remap(grad_x, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        sampled_y = cv2.remap(grad_y, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)

        local_grad_x = frame[0, 0] * sampled_x + frame[1, 0] * sampled_y
        local_grad_y = frame[0, 1] * sampled_x + frame[1, 1] * sampled_y

        return (local_grad_x.astype(np.float32), local_grad_y.astype(np.float32),
                local_x.astype(np.float32), local_y.astype(np.float32))

    def nearest_level(self, sigma: float) -> tuple[int, int]:
        """
        Find the Gaussian level whose blur is closest (in log scale) to `sigma` given in base image pixels.

        :param sigma: the blur in base image pixels (octave 0)
        :return: the position of the octave in :attr:`octaves` and the level within it
        """

        sigmas = level_sigmas(self.octave_resolution)
        best = (0, 0)
        best_error = np.inf
        for octave_position, octave in enumerate(self.octaves):
            errors = np.abs(np.log2(sigma / (sigmas * octave.step)))
            level = int(errors.argmin())
            if errors[level] < best_error:
                best_error = errors[level]
                best = (octave_position, level)
        return best
