"""
This module provides the accelerated SIFT extraction strategy.

The Gaussian levels of every octave are computed on the torch device of a :class:`.DeviceContext` using the same
kernels as the CPU strategy (:func:`.gaussian_kernel` with reflected borders), and the 3x3x3 extremum screening is
done there with a max pooling.  The octaves and the surviving candidates are then moved to the CPU where the
refinement, orientation and descriptor steps shared with :class:`.SiftCPUExtractor` run.
"""

import logging

import numpy as np
from numpy.typing import NDArray

from siftmatch.feature.device import DeviceContext
from siftmatch.feature.extraction import SiftExtractor, SiftExtractionOptions
from siftmatch.feature.scale_space import (ScaleSpace, Octave, SIGMA0, gaussian_kernel, prepare_base,
                                           incremental_sigmas, minimum_octave_size)
from siftmatch._typing import FLOAT_ARRAY


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting device failures during extraction.
"""


DARKNESS_REFERENCE_BRIGHTNESS: float = 0.5
"""
Images with a mean brightness at or above this value use the unmodified peak threshold.
"""

MIN_DARKNESS_FACTOR: float = 0.1
"""
The smallest factor the peak threshold is scaled by for dark images.
"""


def darkness_adapted_threshold(image: FLOAT_ARRAY, peak_threshold: float) -> float:
    """
    Scale the peak threshold by the mean brightness of an image relative to :data:`DARKNESS_REFERENCE_BRIGHTNESS`.

    :param image: the gray image in [0, 1]
    :param peak_threshold: the configured peak threshold
    :return: the adapted peak threshold
    """
    factor = np.clip(float(np.mean(image)) / DARKNESS_REFERENCE_BRIGHTNESS, MIN_DARKNESS_FACTOR, 1.0)
    return peak_threshold * float(factor)


class SiftGPUExtractor(SiftExtractor):
    """
    Extract SIFT features with the scale space built on a torch device.

    The context must already be initialized (see :func:`.create_sift_extractor`).  Device failures are logged and
    reported as an unsuccessful :class:`.ExtractionOut`.
    """

    def __init__(self, context: DeviceContext, options: SiftExtractionOptions | None = None):
        """
        :param context: the initialized device context
        :param options: the extraction options
        """
        super().__init__(options=options)

        self.context: DeviceContext = context
        """
        The device the scale space is built on.
        """

    def _blur(self, tensor, sigma: float):
        torch = self.context.torch
        kernel = torch.from_numpy(gaussian_kernel(sigma)).to(self.context.device)
        radius = (kernel.numel() - 1) // 2

        padded = torch.nn.functional.pad(tensor, (radius, radius, 0, 0), mode='reflect')
        blurred = torch.nn.functional.conv2d(padded, kernel.view(1, 1, 1, -1))
        padded = torch.nn.functional.pad(blurred, (0, 0, radius, radius), mode='reflect')
        return torch.nn.functional.conv2d(padded, kernel.view(1, 1, -1, 1))

    def _screen(self, dogs, peak_threshold: float) -> NDArray[np.int64]:
        torch = self.context.torch
        stack = dogs.view(1, 1, *dogs.shape)

        maxima = stack == torch.nn.functional.max_pool3d(stack, 3, stride=1, padding=1)
        minima = stack == -torch.nn.functional.max_pool3d(-stack, 3, stride=1, padding=1)

        screen = 0.8 * peak_threshold
        candidates = ((maxima & (stack >= screen)) | (minima & (stack <= -screen)))[0, 0]

        candidates[[0, -1]] = False
        candidates[:, [0, -1]] = False
        candidates[:, :, [0, -1]] = False

        return torch.nonzero(candidates).cpu().numpy().astype(np.int64)

    def build_scale_space(self, image: FLOAT_ARRAY) -> tuple[ScaleSpace, list[NDArray[np.int64]], float] | None:
        if not self.context.initialized:
            _LOGGER.error('the device context is not initialized')
            return None

        peak_threshold = self.peak_threshold
        if self.darkness_adaptivity:
            peak_threshold = darkness_adapted_threshold(image, peak_threshold)
            _LOGGER.debug(f'darkness adapted peak threshold {peak_threshold:.5f}')

        base, nominal = prepare_base(image, self.first_octave)
        increments = incremental_sigmas(self.octave_resolution)
        min_size = minimum_octave_size(self.octave_resolution)

        torch = self.context.torch

        octaves = []
        candidates = []
        try:
            with torch.no_grad():
                current = torch.from_numpy(np.ascontiguousarray(base)).to(self.context.device).view(1, 1, *base.shape)

                initial_sigma = float(np.sqrt(max(SIGMA0 ** 2 - nominal ** 2, 0)))
                if min(base.shape) >= min_size and initial_sigma > 0:
                    current = self._blur(current, initial_sigma)

                for octave_number in range(self.first_octave, self.first_octave + self.num_octaves):
                    if min(current.shape[-2:]) < min_size:
                        break

                    levels = [current]
                    for increment in increments:
                        levels.append(self._blur(levels[-1], float(increment)))

                    gaussians = torch.cat(levels, dim=1)[0]
                    dogs = gaussians[1:] - gaussians[:-1]

                    candidates.append(self._screen(dogs, peak_threshold))
                    octaves.append(Octave(octave_number, 2.0 ** octave_number,
                                          gaussians.cpu().numpy().astype(np.float32),
                                          dogs.cpu().numpy().astype(np.float32)))

                    next_base = gaussians[self.octave_resolution, ::2, ::2].contiguous()
                    current = next_base.view(1, 1, *next_base.shape)

        except RuntimeError as error:
            _LOGGER.error(f'device failure while building the scale space: {error}')
            return None

        return ScaleSpace(octaves, self.octave_resolution), candidates, peak_threshold
