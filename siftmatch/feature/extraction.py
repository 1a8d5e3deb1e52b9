"""
This module provides the SIFT feature extractors.

Extraction turns an image into a :class:`.FeatureSet`:

#. the image is converted to a float gray image in [0, 1] and down-scaled if it is larger than
   :attr:`~SiftExtractionOptions.max_image_size`,
#. the DoG scale space is built and its extrema are detected (:mod:`.scale_space`),
#. every detection receives one or more orientations, or an affine shape (:mod:`.orientation`),
#. at most :attr:`~SiftExtractionOptions.max_num_features` features (the ones with the largest scale) are kept,
#. descriptors are computed and normalized (:mod:`.descriptor`).

Two strategies are available.  :class:`SiftCPUExtractor` runs everything on the CPU and can process batches of
images in parallel, while :class:`.SiftGPUExtractor` builds the scale space on a torch device.  Both share steps
2-5 after the scale space is built so their results agree within numerical tolerance.  Use
:func:`create_sift_extractor` to select the strategy from the options.

Example:
    >>> from siftmatch.feature import SiftExtractionOptions, create_sift_extractor
    >>> extractor = create_sift_extractor(SiftExtractionOptions(max_num_features=2048))
    >>> result = extractor.extract(image)
    >>> if result.success:
    ...     print(len(result.features))
"""

import logging

from abc import ABC, abstractmethod

from dataclasses import dataclass

from multiprocessing import cpu_count
from multiprocessing.pool import ThreadPool

from typing import NamedTuple, Sequence, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

import cv2

from tqdm import tqdm

from siftmatch.feature.types import FeatureSet, SIFT_DESCRIPTOR_DIM
from siftmatch.feature.scale_space import ScaleSpace, to_gray_float
from siftmatch.feature.orientation import estimate_orientations, estimate_affine_shape
from siftmatch.feature.descriptor import (SiftNormalization, compute_descriptor, domain_size_pooling_scales,
                                          normalize_descriptors, descriptors_to_unsigned_byte)
from siftmatch.utilities.options import (UserOptions, check_option_gt, check_option_ge, check_num_threads,
                                         check_gpu_index)
from siftmatch.utilities.mixins import UserOptionConfigured, AttributePrinting
from siftmatch._typing import DOUBLE_ARRAY, FLOAT_ARRAY

if TYPE_CHECKING:
    from siftmatch.feature.device import DeviceContext


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting extraction results and failures.
"""


@dataclass
class SiftExtractionOptions(UserOptions):
    """
    Options for configuring SIFT feature extraction.
    """

    num_threads: int = -1
    """
    The number of worker threads used by :meth:`SiftCPUExtractor.extract_batch`.  -1 uses all cores.
    """

    use_gpu: bool = False
    """
    Whether :func:`create_sift_extractor` should select the accelerated strategy.
    """

    gpu_index: str = "-1"
    """
    The index of the device to use as a comma separated list (e.g. ``"0,1"``).  ``"-1"`` uses the default device.
    """

    max_image_size: int = 3200
    """
    Images whose larger side exceeds this many pixels are down-scaled before extraction.
    """

    max_num_features: int = 8192
    """
    The maximum number of features to keep.  When more are found, the ones with the largest scale are kept.
    """

    first_octave: int = -1
    """
    The first octave of the scale space.  -1 upsamples the image by 2 before octave 0.
    """

    num_octaves: int = 4
    """
    The number of octaves of the scale space.
    """

    octave_resolution: int = 3
    """
    The number of detection levels per octave.
    """

    peak_threshold: float = 0.02 / 3
    """
    The minimum magnitude of a DoG extremum on [0, 1] intensities.
    """

    edge_threshold: float = 10.0
    """
    The maximum ratio of the principal curvatures of a DoG extremum.  Higher values keep more edge-like features.
    """

    estimate_affine_shape: bool = False
    """
    Estimate oriented ellipses (affine shapes) instead of oriented discs.
    """

    max_num_orientations: int = 2
    """
    The maximum number of orientations per detection when the affine shape is not estimated.
    """

    upright: bool = False
    """
    Fix the orientation of every feature to 0.
    """

    darkness_adaptivity: bool = False
    """
    Scale the peak threshold by the mean brightness of the image so that dark images produce more features.

    This is only honoured by the accelerated strategy.
    """

    domain_size_pooling: bool = False
    """
    Average the descriptor over several scales around the detected scale.
    """

    dsp_min_scale: float = 1 / 6
    """
    The smallest domain-size pooling scale factor.
    """

    dsp_max_scale: float = 3.0
    """
    The largest domain-size pooling scale factor.
    """

    dsp_num_scales: int = 10
    """
    The number of logarithmically spaced domain-size pooling scale factors.
    """

    normalization: SiftNormalization = SiftNormalization.L1_ROOT
    """
    The normalization applied to the final descriptors.
    """

    def check(self) -> bool:
        """
        Check the ranges of the options, logging every violated condition.

        :return: ``True`` if the options are consistent
        """

        checks = [check_num_threads(self.num_threads),
                  check_gpu_index(self.gpu_index),
                  check_option_gt(self.max_image_size, 0, 'max_image_size'),
                  check_option_gt(self.max_num_features, 0, 'max_num_features'),
                  check_option_gt(self.num_octaves, 0, 'num_octaves'),
                  check_option_gt(self.octave_resolution, 0, 'octave_resolution'),
                  check_option_gt(self.peak_threshold, 0, 'peak_threshold'),
                  check_option_gt(self.edge_threshold, 0, 'edge_threshold'),
                  check_option_gt(self.max_num_orientations, 0, 'max_num_orientations'),
                  check_option_gt(self.dsp_min_scale, 0, 'dsp_min_scale'),
                  check_option_ge(self.dsp_max_scale, self.dsp_min_scale, 'dsp_max_scale'),
                  check_option_ge(self.dsp_num_scales, 1, 'dsp_num_scales')]

        return all(checks)


class ExtractionOut(NamedTuple):
    """
    The result of extracting features from an image.
    """

    success: bool
    """
    Whether the extraction succeeded.  A failed extraction always carries an empty feature set.
    """

    features: FeatureSet
    """
    The extracted features.
    """


def rotation_matrix(angle: float) -> DOUBLE_ARRAY:
    """
    The 2x2 matrix rotating the +x axis by `angle` radians towards +y.
    """
    cos, sin = np.cos(angle), np.sin(angle)
    return np.array([[cos, -sin], [sin, cos]], dtype=np.float64)


def prepare_image(image: NDArray, max_image_size: int) -> tuple[FLOAT_ARRAY, float, float]:
    """
    Convert an image to float gray and down-scale it so that its larger side is at most `max_image_size`.

    :param image: the input image
    :param max_image_size: the maximum side length
    :return: the prepared image along with the x and y scale factors from prepared pixels to input pixels
    :raises ValueError: if the image cannot be converted
    """

    gray = to_gray_float(image)
    height, width = gray.shape

    if max(height, width) <= max_image_size:
        return gray, 1.0, 1.0

    factor = max_image_size / max(height, width)
    new_width = max(1, int(round(width * factor)))
    new_height = max(1, int(round(height * factor)))

    _LOGGER.debug(f'down-scaling {width}x{height} image to {new_width}x{new_height}')

    resized = cv2.resize(gray, (new_width, new_height), interpolation=cv2.INTER_AREA)

    return resized, width / new_width, height / new_height


def keep_largest_scales(scales: NDArray, max_num_features: int) -> NDArray[np.int64]:
    """
    Select the indices of the `max_num_features` largest scales.

    Ties keep their original order and the selected indices are returned in their original order.

    :param scales: the scale of every feature
    :param max_num_features: the maximum number of features
    :return: the sorted indices of the features to keep
    """
    if scales.size <= max_num_features:
        return np.arange(scales.size, dtype=np.int64)
    order = np.argsort(-np.asarray(scales), kind='stable')[:max_num_features]
    return np.sort(order).astype(np.int64)


class SiftExtractor(UserOptionConfigured[SiftExtractionOptions], SiftExtractionOptions, AttributePrinting, ABC):
    """
    The base class of the SIFT extraction strategies.

    Subclasses only decide how the scale space is built (and optionally how the extremum candidates are screened)
    through :meth:`build_scale_space`.  Detection refinement, orientation/shape estimation, feature truncation and
    descriptor computation are shared.
    """

    def __init__(self, options: SiftExtractionOptions | None = None):
        """
        :param options: the options to configure the extractor with
        :raises ValueError: if the options fail :meth:`SiftExtractionOptions.check`
        """
        super().__init__(SiftExtractionOptions, options=options)

    @abstractmethod
    def build_scale_space(self, image: FLOAT_ARRAY) -> tuple[ScaleSpace, list[NDArray[np.int64]] | None, float] | None:
        """
        Build the scale space of a prepared image.

        :param image: the float gray image
        :return: the scale space, the per octave extremum candidates (or None to screen on the CPU) and the peak
                 threshold to use
        """

    def _empty_features(self, compute_descriptors: bool) -> FeatureSet:
        return FeatureSet.empty(SIFT_DESCRIPTOR_DIM if compute_descriptors else None,
                                with_shapes=self.estimate_affine_shape)

    def extract(self, image: NDArray, compute_descriptors: bool = True) -> ExtractionOut:
        """
        Extract features (and optionally descriptors) from an image.

        :param image: a 2D gray or 3 channel image of any numeric dtype
        :param compute_descriptors: whether to compute descriptors
        :return: the extraction result.  On failure the feature set is empty.
        """

        try:
            prepared, scale_x, scale_y = prepare_image(image, self.max_image_size)
        except ValueError as error:
            _LOGGER.error(f'unable to prepare the image for extraction: {error}')
            return ExtractionOut(False, self._empty_features(compute_descriptors))

        built = self.build_scale_space(prepared)
        if built is None:
            return ExtractionOut(False, self._empty_features(compute_descriptors))

        scale_space, candidates, peak_threshold = built

        features = self.describe(scale_space, candidates, peak_threshold, scale_x, scale_y, compute_descriptors)

        _LOGGER.info(f'extracted {len(features)} features from {len(scale_space.octaves)} octaves')

        return ExtractionOut(True, features)

    def describe(self, scale_space: ScaleSpace, candidates: list[NDArray[np.int64]] | None, peak_threshold: float,
                 scale_x: float = 1.0, scale_y: float = 1.0, compute_descriptors: bool = True) -> FeatureSet:
        """
        Detect, orient and describe the features of a built scale space.

        :param scale_space: the scale space
        :param candidates: the per octave extremum candidates, or None to find them here
        :param peak_threshold: the peak threshold
        :param scale_x: the factor from prepared image columns to input image columns
        :param scale_y: the factor from prepared image rows to input image rows
        :param compute_descriptors: whether to compute descriptors
        :return: the features in input image pixels
        """

        detections = scale_space.detect(peak_threshold, self.edge_threshold, candidates=candidates)
        _LOGGER.debug(f'{len(detections)} detections survived refinement')

        # x, y, scale and orientation in base image pixels along with the descriptor frame
        locations = []
        frames = []

        for detection in detections:
            step = scale_space.octaves[detection.octave].step
            x_base, y_base, sigma_base = detection.x * step, detection.y * step, detection.sigma * step

            if self.estimate_affine_shape:
                adapted = estimate_affine_shape(scale_space, detection, upright=self.upright)
                if adapted is None:
                    continue
                shape, orientation = adapted
                locations.append((x_base, y_base, sigma_base, orientation))
                frames.append(sigma_base * shape @ rotation_matrix(orientation))
                continue

            if self.upright:
                orientations = [0.0]
            else:
                orientations = estimate_orientations(scale_space, detection, self.max_num_orientations)

            for orientation in orientations:
                locations.append((x_base, y_base, sigma_base, orientation))
                frames.append(sigma_base * rotation_matrix(orientation))

        if not locations:
            return self._empty_features(compute_descriptors)

        base_keypoints = np.array(locations, dtype=np.float64)
        base_frames = np.array(frames, dtype=np.float64)

        keep = keep_largest_scales(base_keypoints[:, 2], self.max_num_features)
        if keep.size < base_keypoints.shape[0]:
            _LOGGER.debug(f'keeping the {keep.size} largest of {base_keypoints.shape[0]} features')
        base_keypoints = base_keypoints[keep]
        base_frames = base_frames[keep]

        descriptors = None
        if compute_descriptors:
            if self.domain_size_pooling:
                scale_factors = domain_size_pooling_scales(self.dsp_min_scale, self.dsp_max_scale,
                                                           self.dsp_num_scales)
            else:
                scale_factors = np.ones(1)

            raw = np.array([compute_descriptor(scale_space, x, y, frame, scale_factors)
                            for (x, y, _, _), frame in zip(base_keypoints, base_frames)])
            descriptors = descriptors_to_unsigned_byte(normalize_descriptors(raw, self.normalization))

        keypoints = np.column_stack([(base_keypoints[:, 0] + 0.5) * scale_x,
                                     (base_keypoints[:, 1] + 0.5) * scale_y,
                                     base_keypoints[:, 2] * np.sqrt(scale_x * scale_y),
                                     base_keypoints[:, 3]])

        shapes = None
        if self.estimate_affine_shape:
            shapes = np.diag([scale_x, scale_y]) @ base_frames

        return FeatureSet(keypoints, descriptors=descriptors, shapes=shapes)


class SiftCPUExtractor(SiftExtractor):
    """
    Extract SIFT features on the CPU.

    Single images are processed sequentially.  :meth:`extract_batch` processes several images in parallel on
    :attr:`~SiftExtractionOptions.num_threads` worker threads.
    """

    def build_scale_space(self, image: FLOAT_ARRAY) -> tuple[ScaleSpace, None, float]:
        scale_space = ScaleSpace.build(image, self.first_octave, self.num_octaves, self.octave_resolution)
        return scale_space, None, self.peak_threshold

    def extract_batch(self, images: Sequence[NDArray], compute_descriptors: bool = True,
                      show_progress: bool = False) -> list[ExtractionOut]:
        """
        Extract features from several images in parallel.

        :param images: the images
        :param compute_descriptors: whether to compute descriptors
        :param show_progress: whether to display a progress bar
        :return: the extraction results in the order of `images`
        """

        num_workers = cpu_count() if self.num_threads == -1 else self.num_threads

        with ThreadPool(num_workers) as pool:
            results = pool.imap(lambda image: self.extract(image, compute_descriptors=compute_descriptors), images)
            if show_progress:
                results = tqdm(results, total=len(images), desc='extracting features')
            out = list(results)

        _LOGGER.info(f'extracted features from {sum(result.success for result in out)} of {len(out)} images')

        return out


def create_sift_extractor(options: SiftExtractionOptions | None = None,
                          context: 'DeviceContext | None' = None) -> SiftExtractor | None:
    """
    Create the extraction strategy selected by :attr:`~SiftExtractionOptions.use_gpu`.

    For the accelerated strategy a :class:`.DeviceContext` is created from
    :attr:`~SiftExtractionOptions.gpu_index` if none is supplied.

    :param options: the extraction options
    :param context: an optional already initialized device context
    :return: the extractor, or None if the accelerated strategy cannot be initialized
    :raises ValueError: if the options fail :meth:`SiftExtractionOptions.check`
    """

    if options is None:
        options = SiftExtractionOptions()

    if not options.use_gpu:
        return SiftCPUExtractor(options)

    from siftmatch.feature.device import DeviceContext
    from siftmatch.feature.gpu_extraction import SiftGPUExtractor

    if not options.check():
        raise ValueError('invalid SiftExtractionOptions, see the log for the failed checks')

    if context is None:
        context = DeviceContext.from_gpu_index(options.gpu_index)
        if not context.initialize():
            _LOGGER.error('unable to create the accelerated SIFT extractor')
            return None
    elif not context.initialized:
        _LOGGER.error('the supplied device context is not initialized')
        return None

    return SiftGPUExtractor(context, options)
