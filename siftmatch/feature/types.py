"""
This module defines the containers for detected features.

A :class:`FeatureSet` couples keypoints, their optional affine shapes and their optional descriptors.  The
containers are parallel arrays whose equal length is enforced at construction and which are read-only afterwards,
so that keypoint ``i`` and descriptor ``i`` always describe the same detected feature.  Subsets and reorderings are
made with :meth:`FeatureSet.select`, which moves every container together.
"""

from dataclasses import dataclass

from typing import NamedTuple, Sequence

import numpy as np
from numpy.typing import NDArray

from siftmatch._typing import ARRAY_LIKE, DOUBLE_ARRAY, UINT8_ARRAY


SIFT_DESCRIPTOR_DIM: int = 128
"""
The dimensionality of a SIFT descriptor (4x4 spatial bins with 8 orientation bins each).
"""


class Keypoint(NamedTuple):
    """
    A single detected feature.
    """

    x: float
    """
    The column of the feature in pixels, using the convention that the center of the upper left pixel is at 0.5.
    """

    y: float
    """
    The row of the feature in pixels, using the same convention as :attr:`x`.
    """

    scale: float
    """
    The scale (Gaussian sigma) of the feature in pixels.
    """

    orientation: float
    """
    The orientation of the feature in radians measured from the +x axis towards the +y (down) axis.
    """

    shape: DOUBLE_ARRAY | None = None
    """
    The 2x2 affine frame mapping the unit descriptor frame into the image, or None for oriented discs.
    """


@dataclass(frozen=True)
class FeatureSet:
    """
    Keypoints with their optional affine shapes and descriptors, stored as equal length parallel arrays.

    The ``keypoints`` array is n x 4 with columns ``x, y, scale, orientation``.  The ``shapes`` array (if present) is
    n x 2 x 2 and ``descriptors`` (if present) is n x d uint8.

    >>> from siftmatch.feature import FeatureSet
    >>> features = FeatureSet([[0.32, 0.12, 1.23, 1.0]], descriptors=[[1, 2, 3, 4]])
    >>> len(features), features.descriptor_dim
    (1, 4)
    """

    keypoints: DOUBLE_ARRAY
    descriptors: UINT8_ARRAY | None = None
    shapes: DOUBLE_ARRAY | None = None

    def __post_init__(self):
        keypoints = np.array(self.keypoints, dtype=np.float64)
        if keypoints.size == 0:
            keypoints = keypoints.reshape(0, 4)
        if keypoints.ndim != 2 or keypoints.shape[1] != 4:
            raise ValueError(f'keypoints must be n x 4 (x, y, scale, orientation), got shape {keypoints.shape}')
        num_features = keypoints.shape[0]

        descriptors = None
        if self.descriptors is not None:
            descriptors = np.array(self.descriptors)
            if descriptors.size == 0 and descriptors.ndim != 2:
                descriptors = descriptors.reshape(0, 0)
            if descriptors.ndim != 2:
                raise ValueError(f'descriptors must be 2 dimensional, got shape {descriptors.shape}')
            if descriptors.dtype != np.uint8:
                if descriptors.size and (descriptors.min() < 0 or descriptors.max() > 255):
                    raise ValueError('descriptor values must be in [0, 255]')
                descriptors = descriptors.astype(np.uint8)
            if descriptors.shape[0] != num_features:
                raise ValueError(f'{num_features} keypoints but {descriptors.shape[0]} descriptors')

        shapes = None
        if self.shapes is not None:
            shapes = np.array(self.shapes, dtype=np.float64)
            if shapes.size == 0:
                shapes = shapes.reshape(0, 2, 2)
            if shapes.shape != (num_features, 2, 2):
                raise ValueError(f'{num_features} keypoints require affine shapes of shape ({num_features}, 2, 2), '
                                 f'got {shapes.shape}')

        for array in (keypoints, descriptors, shapes):
            if array is not None:
                array.setflags(write=False)

        object.__setattr__(self, 'keypoints', keypoints)
        object.__setattr__(self, 'descriptors', descriptors)
        object.__setattr__(self, 'shapes', shapes)

    @classmethod
    def empty(cls, descriptor_dim: int | None = SIFT_DESCRIPTOR_DIM, with_shapes: bool = False) -> 'FeatureSet':
        """
        Create a feature set without any features.

        :param descriptor_dim: the descriptor dimension, or None for a set without descriptors
        :param with_shapes: whether to include an (empty) affine shape container
        """
        return cls(np.empty((0, 4)),
                   descriptors=None if descriptor_dim is None else np.empty((0, descriptor_dim), dtype=np.uint8),
                   shapes=np.empty((0, 2, 2)) if with_shapes else None)

    def __len__(self) -> int:
        return self.keypoints.shape[0]

    def __getitem__(self, index: int) -> Keypoint:
        x, y, scale, orientation = (float(v) for v in self.keypoints[index])
        return Keypoint(x, y, scale, orientation, None if self.shapes is None else self.shapes[index])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureSet):
            return NotImplemented

        def same(first: NDArray | None, second: NDArray | None) -> bool:
            if first is None or second is None:
                return first is None and second is None
            return first.shape == second.shape and bool(np.array_equal(first, second))

        return (same(self.keypoints, other.keypoints) and same(self.descriptors, other.descriptors) and
                same(self.shapes, other.shapes))

    __hash__ = None  # type: ignore[assignment]

    @property
    def xy(self) -> DOUBLE_ARRAY:
        """
        The n x 2 array of keypoint locations.
        """
        return self.keypoints[:, :2]

    @property
    def scales(self) -> DOUBLE_ARRAY:
        return self.keypoints[:, 2]

    @property
    def orientations(self) -> DOUBLE_ARRAY:
        return self.keypoints[:, 3]

    @property
    def descriptor_dim(self) -> int:
        """
        The descriptor dimension, 0 if there are no descriptors.
        """
        return 0 if self.descriptors is None else self.descriptors.shape[1]

    def select(self, indices: Sequence[int] | ARRAY_LIKE) -> 'FeatureSet':
        """
        Subset and/or reorder the features, keeping keypoints, shapes and descriptors aligned.

        :param indices: integer indices (or a boolean mask) of the features to keep, in the order to keep them
        :return: a new feature set
        """
        indices = np.asarray(indices)
        if indices.dtype != np.bool_:
            indices = indices.astype(np.int64)
        return FeatureSet(self.keypoints[indices],
                          descriptors=None if self.descriptors is None else self.descriptors[indices],
                          shapes=None if self.shapes is None else self.shapes[indices])

    def without_descriptors(self) -> 'FeatureSet':
        return FeatureSet(self.keypoints, shapes=self.shapes)


def keypoint_locations(keypoints: 'FeatureSet | ARRAY_LIKE') -> DOUBLE_ARRAY:
    """
    Get the n x 2 array of x, y locations from a feature set or from an array whose first 2 columns are x, y.

    :param keypoints: the keypoints
    :return: the locations as float64
    """
    if isinstance(keypoints, FeatureSet):
        return np.asarray(keypoints.xy, dtype=np.float64)

    locations = np.asarray(keypoints, dtype=np.float64)
    if locations.size == 0:
        return np.empty((0, 2), dtype=np.float64)
    if locations.ndim != 2 or locations.shape[1] < 2:
        raise ValueError(f'keypoints must be n x 2 (or wider), got shape {locations.shape}')
    return locations[:, :2]


def as_matches(matches: ARRAY_LIKE) -> NDArray[np.int64]:
    """
    Convert a match list into the canonical m x 2 int64 array of ``(index1, index2)`` rows.

    :param matches: the matches
    :return: the matches as an array
    """
    array = np.asarray(matches, dtype=np.int64)
    if array.size == 0:
        return np.empty((0, 2), dtype=np.int64)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f'matches must be m x 2, got shape {array.shape}')
    return array
