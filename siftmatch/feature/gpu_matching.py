"""
This module provides the accelerated descriptor matching strategy.
"""

import logging

import numpy as np

from siftmatch.feature.device import DeviceContext
from siftmatch.feature.matching import SiftMatcher, SiftMatchingOptions, validate_descriptors, apply_border
from siftmatch._typing import DOUBLE_ARRAY, ARRAY_LIKE


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting device failures during matching.
"""


class SiftGPUMatcher(SiftMatcher):
    """
    Match descriptors with the distance matrix computed on a torch device.

    The normalized descriptors of the last call stay on the device.  Passing None for either side reuses them, which
    avoids uploading the same image again when matching it against many others:

    >>> matcher.match(features1.descriptors, features2.descriptors)
    >>> matcher.match(None, features3.descriptors)  # features1 again
    """

    def __init__(self, context: DeviceContext, options: SiftMatchingOptions | None = None):
        """
        :param context: the initialized device context
        :param options: the matching options
        """
        super().__init__(options=options)

        self.context: DeviceContext = context
        """
        The device the distances are computed on.
        """

        self._uploaded = [None, None]

    def _upload(self, descriptors: ARRAY_LIKE | None, side: int):
        if descriptors is None:
            if self._uploaded[side] is None:
                raise ValueError(f'no descriptors{side + 1} have been uploaded yet')
            return self._uploaded[side]

        descriptors = validate_descriptors(descriptors, f'descriptors{side + 1}')

        torch = self.context.torch
        tensor = torch.from_numpy(np.ascontiguousarray(descriptors, dtype=np.float32)).to(self.context.device)
        tensor = torch.nn.functional.normalize(tensor, dim=1)

        self._uploaded[side] = tensor
        return tensor

    def compute_distances(self, descriptors1: ARRAY_LIKE | None,
                          descriptors2: ARRAY_LIKE | None) -> DOUBLE_ARRAY | None:
        if not self.context.initialized:
            _LOGGER.error('the device context is not initialized')
            return None

        try:
            with self.context.torch.no_grad():
                unit1 = self._upload(descriptors1, 0)
                unit2 = self._upload(descriptors2, 1)

                if unit1.shape[1] != unit2.shape[1]:
                    raise ValueError(f'descriptor dimensions differ ({unit1.shape[1]} != {unit2.shape[1]})')

                cosines = (unit1 @ unit2.T).clamp(-1, 1)
                distances = self.context.torch.arccos(cosines).cpu().numpy().astype(np.float64)

        except RuntimeError as error:
            _LOGGER.error(f'device failure while computing descriptor distances: {error}')
            return None

        return apply_border(distances, self.border)
