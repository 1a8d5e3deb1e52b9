"""
This module wraps the torch device used by the accelerated extraction and matching strategies.

torch is an optional dependency (the ``gpu`` extra).  It is only imported when a :class:`DeviceContext` is
initialized, so the rest of siftmatch works without it.  Initialization failures (torch missing, device not
available) are logged and reported as ``False`` rather than raised.
"""

import logging

from typing import Any

from siftmatch.utilities.options import parse_gpu_indices
from siftmatch.utilities.mixins import AttributePrinting


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting device initialization failures.
"""


class DeviceContext(AttributePrinting):
    """
    An accelerator device that arrays can be moved to.

    >>> context = DeviceContext('cuda:0')
    >>> if context.initialize():
    ...     tensor = context.torch.zeros(3, device=context.device)

    A context is not thread safe.  Use one context (and one accelerated extractor or matcher) per thread.
    """

    def __init__(self, device: str = 'cuda'):
        """
        :param device: the torch device string, for instance ``"cuda"``, ``"cuda:1"`` or ``"cpu"``
        """

        self.device_name: str = device
        """
        The torch device string.
        """

        self._torch: Any = None
        self._device: Any = None

    @classmethod
    def from_gpu_index(cls, gpu_index: str) -> 'DeviceContext':
        """
        Create a context for the first index of a ``gpu_index`` option string.

        ``"-1"`` selects the default CUDA device.

        :param gpu_index: the comma separated device indices
        :return: the (uninitialized) context
        :raises ValueError: if the string cannot be parsed
        """

        index = parse_gpu_indices(gpu_index)[0]
        return cls('cuda' if index == -1 else f'cuda:{index}')

    @property
    def initialized(self) -> bool:
        return self._device is not None

    @property
    def torch(self) -> Any:
        """
        The torch module.

        :raises RuntimeError: if the context is not initialized
        """
        if self._torch is None:
            raise RuntimeError('the device context is not initialized')
        return self._torch

    @property
    def device(self) -> Any:
        """
        The ``torch.device`` of this context.

        :raises RuntimeError: if the context is not initialized
        """
        if self._device is None:
            raise RuntimeError('the device context is not initialized')
        return self._device

    def initialize(self) -> bool:
        """
        Import torch and check that the device can be used.

        :return: whether the device is ready
        """

        if self.initialized:
            return True

        try:
            import torch
        except ImportError:
            _LOGGER.error('torch is required for the accelerated strategies, install siftmatch[gpu]')
            return False

        try:
            device = torch.device(self.device_name)
            if device.type == 'cuda' and not torch.cuda.is_available():
                _LOGGER.error(f'device {self.device_name} requested but CUDA is not available')
                return False
            # fails for invalid device indices
            torch.zeros(1, device=device)
        except (RuntimeError, AssertionError) as error:
            _LOGGER.error(f'unable to initialize device {self.device_name}: {error}')
            return False

        self._torch = torch
        self._device = device

        _LOGGER.info(f'initialized device {self.device_name}')

        return True
