"""
This module provides the :class:`UserOptions` base dataclass used to configure every algorithm in siftmatch along
with a handful of helper functions for validating option values.

Options are validated with :meth:`UserOptions.check`, which returns ``False`` (and logs every violated condition)
when the options are inconsistent.  A failed check is a configuration error: the options must not be used.
"""

import logging

from dataclasses import dataclass

from typing import Any, Dict

from abc import ABCMeta


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting violated option checks.
"""


def check_option_gt(value: float, bound: float, name: str) -> bool:
    """
    Check that ``value > bound``, logging an error if it does not hold.

    :param value: the option value
    :param bound: the exclusive lower bound
    :param name: the name of the option for the log message
    :return: whether the check passed
    """
    if value > bound:
        return True
    _LOGGER.error(f'Check failed: {name} > {bound} ({name} = {value})')
    return False


def check_option_ge(value: float, bound: float, name: str) -> bool:
    """
    Check that ``value >= bound``, logging an error if it does not hold.

    :param value: the option value
    :param bound: the inclusive lower bound
    :param name: the name of the option for the log message
    :return: whether the check passed
    """
    if value >= bound:
        return True
    _LOGGER.error(f'Check failed: {name} >= {bound} ({name} = {value})')
    return False


def check_option_le(value: float, bound: float, name: str) -> bool:
    """
    Check that ``value <= bound``, logging an error if it does not hold.

    :param value: the option value
    :param bound: the inclusive upper bound
    :param name: the name of the option for the log message
    :return: whether the check passed
    """
    if value <= bound:
        return True
    _LOGGER.error(f'Check failed: {name} <= {bound} ({name} = {value})')
    return False


def check_num_threads(num_threads: int) -> bool:
    """
    Check that a thread count is either -1 (use all cores) or positive.
    """
    if num_threads == -1 or num_threads > 0:
        return True
    _LOGGER.error(f'Check failed: num_threads == -1 or num_threads > 0 (num_threads = {num_threads})')
    return False


def parse_gpu_indices(gpu_index: str) -> list[int]:
    """
    Parse a comma separated list of device indices such as ``"0,1,2"``.

    ``"-1"`` means the default device.

    :param gpu_index: the string to parse
    :return: the list of device indices
    :raises ValueError: if the string is not a comma separated list of integers >= -1
    """
    indices = [int(token) for token in gpu_index.split(',')]
    if not indices or any(index < -1 for index in indices):
        raise ValueError(f'invalid gpu_index "{gpu_index}"')
    return indices


def check_gpu_index(gpu_index: str) -> bool:
    """
    Check that a device index string can be parsed with :func:`parse_gpu_indices`.
    """
    try:
        parse_gpu_indices(gpu_index)
    except ValueError:
        _LOGGER.error(f'Check failed: gpu_index is a comma separated list of integers >= -1 '
                      f'(gpu_index = "{gpu_index}")')
        return False
    return True


@dataclass
class UserOptions(metaclass=ABCMeta):
    """
    This is an abstract class used to create a dataclass of user options.

    These options are used to set defaults for parameters set inside the associated class for the options.

    Custom objects built from this abstract class must follow the naming scheme <callable_name>Options and be loaded
    into the options keyword argument for callable_name.__init__().

    To apply options to your class, the :meth:`apply_options` method should be invoked.

    for example:
        >>> @dataclass
        >>> class ExampleOptions(UserOptions):
        >>>     example_var : int = 1234

        >>> class Example:
        >>>     def __init__(self, options = None):
        >>>         if options is None:
        >>>             options = ExampleOptions()
        >>>         options.apply_options(self) #apply the options as attributes of self
        >>> my_example = Example()
        >>> print(my_example.example_var)
        ...     1234
    """

    def check(self) -> bool:
        """
        Validate the range and consistency of the options.

        Subclasses extend this with their own conditions.  Every violated condition is logged at error level and
        ``False`` is returned.  The base implementation accepts everything.

        :return: ``True`` if the options can be used
        """
        return True

    def apply_options(self, target: object) -> None:
        """
        Update the options as attributes of the object class

        :param target: the instance that we are to update
        """
        target.__dict__.update(self.options_dict)

    @property
    def options_dict(self) -> Dict[str, Any]:
        """
        Determine the options input to the dataclass.

        This property method will ignore all internal properties and functions
        """

        annotations: Dict[str, Any] = {}
        for cls in reversed(type(self).__mro__):
            annotations.update(getattr(cls, '__annotations__', {}))

        return {key: self.__dict__[key] for key in annotations if key in self.__dict__}
