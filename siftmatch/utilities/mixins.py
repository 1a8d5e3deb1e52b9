"""
This module provides the mixin classes shared by the configurable algorithms in siftmatch.

* :class:`UserOptionConfigured` configures an instance from a :class:`.UserOptions` dataclass, validates it with
  :meth:`.UserOptions.check`, and can reset the instance to the options it was created with.
* :class:`AttributePrinting` provides ``__str__``/``__repr__`` that list the public attributes of an instance,
  summarizing numpy arrays by shape and dtype instead of dumping their contents.

Example:
    Basic usage of the UserOptionConfigured mixin::

        from dataclasses import dataclass
        from siftmatch.utilities.options import UserOptions
        from siftmatch.utilities.mixins import UserOptionConfigured

        @dataclass
        class MyOptions(UserOptions):
            a: int = 5

        class MyUsefulClass(UserOptionConfigured[MyOptions], MyOptions):
            def __init__(self, options: MyOptions | None = None):
                super().__init__(MyOptions, options=options)

        my_useful_inst = MyUsefulClass()
        my_useful_inst.a = 6
        my_useful_inst.reset_settings()
        print(my_useful_inst.a)  # Output: 5

.. Note::
    The :class:`UserOptionConfigured` class should come first in the inheritance order
    due to Method Resolution Order (MRO) requirements.
"""

from copy import deepcopy

from typing import Generic, TypeVar

import numpy as np

from siftmatch.utilities.options import UserOptions


OptionsT = TypeVar("OptionsT", bound=UserOptions)
"""
Type variable bound to UserOptions for type safety
"""


class UserOptionConfigured(Generic[OptionsT]):
    """
    Mixin class providing UserOptions-based configuration with validation and reset capability.

    To use this mixin, subclass it with the :class:`.UserOptions` subclass as the type parameter::

        class MyUsefulClass(UserOptionConfigured[MyOptions], MyOptions):
            def __init__(self, options: MyOptions = None):
                super().__init__(MyOptions, options=options)

    The options are checked before they are applied.  Invalid options are a configuration error and raise a
    ``ValueError`` so that no algorithm ever runs with them.

    .. Warning::
        If options are not provided during initialization, default initialization of the options_type class will be
        used.
    """

    def __init__(self, options_type: type[OptionsT], *args, options: OptionsT | None = None, **kwargs) -> None:
        """
        :param options_type: The type of the :class:`.UserOptions` to use
        :param options: An optional instance of `options_type` preconfigured.
        :raises ValueError: if ``options.check()`` fails
        """

        super().__init__(*args, **kwargs)

        if options is None:
            options = options_type()

        if not options.check():
            raise ValueError(f'invalid {options_type.__name__}, see the log for the failed checks')

        options.apply_options(self)

        self._original_options: OptionsT = deepcopy(options)
        """
        The original configuration for this class
        """

    def reset_settings(self) -> None:
        """
        Resets the class to the state it was originally initialized with.
        """

        self._original_options.apply_options(self)

    @property
    def original_options(self) -> OptionsT:
        """
        The options this instance was created with.
        """
        return self._original_options


class AttributePrinting:
    """
    A mixin class that provides __str__ and __repr__ functionality.

    Private attributes (starting with an underscore) are skipped.  Numpy arrays are reported as
    ``array(shape=..., dtype=...)`` since descriptor and distance arrays are far too large to print.
    """

    @staticmethod
    def _format_value(value: object, attribute_repr: bool) -> str:
        if isinstance(value, np.ndarray):
            return f'array(shape={value.shape}, dtype={value.dtype})'
        return repr(value) if attribute_repr else str(value)

    def _build_representation(self, attribute_repr: bool) -> str:
        """
        Turn the instance into a string including all public attributes.

        :param attribute_repr: Whether to call repr on attributes instead of str.
        """

        attributes = [f"{attr}={self._format_value(value, attribute_repr)}".replace('\n', '')
                      for attr, value in self.__dict__.items() if not attr.startswith('_')]

        return f"{self.__class__.__name__}({', '.join(attributes)})"

    def __str__(self) -> str:
        return self._build_representation(False)

    def __repr__(self) -> str:
        return self._build_representation(True)
