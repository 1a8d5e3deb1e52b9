"""
This package provides the configuration machinery and small helpers shared throughout siftmatch.
"""

from siftmatch.utilities.options import UserOptions, parse_gpu_indices
from siftmatch.utilities.mixins import UserOptionConfigured, AttributePrinting
from siftmatch.utilities.random_combination import RandomCombinations

__all__ = ["UserOptions", "parse_gpu_indices", "UserOptionConfigured", "AttributePrinting", "RandomCombinations"]
