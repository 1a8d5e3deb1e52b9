"""
This package verifies matches by robustly estimating the geometry relating two images.

* :mod:`.homography`: the normalized DLT homography solver,
* :mod:`.fundamental`: the normalized eight point fundamental and essential matrix solvers,
* :mod:`.ransac`: the adaptive RANSAC loop,
* :mod:`.two_view_geometry`: the verification of an image pair.
"""

from siftmatch.estimators.ransac import RANSAC, RANSACOptions, RANSACReport, ModelEstimator, compute_num_trials
from siftmatch.estimators.two_view_geometry import (TwoViewGeometry, TwoViewGeometryConfiguration,
                                                    TwoViewGeometryEstimator)

__all__ = ['RANSAC', 'RANSACOptions', 'RANSACReport', 'ModelEstimator', 'compute_num_trials', 'TwoViewGeometry',
           'TwoViewGeometryConfiguration', 'TwoViewGeometryEstimator']
