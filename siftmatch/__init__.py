"""
siftmatch extracts SIFT features from images, matches them between image pairs and verifies the matches with robust
two view geometry estimation.

The package is organized as

* :mod:`siftmatch.feature`: feature containers, the text feature format, extraction, matching and guided matching,
* :mod:`siftmatch.estimators`: the minimal solvers, RANSAC and two view geometry verification,
* :mod:`siftmatch.utilities`: the option dataclasses, configuration mixins and random sampling helpers,
* :mod:`siftmatch.scripts`: command line tools.

A typical pipeline is::

    from siftmatch.feature import create_sift_extractor, create_sift_matcher
    from siftmatch.estimators import TwoViewGeometryEstimator

    extractor = create_sift_extractor()
    features1 = extractor.extract(image1).features
    features2 = extractor.extract(image2).features

    matches = create_sift_matcher().match(features1.descriptors, features2.descriptors)
    geometry = TwoViewGeometryEstimator().estimate(features1, features2, matches)
"""

__version__ = '1.0.0'
