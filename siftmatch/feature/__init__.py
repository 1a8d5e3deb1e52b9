"""
This package extracts, stores and matches SIFT features.

* :mod:`.types`: the :class:`.FeatureSet` container and match helpers,
* :mod:`.text_io`: the plain text feature format,
* :mod:`.scale_space`, :mod:`.orientation`, :mod:`.descriptor`: the building blocks of extraction,
* :mod:`.extraction` and :mod:`.gpu_extraction`: the extraction strategies,
* :mod:`.matching` and :mod:`.gpu_matching`: the matching strategies,
* :mod:`.guided_matching`: matching restricted by a verified two view geometry,
* :mod:`.device`: the torch device wrapper used by the accelerated strategies.

:mod:`.guided_matching` depends on :mod:`siftmatch.estimators` and is therefore not imported here.  It is used
through :meth:`.SiftMatcher.match_guided`.
"""

from siftmatch.feature.types import Keypoint, FeatureSet, SIFT_DESCRIPTOR_DIM, keypoint_locations, as_matches
from siftmatch.feature.text_io import load_sift_features_from_text_file, write_sift_features_to_text_file
from siftmatch.feature.descriptor import SiftNormalization
from siftmatch.feature.device import DeviceContext
from siftmatch.feature.extraction import (SiftExtractionOptions, ExtractionOut, SiftExtractor, SiftCPUExtractor,
                                          create_sift_extractor)
from siftmatch.feature.gpu_extraction import SiftGPUExtractor
from siftmatch.feature.matching import (SiftMatchingOptions, SiftMatcher, SiftCPUMatcher, create_sift_matcher,
                                        compute_distance_matrix, find_best_matches)
from siftmatch.feature.gpu_matching import SiftGPUMatcher

__all__ = ['Keypoint', 'FeatureSet', 'SIFT_DESCRIPTOR_DIM', 'keypoint_locations', 'as_matches',
           'load_sift_features_from_text_file', 'write_sift_features_to_text_file', 'SiftNormalization',
           'DeviceContext', 'SiftExtractionOptions', 'ExtractionOut', 'SiftExtractor', 'SiftCPUExtractor',
           'create_sift_extractor', 'SiftGPUExtractor', 'SiftMatchingOptions', 'SiftMatcher', 'SiftCPUMatcher',
           'create_sift_matcher', 'compute_distance_matrix', 'find_best_matches', 'SiftGPUMatcher']
