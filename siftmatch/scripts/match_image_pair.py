"""
Extract, match and verify the SIFT features of two images.

The features of both images are written in the text feature format next to the requested output prefix, the
verified matches are written as ``<prefix>_matches.txt`` (one ``index1 index2`` pair per line) and a summary of the
two view geometry is logged.

Example::

    siftmatch-match-pair left.png right.png -o out/pair --guided_matching --multiple_models
"""

import logging

from argparse import ArgumentParser

from pathlib import Path

import numpy as np

import cv2

from siftmatch.feature import (SiftExtractionOptions, SiftMatchingOptions, SiftNormalization, create_sift_extractor,
                               create_sift_matcher, write_sift_features_to_text_file)
from siftmatch.estimators import TwoViewGeometryEstimator


_LOGGER: logging.Logger = logging.getLogger(__name__)
"""
This is the logging interface for reporting the progress of the script.
"""


def _get_parser() -> ArgumentParser:
    """
    Helper function for the argparse extension

    :return: A setup argument parser
    """

    parser = ArgumentParser(description='Extract, match and geometrically verify SIFT features between two images')

    parser.add_argument('image1', help='The first image', type=str)
    parser.add_argument('image2', help='The second image', type=str)
    parser.add_argument('-o', '--output', help='The prefix of the output files', default='siftmatch', type=str)
    parser.add_argument('--max_num_features', help='The maximum number of features per image', default=8192,
                        type=int)
    parser.add_argument('--peak_threshold', help='The DoG peak threshold', default=0.02 / 3, type=float)
    parser.add_argument('--estimate_affine_shape', help='Estimate affine shapes instead of oriented discs',
                        action='store_true')
    parser.add_argument('--domain_size_pooling', help='Pool the descriptors over several scales',
                        action='store_true')
    parser.add_argument('--l2', help='Use L2 instead of L1-root descriptor normalization', action='store_true')
    parser.add_argument('--max_ratio', help='The ratio test threshold', default=0.8, type=float)
    parser.add_argument('--max_distance', help='The maximum descriptor distance (radians)', default=0.7,
                        type=float)
    parser.add_argument('--max_error', help='The maximum geometric error in pixels', default=4.0, type=float)
    parser.add_argument('--min_num_inliers', help='The minimum number of inliers for a valid geometry',
                        default=15, type=int)
    parser.add_argument('--multiple_models', help='Also try a homography', action='store_true')
    parser.add_argument('--guided_matching', help='Re-match using the verified geometry', action='store_true')
    parser.add_argument('--use_gpu', help='Use the accelerated strategies', action='store_true')
    parser.add_argument('--gpu_index', help='The device index', default='-1', type=str)
    parser.add_argument('--seed', help='The seed of the RANSAC random generator', default=None, type=int)
    parser.add_argument('-v', '--verbose', help='Log debug messages', action='store_true')

    return parser


def main():
    """
    Parse the command line arguments and then extract, match and verify the features of the image pair.
    """

    parser = _get_parser()

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    extraction_options = SiftExtractionOptions(use_gpu=args.use_gpu, gpu_index=args.gpu_index,
                                               max_num_features=args.max_num_features,
                                               peak_threshold=args.peak_threshold,
                                               estimate_affine_shape=args.estimate_affine_shape,
                                               domain_size_pooling=args.domain_size_pooling,
                                               normalization=SiftNormalization.L2 if args.l2 else
                                               SiftNormalization.L1_ROOT)

    matching_options = SiftMatchingOptions(use_gpu=args.use_gpu, gpu_index=args.gpu_index,
                                           max_ratio=args.max_ratio, max_distance=args.max_distance,
                                           max_error=args.max_error, min_num_inliers=args.min_num_inliers,
                                           multiple_models=args.multiple_models,
                                           guided_matching=args.guided_matching)

    extractor = create_sift_extractor(extraction_options)
    matcher = create_sift_matcher(matching_options)
    if extractor is None or matcher is None:
        raise SystemExit('unable to create the requested extraction/matching strategy, see the log')

    features = []
    for path in (args.image1, args.image2):
        image = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise SystemExit(f'unable to read {path}')

        result = extractor.extract(image)
        if not result.success:
            raise SystemExit(f'feature extraction failed for {path}')

        features.append(result.features)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    for index, image_features in enumerate(features, start=1):
        write_sift_features_to_text_file(output.with_name(f'{output.name}_features{index}.txt'), image_features)

    matches = matcher.match(features[0].descriptors, features[1].descriptors)
    _LOGGER.info(f'{matches.shape[0]} putative matches')

    rng = np.random.default_rng(args.seed)
    geometry = TwoViewGeometryEstimator(matching_options, rng=rng).estimate(features[0], features[1], matches)

    if matching_options.guided_matching and geometry.valid:
        geometry = matcher.match_guided(features[0], features[1], features[0].descriptors, features[1].descriptors,
                                        geometry)

    np.savetxt(output.with_name(f'{output.name}_matches.txt'), geometry.inlier_matches, fmt='%d')

    _LOGGER.info(f'{geometry.config.name} geometry, valid={geometry.valid}, {geometry.num_inliers} inliers of '
                 f'{geometry.matches.shape[0]} matches, {geometry.num_trials} trials')


if __name__ == '__main__':
    main()
