"""
This module reads and writes keypoints and descriptors in the plain text feature format.

The format is::

    LINE_0:            NUM_FEATURES DIM
    LINE_1:            X Y SCALE ORIENTATION D_1 D_2 D_3 ... D_DIM
    LINE_I:            ...
    LINE_NUM_FEATURES: X Y SCALE ORIENTATION D_1 D_2 D_3 ... D_DIM

where the first line specifies the number of features and the descriptor dimensionality followed by one line per
feature: X, Y, SCALE, ORIENTATION are floating point values and D_J are the descriptor entries in [0, 255].

For example::

    2 4
    0.32 0.12 1.23 1.0 1 2 3 4
    0.32 0.12 1.23 1.0 1 2 3 4
"""

from pathlib import Path

import numpy as np

from siftmatch.feature.types import FeatureSet
from siftmatch._typing import PATH


def load_sift_features_from_text_file(path: PATH) -> FeatureSet:
    """
    Load keypoints and descriptors from a text file.

    Blank lines are ignored.  Lines past ``NUM_FEATURES`` are ignored as well.

    :param path: the file to read
    :return: the features, with keypoint ``i`` and descriptor ``i`` taken from feature line ``i``
    :raises ValueError: if the file does not follow the format
    """

    with Path(path).open('r') as in_file:
        lines = [line.split() for line in in_file if line.strip()]

    if not lines or len(lines[0]) != 2:
        raise ValueError(f'{path} does not start with a "NUM_FEATURES DIM" header')

    num_features, dim = (int(token) for token in lines[0])
    if num_features < 0 or dim < 0:
        raise ValueError(f'invalid header in {path}: {num_features} {dim}')

    feature_lines = lines[1:num_features + 1]
    if len(feature_lines) != num_features:
        raise ValueError(f'{path} declares {num_features} features but contains {len(feature_lines)}')

    keypoints = np.empty((num_features, 4), dtype=np.float64)
    descriptors = np.empty((num_features, dim), dtype=np.uint8)

    for index, tokens in enumerate(feature_lines):
        if len(tokens) != 4 + dim:
            raise ValueError(f'feature {index} in {path} has {len(tokens)} columns, expected {4 + dim}')

        keypoints[index] = [float(token) for token in tokens[:4]]

        values = np.array([int(token) for token in tokens[4:]], dtype=np.int64)
        if values.size and (values.min() < 0 or values.max() > 255):
            raise ValueError(f'descriptor of feature {index} in {path} is outside of [0, 255]')
        descriptors[index] = values

    return FeatureSet(keypoints, descriptors=descriptors)


def write_sift_features_to_text_file(path: PATH, features: FeatureSet) -> None:
    """
    Write keypoints and descriptors to a text file.

    Floating point values are written with their shortest round-trip representation so that
    :func:`load_sift_features_from_text_file` reproduces them exactly.  A feature set without descriptors is written
    with dimension 0.

    :param path: the file to write
    :param features: the features to write
    """

    dim = features.descriptor_dim

    with Path(path).open('w') as out_file:
        out_file.write(f'{len(features)} {dim}\n')

        for index in range(len(features)):
            columns = [repr(float(value)) for value in features.keypoints[index]]
            if dim:
                columns.extend(str(int(value)) for value in features.descriptors[index])  # type: ignore[index]
            out_file.write(' '.join(columns) + '\n')
