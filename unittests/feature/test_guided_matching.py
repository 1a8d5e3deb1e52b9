"""
test_guided_matching
====================

Tests re-matching descriptors restricted by a verified two view geometry.
"""

from unittest import TestCase

import numpy as np

from siftmatch.feature import SiftCPUMatcher, SiftMatchingOptions
from siftmatch.feature.guided_matching import feasible_pairs, merge_matches
from siftmatch.estimators import TwoViewGeometry, TwoViewGeometryConfiguration, TwoViewGeometryEstimator


HOMOGRAPHY = np.array([[1.05, 0.02, 12.0],
                       [-0.03, 0.98, -7.0],
                       [1e-5, 2e-5, 1.0]])


def apply_homography(homography: np.ndarray, points: np.ndarray) -> np.ndarray:
    projected = np.column_stack([points, np.ones(points.shape[0])]) @ homography.T
    return projected[:, :2] / projected[:, 2:]


def ambiguous_scene(num_correspondences: int = 60, num_ambiguous: int = 20, seed: int = 0):
    """
    Keypoints related by a homography with near copy descriptors.

    The first `num_ambiguous` descriptors of the second image are duplicated at locations that do not agree with the
    homography, so the ratio test rejects them without geometric guidance.
    """

    rng = np.random.default_rng(seed)

    keypoints1 = rng.uniform(50, 450, (num_correspondences, 2))
    keypoints2 = apply_homography(HOMOGRAPHY, keypoints1)

    descriptors1 = rng.integers(0, 256, (num_correspondences, 128))
    noise = rng.integers(-3, 4, descriptors1.shape)
    descriptors2 = np.clip(descriptors1 + noise, 0, 255)

    keypoints2 = np.vstack([keypoints2, keypoints2[:num_ambiguous] + [60.0, 40.0]])
    descriptors2 = np.vstack([descriptors2, descriptors2[:num_ambiguous]])

    return keypoints1, keypoints2, descriptors1.astype(np.uint8), descriptors2.astype(np.uint8)


class TestFeasiblePairs(TestCase):
    def test_homography(self):
        geometry = TwoViewGeometry(TwoViewGeometryConfiguration.PLANAR, H=np.eye(3))

        feasible = feasible_pairs(geometry, np.array([[0.0, 0.0], [10.0, 10.0]]),
                                  np.array([[1.0, 0.0], [10.0, 13.0], [50.0, 50.0]]), 2.0)

        np.testing.assert_array_equal(feasible, [[True, False, False], [False, False, False]])

    def test_fundamental(self):
        # horizontal translation, the epipolar lines are the image rows
        fundamental = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, -1.0], [0.0, 1.0, 0.0]])
        geometry = TwoViewGeometry(TwoViewGeometryConfiguration.UNCALIBRATED, F=fundamental)

        feasible = feasible_pairs(geometry, np.array([[0.0, 0.0]]), np.array([[100.0, 2.0], [5.0, 3.0]]), 2.0)

        np.testing.assert_array_equal(feasible, [[True, False]])


class TestMergeMatches(TestCase):
    def test_merge(self):
        merged = merge_matches(np.array([[0, 0], [2, 3]]), np.array([[0, 5], [1, 1], [4, 3]]))

        np.testing.assert_array_equal(merged, [[0, 0], [1, 1], [2, 3]])

    def test_nothing_guided(self):
        previous = np.array([[3, 1], [1, 2]])

        np.testing.assert_array_equal(merge_matches(np.empty((0, 2), dtype=np.int64), previous), [[1, 2], [3, 1]])


class TestMatchGuided(TestCase):
    def setUp(self):
        self.keypoints1, self.keypoints2, self.descriptors1, self.descriptors2 = ambiguous_scene()
        self.options = SiftMatchingOptions(multiple_models=True, max_num_trials=500)
        self.matcher = SiftCPUMatcher(self.options)

        matches = self.matcher.match(self.descriptors1, self.descriptors2)
        estimator = TwoViewGeometryEstimator(self.options, rng=np.random.default_rng(1))
        self.geometry = estimator.estimate(self.keypoints1, self.keypoints2, matches)

    def test_unguided_geometry(self):
        self.assertTrue(self.geometry.valid)
        self.assertEqual(self.geometry.config, TwoViewGeometryConfiguration.PLANAR)
        self.assertEqual(self.geometry.num_inliers, 40)

    def test_guided_recovers_ambiguous_matches(self):
        guided = self.matcher.match_guided(self.keypoints1, self.keypoints2, self.descriptors1, self.descriptors2,
                                           self.geometry)

        self.assertTrue(guided.valid)
        self.assertEqual(guided.config, TwoViewGeometryConfiguration.PLANAR)
        self.assertGreaterEqual(guided.num_inliers, self.geometry.num_inliers)
        self.assertGreaterEqual(guided.num_inliers, 55)

        # every inlier is a true correspondence, never one of the displaced duplicates
        inliers = guided.inlier_matches
        np.testing.assert_array_equal(inliers[:, 0], inliers[:, 1])

    def test_invalid_geometry_unchanged(self):
        geometry = TwoViewGeometry()

        self.assertIs(self.matcher.match_guided(self.keypoints1, self.keypoints2, self.descriptors1,
                                                self.descriptors2, geometry), geometry)

    def test_keypoint_mismatch(self):
        with self.assertRaises(ValueError):
            self.matcher.match_guided(self.keypoints1[:10], self.keypoints2, self.descriptors1, self.descriptors2,
                                      self.geometry)


if __name__ == '__main__':
    import unittest
    unittest.main()
