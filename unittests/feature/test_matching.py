"""
test_matching
=============

Tests the descriptor distance, the match selection policies and the CPU matching strategy.
"""

from unittest import TestCase

import numpy as np

from siftmatch.feature import SiftMatchingOptions, SiftCPUMatcher, create_sift_matcher, compute_distance_matrix
from siftmatch.feature.matching import find_best_matches, find_best_matches_one_way


def planted_descriptors(seed: int = 0, size: int = 500, num_planted: int = 50):
    """
    Random descriptors where `num_planted` rows of the first set are copies of rows of the second set.
    """
    rng = np.random.default_rng(seed)
    descriptors1 = rng.integers(0, 256, (size, 128)).astype(np.uint8)
    descriptors2 = rng.integers(0, 256, (size, 128)).astype(np.uint8)

    rows1 = rng.choice(size, num_planted, replace=False)
    rows2 = rng.choice(size, num_planted, replace=False)
    descriptors1[rows1] = descriptors2[rows2]

    return descriptors1, descriptors2, {(int(i), int(j)) for i, j in zip(rows1, rows2)}


class TestDistance(TestCase):
    def test_angles(self):
        distances = compute_distance_matrix([[1, 0], [0, 1], [1, 1]], [[2, 0], [0, 3]])

        np.testing.assert_allclose(distances, [[0, np.pi / 2], [np.pi / 2, 0], [np.pi / 4, np.pi / 4]], atol=1e-7)

    def test_dimension_mismatch(self):
        with self.assertRaises(ValueError):
            compute_distance_matrix(np.zeros((2, 4)), np.zeros((2, 3)))

    def test_border(self):
        distances = compute_distance_matrix(np.ones((4, 2)), np.ones((3, 2)), border=2)

        np.testing.assert_array_equal(np.isinf(distances), [[False, False, True],
                                                            [False, False, True],
                                                            [True, True, False],
                                                            [True, True, False]])


class TestSelection(TestCase):
    def test_one_way(self):
        distances = np.array([[0.1, 0.5, 0.6],
                              [0.3, 0.32, 0.9],
                              [0.8, 0.9, 0.95]])

        matched, matched_distances = find_best_matches_one_way(distances, max_ratio=0.8, max_distance=0.7)

        np.testing.assert_array_equal(matched, [0, -1, -1])
        self.assertAlmostEqual(matched_distances[0], 0.1)

    def test_single_candidate(self):
        matched, _ = find_best_matches_one_way(np.array([[0.2], [0.9]]), max_ratio=0.8, max_distance=0.7)

        np.testing.assert_array_equal(matched, [0, -1])

    def test_ratio_boundary(self):
        # 0.5 / 0.625 is exactly the maximum ratio
        matched, _ = find_best_matches_one_way(np.array([[0.5, 0.625], [0.5, 0.62]]), max_ratio=0.8,
                                               max_distance=0.7)

        np.testing.assert_array_equal(matched, [0, -1])

    def test_coincident_candidates(self):
        matched, _ = find_best_matches_one_way(np.array([[0.0, 0.0], [0.3, 0.3]]), max_ratio=1.0,
                                               max_distance=0.7)

        np.testing.assert_array_equal(matched, [-1, 0])

    def test_cross_check(self):
        distances = np.array([[0.1, 0.6],
                              [0.05, 0.6]])

        np.testing.assert_array_equal(find_best_matches(distances, 1.0, 0.7, False, 10), [[0, 0], [1, 0]])
        np.testing.assert_array_equal(find_best_matches(distances, 1.0, 0.7, True, 10), [[1, 0]])

    def test_cap(self):
        distances = np.full((4, 4), 10.0)
        np.fill_diagonal(distances, [0.4, 0.1, 0.3, 0.2])

        np.testing.assert_array_equal(find_best_matches(distances, 0.8, 0.7, True, 2), [[1, 1], [3, 3]])

    def test_empty(self):
        self.assertEqual(find_best_matches(np.empty((0, 5)), 0.8, 0.7, True, 10).shape, (0, 2))
        self.assertEqual(find_best_matches(np.empty((5, 0)), 0.8, 0.7, True, 10).shape, (0, 2))


class TestSiftCPUMatcher(TestCase):
    def test_planted_duplicates(self):
        descriptors1, descriptors2, planted = planted_descriptors()

        matches = SiftCPUMatcher().match(descriptors1, descriptors2)

        self.assertTrue(planted <= {tuple(match) for match in matches.tolist()})
        self.assertTrue((np.diff(matches[:, 0]) > 0).all())

    def test_cross_check_symmetry(self):
        descriptors1, descriptors2, _ = planted_descriptors(seed=1)
        matcher = SiftCPUMatcher()

        forward = {tuple(match) for match in matcher.match(descriptors1, descriptors2).tolist()}
        backward = {(j, i) for i, j in matcher.match(descriptors2, descriptors1).tolist()}

        self.assertEqual(forward, backward)
        self.assertEqual(len({i for i, _ in forward}), len(forward))
        self.assertEqual(len({j for _, j in forward}), len(forward))

    def test_ratio_monotonic(self):
        descriptors1, descriptors2, _ = planted_descriptors(seed=2, num_planted=20)

        previous = set()
        for max_ratio in [0.5, 0.7, 0.8, 0.9, 0.95, 1.0]:
            matcher = SiftCPUMatcher(SiftMatchingOptions(max_ratio=max_ratio, max_distance=1.0, cross_check=False))
            matches = {tuple(match) for match in matcher.match(descriptors1, descriptors2).tolist()}

            self.assertTrue(previous <= matches)
            previous = matches

    def test_max_num_matches(self):
        descriptors1, descriptors2, planted = planted_descriptors(seed=3)

        matches = SiftCPUMatcher(SiftMatchingOptions(max_num_matches=10)).match(descriptors1, descriptors2)

        self.assertEqual(matches.shape, (10, 2))
        self.assertTrue({tuple(match) for match in matches.tolist()} <= planted)

    def test_border(self):
        descriptors, _, _ = planted_descriptors(seed=4, size=40, num_planted=0)

        matches = SiftCPUMatcher(SiftMatchingOptions(border=20)).match(descriptors, descriptors)

        self.assertTrue(((matches[:, 0] < 20) == (matches[:, 1] < 20)).all())
        np.testing.assert_array_equal(matches[:, 0], matches[:, 1])

    def test_match_pairs(self):
        pairs = [planted_descriptors(seed=seed)[:2] for seed in range(3)]
        matcher = SiftCPUMatcher(SiftMatchingOptions(num_threads=2))

        results = matcher.match_pairs(pairs)

        self.assertEqual(len(results), 3)
        for (descriptors1, descriptors2), matches in zip(pairs, results):
            np.testing.assert_array_equal(matches, matcher.match(descriptors1, descriptors2))

    def test_requires_descriptors(self):
        with self.assertRaises(ValueError):
            SiftCPUMatcher().match(None, np.zeros((2, 128)))

    def test_factory(self):
        self.assertIsInstance(create_sift_matcher(), SiftCPUMatcher)


if __name__ == '__main__':
    import unittest
    unittest.main()
