"""
test_minimal_solvers
====================

Tests the homography, fundamental and essential matrix solvers and the degeneracy checks.
"""

from unittest import TestCase

import numpy as np

from siftmatch.estimators.homography import estimate_homography, homography_residuals
from siftmatch.estimators.fundamental import (estimate_fundamental, estimate_essential, sampson_residuals,
                                              normalize_image_points, fundamental_from_essential)
from siftmatch.estimators.utils import center_and_normalize_points, is_degenerate, are_collinear, \
    count_distinct_points


INTRINSIC_MATRIX = np.array([[800.0, 0.0, 320.0],
                             [0.0, 800.0, 240.0],
                             [0.0, 0.0, 1.0]])


def rotation_about_y(angle: float) -> np.ndarray:
    return np.array([[np.cos(angle), 0, np.sin(angle)],
                     [0, 1, 0],
                     [-np.sin(angle), 0, np.cos(angle)]])


def two_view_scene(num_points: int = 30, seed: int = 0):
    """
    Project random 3D points in front of two cameras related by a rotation and a translation.

    :return: the pixels in both images, the rotation and the translation of the second camera
    """

    rng = np.random.default_rng(seed)
    world = np.column_stack([rng.uniform(-2, 2, num_points), rng.uniform(-2, 2, num_points),
                             rng.uniform(4, 8, num_points)])

    rotation = rotation_about_y(0.1)
    translation = np.array([1.0, 0.2, 0.1])

    def project(points):
        pixels = points @ INTRINSIC_MATRIX.T
        return pixels[:, :2] / pixels[:, 2:]

    return project(world), project(world @ rotation.T + translation), rotation, translation


class TestNormalization(TestCase):
    def test_centroid_and_scale(self):
        points = np.random.default_rng(0).uniform(0, 500, (20, 2))

        normalized, transform = center_and_normalize_points(points)

        np.testing.assert_allclose(normalized.mean(axis=0), 0, atol=1e-12)
        self.assertAlmostEqual(np.linalg.norm(normalized, axis=1).mean(), np.sqrt(2))
        np.testing.assert_allclose((np.column_stack([points, np.ones(20)]) @ transform.T)[:, :2], normalized)


class TestDegeneracy(TestCase):
    def test_collinear(self):
        line = np.column_stack([np.arange(10.0), 2 * np.arange(10.0) + 1])

        self.assertTrue(are_collinear(line))
        self.assertFalse(are_collinear(np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])))

    def test_distinct(self):
        self.assertEqual(count_distinct_points(np.array([[1.0, 2.0], [1.0, 2.0], [3.0, 4.0]])), 2)

    def test_is_degenerate(self):
        points = np.random.default_rng(1).uniform(0, 100, (10, 2))
        line = np.column_stack([np.arange(10.0), np.arange(10.0)])

        self.assertFalse(is_degenerate(points, points, 4))
        self.assertTrue(is_degenerate(points[:3], points[:3], 4))
        self.assertTrue(is_degenerate(points, line, 4))
        self.assertTrue(is_degenerate(np.repeat(points[:2], 5, axis=0), points, 4))


class TestHomography(TestCase):
    def test_minimal_sample(self):
        homography = np.array([[0.9, 0.1, 20.0], [-0.05, 1.1, -10.0], [1e-4, -2e-4, 1.0]])
        points1 = np.array([[10.0, 10.0], [200.0, 15.0], [190.0, 180.0], [20.0, 210.0]])
        projected = np.column_stack([points1, np.ones(4)]) @ homography.T
        points2 = projected[:, :2] / projected[:, 2:]

        estimated = estimate_homography(points1, points2)

        self.assertAlmostEqual(np.linalg.norm(estimated), 1)
        np.testing.assert_allclose(estimated / estimated[2, 2], homography / homography[2, 2], atol=1e-8)
        np.testing.assert_allclose(homography_residuals(estimated, points1, points2), 0, atol=1e-12)

    def test_degenerate(self):
        line = np.column_stack([np.arange(4.0), np.arange(4.0)])

        self.assertIsNone(estimate_homography(line, line))
        self.assertIsNone(estimate_homography(line[:3], line[:3]))

    def test_points_at_infinity(self):
        residuals = homography_residuals(np.array([[1.0, 0, 0], [0, 1.0, 0], [1.0, 0, 0]]),
                                         np.array([[0.0, 5.0], [2.0, 2.0]]), np.array([[0.0, 0.0], [1.5, 1.5]]))

        self.assertTrue(np.isinf(residuals[0]))
        self.assertAlmostEqual(residuals[1], 0.5)


class TestFundamental(TestCase):
    def test_scene(self):
        points1, points2, _, _ = two_view_scene()

        fundamental = estimate_fundamental(points1, points2)

        self.assertAlmostEqual(np.linalg.norm(fundamental), 1)
        self.assertLess(np.linalg.svd(fundamental, compute_uv=False)[2], 1e-12)
        np.testing.assert_allclose(sampson_residuals(fundamental, points1, points2), 0, atol=1e-12)

    def test_minimal_sample(self):
        points1, points2, _, _ = two_view_scene(seed=2)

        fundamental = estimate_fundamental(points1[:8], points2[:8])

        self.assertLess(sampson_residuals(fundamental, points1, points2).max(), 1e-8)

    def test_planar_scene(self):
        points1 = np.random.default_rng(3).uniform(0, 500, (12, 2))
        points2 = 1.2 * points1 + [5.0, -3.0]

        self.assertIsNone(estimate_fundamental(points1, points2))

    def test_too_few(self):
        points1, points2, _, _ = two_view_scene()

        self.assertIsNone(estimate_fundamental(points1[:7], points2[:7]))


class TestEssential(TestCase):
    def test_scene(self):
        points1, points2, rotation, translation = two_view_scene(seed=4)
        normalized1 = normalize_image_points(points1, INTRINSIC_MATRIX)
        normalized2 = normalize_image_points(points2, INTRINSIC_MATRIX)

        essential = estimate_essential(normalized1, normalized2)

        np.testing.assert_allclose(np.linalg.svd(essential, compute_uv=False), [1, 1, 0], atol=1e-10)

        skew = np.array([[0, -translation[2], translation[1]],
                         [translation[2], 0, -translation[0]],
                         [-translation[1], translation[0], 0]])
        expected = skew @ rotation
        expected /= np.linalg.norm(expected)
        scaled = essential / np.linalg.norm(essential)
        self.assertLess(min(np.abs(scaled - expected).max(), np.abs(scaled + expected).max()), 1e-8)

    def test_fundamental_from_essential(self):
        points1, points2, _, _ = two_view_scene(seed=5)

        essential = estimate_essential(normalize_image_points(points1, INTRINSIC_MATRIX),
                                       normalize_image_points(points2, INTRINSIC_MATRIX))
        fundamental = fundamental_from_essential(essential, INTRINSIC_MATRIX, INTRINSIC_MATRIX)

        self.assertAlmostEqual(np.linalg.norm(fundamental), 1)
        self.assertLess(sampson_residuals(fundamental, points1, points2).max(), 1e-8)


if __name__ == '__main__':
    import unittest
    unittest.main()
