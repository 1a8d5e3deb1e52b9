"""
test_ransac
===========

Tests the adaptive RANSAC loop.
"""

from unittest import TestCase

import numpy as np

from siftmatch.estimators import RANSAC, RANSACOptions, ModelEstimator, compute_num_trials
from siftmatch.estimators.homography import estimate_homography, homography_residuals, HOMOGRAPHY_SAMPLE_SIZE


HOMOGRAPHY_ESTIMATOR = ModelEstimator(HOMOGRAPHY_SAMPLE_SIZE, estimate_homography, homography_residuals)


def translation_fit(points1, points2):
    return np.mean(points2 - points1, axis=0)


def translation_residuals(model, points1, points2):
    return np.sum((points1 + model - points2) ** 2, axis=1)


TRANSLATION_ESTIMATOR = ModelEstimator(1, translation_fit, translation_residuals)


def contaminated_homography(num_inliers: int, num_outliers: int, seed: int = 0):
    rng = np.random.default_rng(seed)
    homography = np.array([[1.1, 0.05, 15.0], [-0.02, 0.95, 8.0], [5e-5, -1e-5, 1.0]])

    points1 = rng.uniform(0, 640, (num_inliers + num_outliers, 2))
    projected = np.column_stack([points1, np.ones(points1.shape[0])]) @ homography.T
    points2 = projected[:, :2] / projected[:, 2:]
    points2[num_inliers:] = rng.uniform(0, 640, (num_outliers, 2))

    return points1, points2


class TestComputeNumTrials(TestCase):
    def test_values(self):
        self.assertEqual(compute_num_trials(0.5, 0.99, 4, 10000), 72)
        self.assertEqual(compute_num_trials(1.0, 0.99, 4, 10000), 1)

    def test_limits(self):
        self.assertEqual(compute_num_trials(0, 0.99, 4, 500), 500)
        self.assertEqual(compute_num_trials(0.5, 1.0, 4, 500), 500)
        self.assertEqual(compute_num_trials(0.5, 0, 4, 500), 1)

    def test_monotonic(self):
        trials = [compute_num_trials(ratio, 0.999, 8, 10 ** 9) for ratio in [0.2, 0.4, 0.6, 0.8]]

        self.assertEqual(trials, sorted(trials, reverse=True))


class TestRANSAC(TestCase):
    def test_planted_model(self):
        points1, points2 = contaminated_homography(60, 60)
        ransac = RANSAC(RANSACOptions(max_error=1.0), rng=np.random.default_rng(0))

        report = ransac.estimate(HOMOGRAPHY_ESTIMATOR, points1, points2)

        self.assertTrue(report.success)
        self.assertEqual(report.num_inliers, int(report.inlier_mask.sum()))
        self.assertTrue(report.inlier_mask[:60].all())
        self.assertLess(report.inlier_mask[60:].sum(), 3)
        self.assertGreaterEqual(report.num_trials, ransac.min_num_trials)
        self.assertLessEqual(report.num_trials, ransac.max_num_trials)

    def test_trial_bounds(self):
        points1, points2 = contaminated_homography(50, 50, seed=1)

        report = RANSAC(RANSACOptions(min_num_trials=100, max_num_trials=200),
                        rng=np.random.default_rng(1)).estimate(HOMOGRAPHY_ESTIMATOR, points1, points2)

        self.assertGreaterEqual(report.num_trials, 100)
        self.assertLessEqual(report.num_trials, 200)

    def test_clean_data_stops_early(self):
        points1, points2 = contaminated_homography(40, 0, seed=2)

        report = RANSAC(RANSACOptions(min_num_trials=5), rng=np.random.default_rng(2)).estimate(
            HOMOGRAPHY_ESTIMATOR, points1, points2)

        self.assertEqual(report.num_trials, 5)
        self.assertEqual(report.num_inliers, 40)

    def test_exhaustive_samples(self):
        points1, points2 = contaminated_homography(6, 0, seed=3)
        points2[5] += 50

        # only 15 distinct minimal samples exist
        report = RANSAC(RANSACOptions(max_error=1.0, confidence=1.0), rng=np.random.default_rng(3)).estimate(
            HOMOGRAPHY_ESTIMATOR, points1, points2)

        self.assertEqual(report.num_trials, 15)
        np.testing.assert_array_equal(report.inlier_mask, [True] * 5 + [False])

    def test_inliers_listed_last(self):
        rng = np.random.default_rng(6)
        decoy = np.array([[1.0, 0.0, 40.0], [0.0, 1.0, -30.0], [0.0, 0.0, 1.0]])
        homography = np.array([[1.1, 0.05, 15.0], [-0.02, 0.95, 8.0], [5e-5, -1e-5, 1.0]])

        # 8 correspondences of a decoy homography before the 15 of the true one
        points1 = rng.uniform(0, 640, (23, 2))
        points2 = points1 + decoy[:2, 2]
        true_projected = np.column_stack([points1[8:], np.ones(15)]) @ homography.T
        points2[8:] = true_projected[:, :2] / true_projected[:, 2:]

        for seed in range(5):
            report = RANSAC(RANSACOptions(max_error=1.0), rng=np.random.default_rng(seed)).estimate(
                HOMOGRAPHY_ESTIMATOR, points1, points2)

            self.assertEqual(report.num_inliers, 15)
            np.testing.assert_array_equal(report.inlier_mask, [False] * 8 + [True] * 15)

    def test_too_few_points(self):
        points = np.zeros((3, 2))

        report = RANSAC().estimate(HOMOGRAPHY_ESTIMATOR, points, points)

        self.assertFalse(report.success)
        self.assertEqual(report.num_trials, 0)
        self.assertIsNone(report.model)
        self.assertEqual(report.inlier_mask.shape, (3,))

    def test_local_optimization(self):
        rng = np.random.default_rng(4)
        points1 = rng.uniform(0, 100, (50, 2))
        points2 = points1 + [3.0, -2.0] + rng.normal(0, 0.3, (50, 2))
        points2[40:] += 30

        report = RANSAC(RANSACOptions(max_error=1.5), rng=rng).estimate(TRANSLATION_ESTIMATOR, points1, points2)

        self.assertTrue(report.inlier_mask[:40].sum() >= 38)
        self.assertFalse(report.inlier_mask[40:].any())
        # the refit on all inliers averages out the noise
        np.testing.assert_allclose(report.model, [3.0, -2.0], atol=0.2)

    def test_failed_fits(self):
        points = np.random.default_rng(5).uniform(0, 10, (10, 2))

        report = RANSAC(RANSACOptions(max_num_trials=50), rng=np.random.default_rng(5)).estimate(
            ModelEstimator(2, lambda p1, p2: None, translation_residuals), points, points)

        self.assertFalse(report.success)
        self.assertEqual(report.num_inliers, 0)
        self.assertIsNone(report.model)
        self.assertLessEqual(report.num_trials, 45)


if __name__ == '__main__':
    import unittest
    unittest.main()
