"""
test_gpu_strategies
===================

Tests the accelerated extraction and matching strategies.

The strategies are run on the torch CPU device so that they can be checked against the CPU strategies without a GPU.
torch is part of the ``test`` extra (``pip install -e .[test]``).  The tests are skipped only when torch is missing.
"""

from unittest import TestCase, skipUnless

import importlib.util

import numpy as np

from siftmatch.feature import (DeviceContext, SiftExtractionOptions, SiftMatchingOptions, SiftCPUExtractor,
                               SiftCPUMatcher, create_sift_extractor, create_sift_matcher)
from siftmatch.feature.gpu_extraction import darkness_adapted_threshold
from siftmatch.feature.scale_space import ScaleSpace, to_gray_float


HAS_TORCH = importlib.util.find_spec('torch') is not None


def blob_image(shape=(160, 160), blobs=((30, 30, 3.0), (40, 110, 4.0), (100, 50, 5.0), (110, 120, 2.5))):
    rows, cols = np.mgrid[0:shape[0], 0:shape[1]]
    image = np.zeros(shape)
    for row, col, sigma in blobs:
        image += np.exp(-((rows - row) ** 2 + (cols - col) ** 2) / (2 * sigma ** 2))
    return np.round(255 * np.clip(image, 0, 1)).astype(np.uint8)


class TestDarknessAdaptivity(TestCase):
    def test_bright_image(self):
        self.assertAlmostEqual(darkness_adapted_threshold(np.full((4, 4), 0.7), 0.01), 0.01)

    def test_dark_image(self):
        self.assertAlmostEqual(darkness_adapted_threshold(np.full((4, 4), 0.25), 0.01), 0.005)
        self.assertAlmostEqual(darkness_adapted_threshold(np.zeros((4, 4)), 0.01), 0.001)


class TestDeviceContext(TestCase):
    def test_uninitialized(self):
        context = DeviceContext('cpu')

        self.assertFalse(context.initialized)
        with self.assertRaises(RuntimeError):
            _ = context.device

    def test_from_gpu_index(self):
        self.assertEqual(DeviceContext.from_gpu_index('-1').device_name, 'cuda')
        self.assertEqual(DeviceContext.from_gpu_index('1,2').device_name, 'cuda:1')

    @skipUnless(HAS_TORCH, 'torch is not installed')
    def test_unavailable_device(self):
        import torch

        if torch.cuda.is_available() and torch.cuda.device_count() > 99:
            self.skipTest('device 99 exists')

        with self.assertLogs('siftmatch.feature.device', level='ERROR'):
            self.assertFalse(DeviceContext('cuda:99').initialize())

    @skipUnless(HAS_TORCH, 'torch is not installed')
    def test_factories_without_device(self):
        context = DeviceContext('cuda:99')

        with self.assertLogs('siftmatch.feature', level='ERROR'):
            self.assertIsNone(create_sift_extractor(SiftExtractionOptions(use_gpu=True), context=context))
        with self.assertLogs('siftmatch.feature', level='ERROR'):
            self.assertIsNone(create_sift_matcher(SiftMatchingOptions(use_gpu=True), context=context))


@skipUnless(HAS_TORCH, 'torch is not installed')
class TestSiftGPUExtractor(TestCase):
    def setUp(self):
        self.context = DeviceContext('cpu')
        self.assertTrue(self.context.initialize())

    def test_octaves_match_cpu(self):
        options = SiftExtractionOptions()
        extractor = create_sift_extractor(SiftExtractionOptions(use_gpu=True), context=self.context)
        image = to_gray_float(blob_image())

        scale_space, candidates, _ = extractor.build_scale_space(image)
        expected = ScaleSpace.build(image, options.first_octave, options.num_octaves, options.octave_resolution)

        self.assertEqual(len(scale_space.octaves), len(expected.octaves))
        self.assertEqual(len(candidates), len(expected.octaves))
        for octave, expected_octave in zip(scale_space.octaves, expected.octaves):
            self.assertEqual(octave.index, expected_octave.index)
            np.testing.assert_allclose(octave.gaussians, expected_octave.gaussians, atol=1e-4)

    def test_features_match_cpu(self):
        image = blob_image()

        result = create_sift_extractor(SiftExtractionOptions(use_gpu=True), context=self.context).extract(image)
        expected = SiftCPUExtractor().extract(image)

        self.assertTrue(result.success)
        self.assertGreater(len(result.features), 0)
        self.assertEqual(result.features.descriptors.shape[1], 128)

        # nearly every CPU keypoint has an accelerated counterpart
        distances = np.linalg.norm(expected.features.xy[:, None] - result.features.xy[None], axis=2)
        self.assertGreaterEqual(np.mean(distances.min(axis=1) < 0.1), 0.9)

    def test_darkness_adaptivity(self):
        image = (blob_image() * 0.4).astype(np.uint8)

        plain = create_sift_extractor(SiftExtractionOptions(use_gpu=True), context=self.context)
        adapted = create_sift_extractor(SiftExtractionOptions(use_gpu=True, darkness_adaptivity=True),
                                        context=self.context)

        self.assertGreaterEqual(len(adapted.extract(image).features), len(plain.extract(image).features))

    def test_uninitialized_context(self):
        from siftmatch.feature.gpu_extraction import SiftGPUExtractor

        with self.assertLogs('siftmatch.feature', level='ERROR'):
            result = SiftGPUExtractor(DeviceContext('cpu')).extract(blob_image())

        self.assertFalse(result.success)
        self.assertEqual(len(result.features), 0)


@skipUnless(HAS_TORCH, 'torch is not installed')
class TestSiftGPUMatcher(TestCase):
    def setUp(self):
        self.context = DeviceContext('cpu')
        self.assertTrue(self.context.initialize())

        rng = np.random.default_rng(0)
        self.descriptors1 = rng.integers(0, 256, (300, 128)).astype(np.uint8)
        self.descriptors2 = rng.integers(0, 256, (300, 128)).astype(np.uint8)
        self.descriptors1[:30] = self.descriptors2[100:130]

    def _matcher(self, **kwargs):
        return create_sift_matcher(SiftMatchingOptions(use_gpu=True, **kwargs), context=self.context)

    def test_matches_cpu(self):
        matches = self._matcher().match(self.descriptors1, self.descriptors2)

        planted = {(i, i + 100) for i in range(30)}
        cpu_matches = SiftCPUMatcher().match(self.descriptors1, self.descriptors2)

        self.assertTrue(planted <= {tuple(match) for match in matches.tolist()})
        self.assertTrue(planted <= {tuple(match) for match in cpu_matches.tolist()})

    def test_reuse_uploaded(self):
        matcher = self._matcher()
        first = matcher.match(self.descriptors1, self.descriptors2)

        np.testing.assert_array_equal(matcher.match(None, self.descriptors2), first)
        np.testing.assert_array_equal(matcher.match(self.descriptors1, None), first)

    def test_nothing_uploaded(self):
        with self.assertRaises(ValueError):
            self._matcher().match(None, self.descriptors2)

    def test_dimension_mismatch(self):
        with self.assertRaises(ValueError):
            self._matcher().match(self.descriptors1, self.descriptors2[:, :64])

    def test_border(self):
        matches = self._matcher(border=150).match(self.descriptors1, self.descriptors2)

        self.assertTrue(((matches[:, 0] < 150) == (matches[:, 1] < 150)).all())


if __name__ == '__main__':
    import unittest
    unittest.main()
