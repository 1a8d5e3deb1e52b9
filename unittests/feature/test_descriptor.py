"""
test_descriptor
===============

Tests the descriptor normalization, byte conversion and histogram computation.
"""

from unittest import TestCase

import numpy as np

from siftmatch.feature.descriptor import (SiftNormalization, normalize_descriptors, descriptors_to_unsigned_byte,
                                          domain_size_pooling_scales, clamp_normalize, compute_descriptor,
                                          DESCRIPTOR_CLAMP)
from siftmatch.feature.scale_space import ScaleSpace


class TestNormalization(TestCase):
    def setUp(self):
        self.descriptors = np.random.default_rng(0).uniform(0, 1, (5, 128))

    def test_l2(self):
        normalized = normalize_descriptors(self.descriptors, SiftNormalization.L2)

        np.testing.assert_allclose(np.linalg.norm(normalized, axis=1), 1)

    def test_l1_root(self):
        normalized = normalize_descriptors(self.descriptors, SiftNormalization.L1_ROOT)

        # the square root of an L1 normalized vector has unit L2 norm
        np.testing.assert_allclose(np.linalg.norm(normalized, axis=1), 1)
        np.testing.assert_allclose(normalized ** 2, self.descriptors / self.descriptors.sum(axis=1, keepdims=True))

    def test_zero_rows(self):
        zeros = np.zeros((2, 128))

        np.testing.assert_array_equal(normalize_descriptors(zeros, SiftNormalization.L2), zeros)
        np.testing.assert_array_equal(normalize_descriptors(zeros, SiftNormalization.L1_ROOT), zeros)

    def test_clamp(self):
        descriptor = np.zeros(128)
        descriptor[0] = 10
        descriptor[1:] = 0.1

        clamped = clamp_normalize(descriptor)

        self.assertAlmostEqual(np.linalg.norm(clamped), 1)
        # the dominant entry is limited before renormalization
        self.assertAlmostEqual(clamped[0] / clamped[1], DESCRIPTOR_CLAMP / (0.1 / np.linalg.norm(descriptor)))


class TestUnsignedByte(TestCase):
    def test_conversion(self):
        bytes_ = descriptors_to_unsigned_byte([[0, 0.1, 0.25, 0.5, 0.9, 1 / 512, 0.4 / 512]])

        np.testing.assert_array_equal(bytes_, [[0, 51, 128, 255, 255, 1, 0]])
        self.assertEqual(bytes_.dtype, np.uint8)

    def test_negative_values(self):
        with self.assertWarns(UserWarning):
            bytes_ = descriptors_to_unsigned_byte([[-0.1, 0.1]])

        np.testing.assert_array_equal(bytes_, [[0, 51]])


class TestDomainSizePooling(TestCase):
    def test_scales(self):
        scales = domain_size_pooling_scales(1 / 6, 3, 10)

        self.assertEqual(scales.size, 10)
        self.assertAlmostEqual(scales[0], 1 / 6)
        self.assertAlmostEqual(scales[-1], 3)
        np.testing.assert_allclose(np.diff(np.log(scales)), np.log(18) / 9)

    def test_single_scale(self):
        np.testing.assert_array_equal(domain_size_pooling_scales(0.5, 2, 1), [0.5])


class TestComputeDescriptor(TestCase):
    def setUp(self):
        rows, cols = np.mgrid[0:96, 0:96]
        image = np.exp(-((rows - 48) ** 2 + (cols - 40) ** 2) / (2 * 6.0 ** 2)).astype(np.float32)
        self.scale_space = ScaleSpace.build(image, first_octave=-1, num_octaves=3, octave_resolution=3)

    def test_unit_norm(self):
        descriptor = compute_descriptor(self.scale_space, 40.0, 48.0, 4.0 * np.eye(2))

        self.assertEqual(descriptor.shape, (128,))
        self.assertAlmostEqual(np.linalg.norm(descriptor), 1, places=6)
        self.assertTrue((descriptor >= 0).all())

    def test_pooled(self):
        descriptor = compute_descriptor(self.scale_space, 40.0, 48.0, 4.0 * np.eye(2), scale_factors=[0.5, 1, 2])

        self.assertEqual(descriptor.shape, (128,))
        self.assertLessEqual(np.linalg.norm(descriptor), 1 + 1e-9)

    def test_rotation_changes_descriptor(self):
        upright = compute_descriptor(self.scale_space, 46.0, 52.0, 4.0 * np.eye(2))
        rotated = compute_descriptor(self.scale_space, 46.0, 52.0, 4.0 * np.array([[0, -1], [1, 0]]))

        self.assertGreater(np.linalg.norm(upright - rotated), 1e-3)


if __name__ == '__main__':
    import unittest
    unittest.main()
