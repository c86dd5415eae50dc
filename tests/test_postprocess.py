import unittest

import numpy as np

from cutout.contracts import Tier
from cutout.postprocess import (
    TIER_REFINE_PARAMS,
    RefineParams,
    confidence_to_alpha,
    feather_edges,
    foreground_ratio_step,
    min_region_size,
    prune_small_regions,
    refine,
)


def _square_mask(size: int = 128, lo: int = 32, hi: int = 96) -> np.ndarray:
    alpha = np.zeros((size, size), dtype=np.uint8)
    alpha[lo:hi, lo:hi] = 255
    return alpha


class TestRefine(unittest.TestCase):
    def test_refine_is_nearly_idempotent(self):
        once = refine(_square_mask(), 128, 128)
        twice = refine(once, 128, 128)
        changed = float(np.count_nonzero(once != twice)) / once.size
        self.assertLess(changed, 0.05)

    def test_refine_returns_new_array(self):
        alpha = _square_mask()
        before = alpha.copy()
        out = refine(alpha, 128, 128)
        self.assertIsNot(out, alpha)
        np.testing.assert_array_equal(alpha, before)
        self.assertEqual(out.dtype, np.uint8)

    def test_refine_rejects_shape_mismatch(self):
        with self.assertRaises(ValueError):
            refine(_square_mask(), 64, 128)

    def test_feathered_edge_is_soft(self):
        out = refine(_square_mask(), 128, 128)
        self.assertEqual(int(out[64, 64]), 255)
        self.assertEqual(int(out[0, 0]), 0)
        edge = out[64, 94:98]
        self.assertTrue(((edge > 0) & (edge < 255)).any())

    def test_every_tier_has_params(self):
        for tier in Tier:
            self.assertIsInstance(TIER_REFINE_PARAMS[tier], RefineParams)
        self.assertTrue(TIER_REFINE_PARAMS[Tier.PRECISE].bilateral)
        self.assertFalse(TIER_REFINE_PARAMS[Tier.FAST].prune)

    def test_precise_params_keep_subject(self):
        out = refine(_square_mask(), 128, 128, TIER_REFINE_PARAMS[Tier.PRECISE])
        self.assertEqual(int(out[64, 64]), 255)
        self.assertEqual(int(out[5, 5]), 0)


class TestFeather(unittest.TestCase):
    def test_uniform_mask_unchanged(self):
        alpha = np.full((20, 20), 200, dtype=np.uint8)
        np.testing.assert_array_equal(feather_edges(alpha), alpha)

    def test_straight_edge_values(self):
        alpha = np.zeros((10, 10), dtype=np.uint8)
        alpha[:, :5] = 255
        out = feather_edges(alpha, edge_jump=100.0, connectivity=4, sigma=1.0, radius=2)
        # separable Gaussian over columns 2..6 of (255, 255, 255, 0, 0)
        w1, w2 = np.exp(-0.5), np.exp(-2.0)
        total = 1.0 + 2.0 * w1 + 2.0 * w2
        self.assertEqual(int(out[5, 4]), int(np.rint(255.0 * (1.0 + w1 + w2) / total)))
        self.assertEqual(int(out[5, 5]), int(np.rint(255.0 * (w1 + w2) / total)))
        self.assertEqual(int(out[5, 2]), 255)
        self.assertEqual(int(out[5, 7]), 0)

    def test_adaptive_sigma_stays_in_range(self):
        alpha = _square_mask(32, 8, 24)
        out = feather_edges(alpha, edge_jump=50.0, connectivity=8, adaptive_sigma=True)
        self.assertEqual(out.shape, alpha.shape)
        self.assertEqual(int(out[16, 16]), 255)


class TestPrune(unittest.TestCase):
    def test_min_region_size(self):
        self.assertEqual(min_region_size(100, 100), 50.0)
        self.assertEqual(min_region_size(1000, 1000), 1000.0)

    def test_small_blob_with_fringe_is_fully_zeroed(self):
        alpha = np.zeros((200, 200), dtype=np.uint8)
        alpha[20:80, 20:80] = 255
        alpha[148:156, 148:156] = 60
        alpha[150:154, 150:154] = 255
        out = prune_small_regions(alpha)
        self.assertEqual(int(out[140:170, 140:170].max()), 0)
        np.testing.assert_array_equal(out[20:80, 20:80], 255)

    def test_refine_zeroes_isolated_blob(self):
        alpha = np.zeros((200, 200), dtype=np.uint8)
        alpha[20:80, 20:80] = 255
        alpha[150:156, 150:156] = 255
        out = refine(alpha, 200, 200)
        self.assertEqual(int(out[140:170, 140:170].max()), 0)
        self.assertEqual(int(out[50, 50]), 255)

    def test_no_foreground_is_noop(self):
        alpha = np.full((30, 30), 100, dtype=np.uint8)
        np.testing.assert_array_equal(prune_small_regions(alpha), alpha)


class TestConfidenceToAlpha(unittest.TestCase):
    def test_ratio_steps(self):
        ratio = np.array([0.1, 0.3, 0.5, 0.7, 0.9, 1.0])
        np.testing.assert_allclose(foreground_ratio_step(ratio), [0.0, 0.2, 0.5, 0.8, 1.0, 1.0])

    def test_full_and_empty(self):
        self.assertTrue((confidence_to_alpha(np.ones((10, 10), dtype=np.float32)) == 255).all())
        self.assertTrue((confidence_to_alpha(np.zeros((10, 10), dtype=np.float32)) == 0).all())

    def test_lonely_pixel_is_dropped(self):
        conf = np.zeros((11, 11), dtype=np.float32)
        conf[5, 5] = 1.0
        self.assertEqual(int(confidence_to_alpha(conf).max()), 0)

    def test_corner_uses_in_bounds_neighbors(self):
        conf = np.ones((10, 10), dtype=np.float32)
        self.assertEqual(int(confidence_to_alpha(conf)[0, 0]), 255)

    def test_nan_is_background(self):
        conf = np.full((5, 5), np.nan, dtype=np.float32)
        self.assertEqual(int(confidence_to_alpha(conf).max()), 0)


if __name__ == "__main__":
    unittest.main()
