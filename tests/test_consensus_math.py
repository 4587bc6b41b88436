import math
import unittest

from weather_consensus import consensus_math as cm
from weather_consensus.values import filter_finite, finite_or_none, round_half_up, round_int


class TestValues(unittest.TestCase):
    def test_finite_or_none_rejects_non_data(self):
        for raw in (None, float("nan"), float("inf"), "abc", True, [1]):
            self.assertIsNone(finite_or_none(raw), raw)
        self.assertEqual(finite_or_none("2.5"), 2.5)
        self.assertEqual(finite_or_none(3), 3.0)

    def test_filter_finite_keeps_order(self):
        self.assertEqual(filter_finite([3, None, float("nan"), 1, "x", 2]), [3.0, 1.0, 2.0])

    def test_round_half_up(self):
        self.assertEqual(round_half_up(62.5), 63.0)
        self.assertEqual(round_half_up(-2.5), -2.0)
        self.assertEqual(round_half_up(1.25, 1), 1.3)
        self.assertEqual(round_half_up(None), 0.0)
        self.assertEqual(round_int(74.5), 75)


class TestStats(unittest.TestCase):
    def test_population_stats_ignore_absent(self):
        stats = cm.compute_stats([10, 12, None, float("nan")])
        self.assertEqual(stats.mean, 11.0)
        self.assertEqual(stats.std_dev, 1.0)
        self.assertEqual((stats.min, stats.max, stats.count), (10.0, 12.0, 2))
        self.assertTrue(stats.available)

    def test_single_value_is_not_available(self):
        stats = cm.compute_stats([5.0])
        self.assertEqual(stats.std_dev, 0.0)
        self.assertFalse(stats.available)

    def test_empty_stats_are_zero(self):
        stats = cm.compute_stats([])
        self.assertEqual((stats.mean, stats.std_dev, stats.count), (0.0, 0.0, 0))


class TestAgreement(unittest.TestCase):
    def test_linear_agreement(self):
        self.assertEqual(cm.calculate_agreement(0, 8), 100.0)
        self.assertEqual(cm.calculate_agreement(1, 8), 75.0)
        self.assertEqual(cm.calculate_agreement(4, 8), 0.0)
        self.assertEqual(cm.calculate_agreement(10, 8), 0.0)

    def test_invalid_expected_spread_scores_zero(self):
        self.assertEqual(cm.calculate_agreement(1, 0), 0.0)
        self.assertEqual(cm.calculate_agreement(None, 8), 0.0)

    def test_clamp_score(self):
        self.assertEqual(cm.clamp_score(130), 100.0)
        self.assertEqual(cm.clamp_score(-5), 0.0)
        self.assertEqual(cm.clamp_score(float("nan")), 0.0)


class TestCircular(unittest.TestCase):
    def test_mean_wraps_across_north(self):
        mean = cm.circular_mean([350, 10])
        self.assertTrue(mean < 1e-6 or mean > 360 - 1e-6)
        self.assertLess(mean, 360.0)

    def test_mean_of_east_and_south(self):
        self.assertAlmostEqual(cm.circular_mean([90, 180]), 135.0)

    def test_std_dev_uses_shortest_distance(self):
        self.assertAlmostEqual(cm.circular_std_dev([350, 10]), 10.0, places=6)
        self.assertEqual(cm.circular_std_dev([]), 0.0)

    def test_mean_is_rotation_invariant(self):
        angles = [20, 40, 75]
        base = cm.circular_mean(angles)
        for k in (-2, 1, 3):
            shifted = cm.circular_mean([a + 360 * k for a in angles])
            self.assertAlmostEqual(shifted, base, places=6)
            self.assertTrue(0 <= shifted < 360)

    def test_mean_ignores_absent(self):
        self.assertAlmostEqual(cm.circular_mean([None, 90, float("nan")]), 90.0)


class TestDominantCode(unittest.TestCase):
    def test_families_are_grouped(self):
        # 51 (drizzle) and 63 (moderate rain) both collapse to rain
        result = cm.dominant_weather_code([51, 63, 3])
        self.assertEqual(result.code, 61)
        self.assertAlmostEqual(result.agreement, 200 / 3)
        self.assertTrue(result.available)

    def test_tie_goes_to_lowest_code(self):
        result = cm.dominant_weather_code([3, 61])
        self.assertEqual(result.code, 3)
        self.assertEqual(result.agreement, 50.0)

    def test_absent_codes_are_not_clear_sky(self):
        result = cm.dominant_weather_code([None, float("nan"), 61])
        self.assertEqual(result.code, 61)
        self.assertFalse(result.available)
        self.assertEqual(result.agreement, 0.0)

    def test_no_codes(self):
        result = cm.dominant_weather_code([])
        self.assertIsNone(result.code)
        self.assertFalse(result.available)


class TestWeightedAverage(unittest.TestCase):
    def test_unavailable_items_renormalize(self):
        items = [
            cm.WeightedItem(value=80, weight=0.5, available=True),
            cm.WeightedItem(value=40, weight=0.5, available=False),
            cm.WeightedItem(value=20, weight=0.5, available=True),
        ]
        self.assertEqual(cm.weighted_average(items), 50.0)
        self.assertEqual(cm.available_weight(items), 1.0)

    def test_no_usable_items(self):
        items = [cm.WeightedItem(value=None, weight=1.0, available=True)]
        self.assertEqual(cm.weighted_average(items), 0.0)
        self.assertEqual(cm.available_weight(items), 0.0)

    def test_safe_average(self):
        self.assertEqual(cm.safe_average([None, 2, 4]), 3.0)
        self.assertEqual(cm.safe_average([]), 0.0)


class TestFreshness(unittest.TestCase):
    NOW = 1_700_000_000

    def test_no_metadata(self):
        result = cm.calculate_freshness([{"model_id": "a", "run_availability_time": None}], now_seconds=self.NOW)
        self.assertEqual(result, {"has_metadata": False})

    def test_spread_and_stale_penalty(self):
        runs = [
            {"model_id": "gfs_seamless", "run_availability_time": self.NOW - 3600},
            {"model_id": "ecmwf_ifs", "run_availability_time": self.NOW - 13 * 3600},
        ]
        result = cm.calculate_freshness(runs, now_seconds=self.NOW)
        self.assertTrue(result["has_metadata"])
        self.assertEqual(result["spread_hours"], 12.0)
        self.assertEqual(result["stale_model_ids"], ["ecmwf_ifs"])
        # (12 - 6) * 2 + 4 = 16
        self.assertEqual(result["freshness_penalty"], 16)
        self.assertEqual(result["freshness_score"], 48)

    def test_penalty_is_capped(self):
        runs = [
            {"model_id": "a", "run_availability_time": self.NOW},
            {"model_id": "b", "run_availability_time": self.NOW - 40 * 3600},
        ]
        result = cm.calculate_freshness(runs, now_seconds=self.NOW)
        self.assertEqual(result["freshness_penalty"], 20)

    def test_single_model_has_no_spread(self):
        result = cm.calculate_freshness([{"model_id": "a", "run_availability_time": self.NOW}], now_seconds=self.NOW)
        self.assertIsNone(result["spread_hours"])
        self.assertEqual(result["freshness_penalty"], 0)
        self.assertFalse(math.isnan(result["freshness_score"]))


if __name__ == "__main__":
    unittest.main()
