import math
import unittest

import numpy as np

from varx_metrics import (
    EVALUATION_COLUMNS,
    EVALUATION_ONLY_COLUMNS,
    evaluate_forecast,
    horizon_blocks,
    mae,
    mase,
    modified_maape,
    modified_mape,
    rmse,
)


class TestPointMetrics(unittest.TestCase):
    def test_rmse_and_mae_over_all_entries(self):
        actual = np.array([[1.0, 2.0], [3.0, 4.0]])
        predicted = np.array([[2.0, 2.0], [3.0, 6.0]])
        self.assertAlmostEqual(rmse(actual, predicted), math.sqrt(5.0 / 4.0))
        self.assertAlmostEqual(mae(actual, predicted), 0.75)

    def test_mape_with_zero_actual_is_finite(self):
        value = modified_mape([0.0, 10.0], [1.0, 10.0])
        self.assertTrue(np.isfinite(value))
        self.assertGreater(value, 1e15)

    def test_maape_with_zero_actual_is_bounded(self):
        value = modified_maape([0.0, 0.0], [5.0, 3.0])
        self.assertFalse(np.isnan(value))
        self.assertAlmostEqual(value, 50 * math.pi, places=4)

    def test_maape_perfect_forecast(self):
        self.assertEqual(modified_maape([1.0, 2.0], [1.0, 2.0]), 0.0)

    def test_mase_uses_in_sample_naive_scale(self):
        insample = np.array([1.0, 2.0, 4.0, 7.0])
        actual = np.array([8.0, 9.0])
        predicted = np.array([9.0, 9.0])
        # in-sample naive errors 1, 2, 3 -> scale 2; mae 0.5
        self.assertAlmostEqual(mase(actual, predicted, insample), 0.25)

    def test_mase_scales_each_series_separately(self):
        insample = np.array([[0.0, 0.0], [1.0, 10.0], [2.0, 20.0]])
        actual = np.array([[1.0, 10.0], [2.0, 12.0]])
        predicted = actual + 1.0
        # scales 1 and 10 -> ratios 1.0 and 0.1
        self.assertAlmostEqual(mase(actual, predicted, insample), 0.55)

    def test_mase_ignores_column_order(self):
        insample = np.array([[0.0, 5.0], [1.0, 9.0], [3.0, 8.0]])
        actual = np.array([[1.0, 10.0], [2.0, 12.0]])
        predicted = actual + np.array([[0.5, -2.0], [1.0, 3.0]])
        swap = [1, 0]
        self.assertAlmostEqual(
            mase(actual, predicted, insample),
            mase(actual[:, swap], predicted[:, swap], insample[:, swap]),
        )

    def test_mase_flat_in_sample_series_is_nan(self):
        insample = np.array([[10.0, 100.0], [10.0, 100.0], [10.0, 100.0]])
        actual = np.array([[10.0, 100.0], [10.0, 100.0]])
        self.assertTrue(np.isnan(mase(actual, actual + 1.0, insample)))

    def test_mase_needs_two_in_sample_points(self):
        self.assertTrue(np.isnan(mase([1.0], [2.0], [3.0])))

    def test_horizon_blocks_align_to_sample_end(self):
        insample = np.arange(1.0, 8.0).reshape(-1, 1)
        # 7 rows, horizon 3 -> drop the first row, sum rows 2-4 and 5-7
        np.testing.assert_allclose(horizon_blocks(insample, 3), [[9.0], [18.0]])


class TestEvaluateForecast(unittest.TestCase):
    # in-sample history for two series, four rows
    INSAMPLE = np.array([[6.0, 14.0], [9.0, 17.0], [7.0, 20.0], [11.0, 16.0]])

    def test_keys_and_rounding_to_two_decimals(self):
        actual = np.array([[1.0, 2.0, 3.0], [2.0, 3.0, 5.0]])
        predicted = np.array([[1.1, 2.3, 2.9], [2.2, 2.6, 5.4]])
        insample = np.array([[0.5, 1.0, 2.0], [1.5, 2.5, 2.5], [1.0, 2.0, 4.0], [2.0, 3.0, 3.5]])
        result = evaluate_forecast(actual, predicted, insample)
        self.assertEqual(list(result.keys()), EVALUATION_COLUMNS[1:11])
        for value in result.values():
            self.assertEqual(value, round(value, 2))

    def test_monthly_uses_column_sums(self):
        actual = np.array([[1.0, 2.0], [3.0, 4.0]])
        predicted = np.array([[2.0, 2.0], [3.0, 3.0]])
        result = evaluate_forecast(actual, predicted, self.INSAMPLE)
        self.assertEqual(result["Monthly_MAE"], round(mae([4.0, 6.0], [5.0, 5.0]), 2))
        self.assertEqual(result["Monthly_RMSE"], 1.0)

    def test_monthly_mase_scaled_by_horizon_block_sums(self):
        actual = np.array([[1.0, 2.0], [3.0, 4.0]])
        predicted = np.array([[2.0, 2.0], [3.0, 3.0]])
        result = evaluate_forecast(actual, predicted, self.INSAMPLE)
        # blocks of two rows: [15, 31] then [18, 36]; naive errors 3 and 5
        expected = mase([[4.0, 6.0]], [[5.0, 5.0]], [[15.0, 31.0], [18.0, 36.0]])
        self.assertAlmostEqual(expected, (1.0 / 3.0 + 1.0 / 5.0) / 2)
        self.assertEqual(result["Monthly_MASE"], round(expected, 2))

    def test_weekly_mase_uses_in_sample_scale(self):
        actual = np.array([[10.0, 18.0], [12.0, 19.0]])
        predicted = actual + 1.0
        result = evaluate_forecast(actual, predicted, self.INSAMPLE)
        # series scales 3 and 3.33
        self.assertEqual(result["Weekly_MASE"], round((1.0 / 3.0 + 0.3) / 2, 2))

    def test_rounding_changes_fractional_predictions(self):
        actual = np.array([[10.0, 20.0], [12.0, 18.0]])
        predicted = np.array([[10.4, 19.6], [12.3, 18.2]])
        plain = evaluate_forecast(actual, predicted, self.INSAMPLE, rounding=False)
        rounded = evaluate_forecast(actual, predicted, self.INSAMPLE, rounding=True)
        self.assertNotEqual(plain["Weekly_MAE"], rounded["Weekly_MAE"])
        self.assertEqual(rounded["Weekly_MAE"], 0.0)

    def test_rounding_is_noop_for_integral_inputs(self):
        actual = np.array([[10.0, 20.0], [12.0, 18.0]])
        predicted = np.array([[11.0, 19.0], [12.0, 17.0]])
        self.assertEqual(
            evaluate_forecast(actual, predicted, self.INSAMPLE, rounding=False),
            evaluate_forecast(actual, predicted, self.INSAMPLE, rounding=True),
        )

    def test_shape_mismatch_raises(self):
        with self.assertRaises(ValueError):
            evaluate_forecast(np.zeros((2, 3)), np.zeros((3, 2)), np.ones((4, 3)))

    def test_schema_lengths(self):
        self.assertEqual(len(EVALUATION_COLUMNS), 13)
        self.assertEqual(len(EVALUATION_ONLY_COLUMNS), 12)
        self.assertNotIn("Fit_Time_Sec", EVALUATION_ONLY_COLUMNS)


if __name__ == "__main__":
    unittest.main()
