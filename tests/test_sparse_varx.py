import unittest

import numpy as np

from sparse_varx import (
    EstimationFailure,
    ForecastShapeError,
    LeastSquaresVARXEstimator,
    SparseVARXEstimator,
    VARXModel,
    build_models,
    default_lag_order,
    direct_design,
    forecast_horizons,
    make_estimator,
)


def simulate_varx(n_obs=150, n_endog=3, n_exog=2, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n_obs, n_exog))
    A = np.diag(np.full(n_endog, 0.5))
    B = rng.normal(scale=0.3, size=(n_endog, n_exog))
    Y = np.zeros((n_obs, n_endog))
    for t in range(1, n_obs):
        Y[t] = A @ Y[t - 1] + B @ X[t - 1] + rng.normal(scale=0.5, size=n_endog)
    return Y, X


class TestDirectDesign(unittest.TestCase):
    def test_rows_line_up_with_lags(self):
        Y = np.arange(20, dtype=float).reshape(10, 2)
        X = 100 + np.arange(10, dtype=float).reshape(10, 1)
        design, target = direct_design(Y, X, horizon=2, p=2, s=1)

        # start = max(2 + 2 - 1, 2 + 1 - 1) = 3
        self.assertEqual(design.shape, (7, 2 * 2 + 1))
        np.testing.assert_array_equal(target[0], Y[3])
        # y[t-2], y[t-3], x[t-2] for t = 3
        np.testing.assert_array_equal(design[0], np.concatenate([Y[1], Y[0], X[1]]))
        np.testing.assert_array_equal(design[-1], np.concatenate([Y[7], Y[6], X[7]]))

    def test_too_short_series(self):
        Y = np.ones((4, 2))
        X = np.ones((4, 1))
        with self.assertRaises(EstimationFailure):
            direct_design(Y, X, horizon=3, p=2, s=2)

    def test_default_lag_order(self):
        self.assertEqual(default_lag_order(100), 4)
        self.assertEqual(default_lag_order(150), 4)
        self.assertEqual(default_lag_order(5), 1)


class TestSparseVARXEstimator(unittest.TestCase):
    def setUp(self):
        self.Y, self.X = simulate_varx()

    def test_cv_fit_and_forecast_one_row(self):
        estimator = SparseVARXEstimator(p=2, s=2, n_alphas=10, n_splits=3)
        model = estimator.fit(self.Y, self.X, horizon=2)
        self.assertEqual(model.horizon, 2)
        self.assertEqual(model.coef.shape, (3, 2 * 3 + 2 * 2))
        self.assertIn(model.alpha, list(model.alphas))
        self.assertEqual(model.cv_scores.shape, (10,))
        self.assertEqual(model.forecast(2).shape, (1, 3))

    def test_forecast_matches_manual_regression(self):
        model = SparseVARXEstimator(p=1, s=1, selection="none", alpha=0.05).fit(self.Y, self.X, horizon=1)
        regressors = np.concatenate([self.Y[-1], self.X[-1]])
        expected = model.coef @ regressors + model.intercept
        np.testing.assert_allclose(model.forecast(1)[0], expected)

    def test_large_penalty_zeroes_coefficients(self):
        model = SparseVARXEstimator(p=1, s=1, selection="none", alpha=1e6).fit(self.Y, self.X, horizon=1)
        self.assertEqual(model.n_nonzero, 0)

    def test_information_criterion_selection(self):
        for selection in ("bic", "aic"):
            model = SparseVARXEstimator(p=1, s=1, selection=selection, n_alphas=8).fit(self.Y, self.X, horizon=1)
            self.assertEqual(model.selection, selection)
            self.assertEqual(model.cv_scores.shape, (8,))

    def test_wrong_horizon_forecast_raises(self):
        model = SparseVARXEstimator(p=1, s=1, selection="none").fit(self.Y, self.X, horizon=3)
        with self.assertRaises(ValueError):
            model.forecast(1)

    def test_non_finite_input_is_estimation_failure(self):
        Y = self.Y.copy()
        Y[5, 1] = np.nan
        with self.assertRaises(EstimationFailure):
            SparseVARXEstimator(p=1, s=1).fit(Y, self.X, horizon=1)

    def test_solver_errors_are_wrapped(self):
        class Exploding(SparseVARXEstimator):
            def _lasso(self, alpha):
                raise ArithmeticError("boom")

        with self.assertRaises(EstimationFailure) as ctx:
            Exploding(p=1, s=1, selection="none").fit(self.Y, self.X, horizon=1)
        self.assertIsInstance(ctx.exception.__cause__, ArithmeticError)

    def test_unknown_selection_rejected(self):
        with self.assertRaises(ValueError):
            SparseVARXEstimator(selection="holdout")

    def test_zeroed_exogenous_column_is_accepted(self):
        X = self.X.copy()
        X[:, 1] = 0.0
        model = SparseVARXEstimator(p=1, s=1, n_alphas=5, n_splits=3).fit(self.Y, X, horizon=1)
        self.assertTrue(np.isfinite(model.forecast(1)).all())


class TestLeastSquaresBackend(unittest.TestCase):
    def test_ols_recovers_noise_free_coefficients(self):
        rng = np.random.default_rng(3)
        X = rng.normal(size=(60, 1))
        Y = np.zeros((60, 1))
        for t in range(1, 60):
            Y[t] = 0.6 * Y[t - 1] + 0.8 * X[t - 1] + 0.1
        model = make_estimator("ols", p=1, s=1).fit(Y, X, horizon=1)
        np.testing.assert_allclose(model.coef[0], [0.6, 0.8], atol=1e-8)
        np.testing.assert_allclose(model.intercept, [0.1], atol=1e-8)

    def test_make_estimator_backends(self):
        self.assertIsInstance(make_estimator("ols"), LeastSquaresVARXEstimator)
        self.assertIsInstance(make_estimator("lasso", selection="bic"), SparseVARXEstimator)
        with self.assertRaises(ValueError):
            make_estimator("ridge")


class _FixedRowModel:
    def __init__(self, rows):
        self.rows = rows

    def forecast(self, horizon):
        return self.rows


class TestBuildAndForecast(unittest.TestCase):
    def test_one_model_per_horizon(self):
        Y, X = simulate_varx()
        models = build_models(Y, X, 3, SparseVARXEstimator(p=1, s=1, n_alphas=5, n_splits=3))
        self.assertEqual([m.horizon for m in models], [1, 2, 3])

        forecast = forecast_horizons(models, 3)
        self.assertEqual(forecast.shape, (3, 3))
        np.testing.assert_allclose(forecast[1], models[1].forecast(2)[0])

    def test_failure_aborts_whole_set(self):
        Y, X = simulate_varx(n_obs=4)
        with self.assertRaises(EstimationFailure):
            build_models(Y, X, 4, SparseVARXEstimator(p=1, s=1, selection="none"))

    def test_multi_row_model_output_is_error(self):
        models = [_FixedRowModel(np.zeros((1, 2))), _FixedRowModel(np.zeros((2, 2)))]
        with self.assertRaises(ForecastShapeError):
            forecast_horizons(models, 2)

    def test_empty_model_output_is_error(self):
        with self.assertRaises(ForecastShapeError):
            forecast_horizons([_FixedRowModel(np.zeros((0, 2)))], 1)

    def test_missing_models(self):
        with self.assertRaises(ValueError):
            forecast_horizons([_FixedRowModel(np.zeros((1, 2)))], 2)

    def test_model_is_plain_data(self):
        model = VARXModel(
            horizon=1, p=1, s=1,
            coef=np.array([[0.5, 1.0]]),
            intercept=np.array([0.0]),
            y_tail=np.array([[2.0]]),
            x_tail=np.array([[3.0]]),
        )
        np.testing.assert_allclose(model.forecast(1), [[4.0]])


if __name__ == "__main__":
    unittest.main()
