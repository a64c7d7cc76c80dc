import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import statsmodels.api as sm
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import Lasso
from sklearn.model_selection import TimeSeriesSplit
from statsmodels.tsa.tsatools import lagmat

from varx_segment_data import SegmentError


SELECTION_METHODS = ("cv", "bic", "aic", "none")


class EstimationFailure(SegmentError, RuntimeError):
    pass


class ForecastShapeError(ValueError):
    pass


# ===========================
# FITTED MODEL
# ===========================

@dataclass
class VARXModel:
    """
    Direct h-step VARX fit.

    coef is K x (p*K + s*M): lag h..h+p-1 blocks of the endogenous series
    followed by lag h..h+s-1 blocks of the exogenous series, variables
    ordered within each block. y_tail / x_tail hold the most recent p / s
    rows (newest first) used to build the forecast regressors.
    """
    horizon: int
    p: int
    s: int
    coef: np.ndarray
    intercept: np.ndarray
    y_tail: np.ndarray
    x_tail: np.ndarray
    alpha: float = 0.0
    selection: str = "none"
    cv_scores: Optional[np.ndarray] = None
    alphas: Optional[np.ndarray] = None

    @property
    def n_endog(self) -> int:
        return self.coef.shape[0]

    @property
    def n_nonzero(self) -> int:
        return int(np.count_nonzero(self.coef))

    def forecast(self, horizon: int) -> np.ndarray:
        """One row of K predictions for this model's own horizon."""
        if horizon != self.horizon:
            raise ValueError(
                f"Model was fitted for horizon {self.horizon}; cannot forecast horizon {horizon}"
            )
        regressors = forecast_regressors(self.y_tail, self.x_tail, self.p, self.s)
        return (regressors @ self.coef.T + self.intercept).reshape(1, -1)


# ===========================
# DESIGN MATRICES
# ===========================

def default_lag_order(n_obs: int) -> int:
    """Schwert's rule: floor(4 * (T/100)^(1/4))."""
    return max(1, int(np.floor(4 * (n_obs / 100.0) ** 0.25)))


def direct_design(
    Y: np.ndarray,
    X: np.ndarray,
    horizon: int,
    p: int,
    s: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Regressors and targets for a direct h-step VARX.

    Row t regresses y[t] on y[t-h], ..., y[t-h-p+1] and x[t-h], ..., x[t-h-s+1].
    """
    Y = np.asarray(Y, dtype=float)
    X = np.asarray(X, dtype=float)
    n_obs, n_endog = Y.shape

    max_y = horizon + p - 1
    max_x = horizon + s - 1
    start = max(max_y, max_x)
    if start >= n_obs - 1:
        raise EstimationFailure(
            f"Not enough observations ({n_obs}) for horizon {horizon} with lags p={p}, s={s}"
        )

    y_lags = lagmat(Y, maxlag=max_y, trim="both", original="ex")
    y_lags = y_lags[start - max_y:, (horizon - 1) * n_endog:]
    blocks = [y_lags]

    if X.shape[1] > 0:
        n_exog = X.shape[1]
        x_lags = lagmat(X, maxlag=max_x, trim="both", original="ex")
        blocks.append(x_lags[start - max_x:, (horizon - 1) * n_exog:])

    return np.hstack(blocks), Y[start:]


def forecast_regressors(y_tail: np.ndarray, x_tail: np.ndarray, p: int, s: int) -> np.ndarray:
    parts = [np.asarray(y_tail, dtype=float)[:p].ravel()]
    if x_tail.size:
        parts.append(np.asarray(x_tail, dtype=float)[:s].ravel())
    return np.concatenate(parts).reshape(1, -1)


def _tails(Y: np.ndarray, X: np.ndarray, p: int, s: int) -> Tuple[np.ndarray, np.ndarray]:
    y_tail = np.asarray(Y, dtype=float)[::-1][:p].copy()
    x_tail = np.asarray(X, dtype=float)[::-1][:s].copy()
    return y_tail, x_tail


# ===========================
# ESTIMATORS
# ===========================

class _DirectVARXEstimator:
    """Shared lag handling for direct-forecast VARX backends."""

    def __init__(self, p: Optional[int] = None, s: Optional[int] = None):
        self.p = p
        self.s = s

    def lag_orders(self, n_obs: int) -> Tuple[int, int]:
        p = self.p if self.p is not None else default_lag_order(n_obs)
        s = self.s if self.s is not None else default_lag_order(n_obs)
        return p, s

    def fit(self, Y, X, horizon: int) -> VARXModel:
        Y = np.asarray(Y, dtype=float)
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if Y.ndim != 2 or Y.shape[1] == 0:
            raise EstimationFailure("Endogenous matrix must have at least one column")
        if X.shape[0] != Y.shape[0]:
            raise EstimationFailure(
                f"Endogenous ({Y.shape[0]}) and exogenous ({X.shape[0]}) row counts differ"
            )
        if not (np.isfinite(Y).all() and np.isfinite(X).all()):
            raise EstimationFailure("Non-finite values in model inputs")

        p, s = self.lag_orders(Y.shape[0])
        design, target = direct_design(Y, X, horizon, p, s)
        try:
            model = self._fit_design(design, target, horizon, p, s)
        except EstimationFailure:
            raise
        except Exception as exc:
            raise EstimationFailure(f"Horizon {horizon} fit failed: {exc}") from exc

        if not (np.isfinite(model.coef).all() and np.isfinite(model.intercept).all()):
            raise EstimationFailure(f"Horizon {horizon} fit produced non-finite coefficients")
        model.y_tail, model.x_tail = _tails(Y, X, p, s)
        return model

    def _fit_design(self, design, target, horizon, p, s) -> VARXModel:
        raise NotImplementedError


class SparseVARXEstimator(_DirectVARXEstimator):
    """
    L1-penalized direct VARX with one penalty shared by all equations.

    selection:
        "cv"   - time-series cross-validation over a penalty grid
        "bic"  - Bayesian information criterion over the same grid
        "aic"  - Akaike information criterion over the same grid
        "none" - use the fixed alpha
    """

    def __init__(
        self,
        p: Optional[int] = None,
        s: Optional[int] = None,
        selection: str = "cv",
        n_alphas: int = 30,
        alpha_min_ratio: float = 1e-3,
        n_splits: int = 5,
        alpha: float = 0.01,
        max_iter: int = 10000,
        strict_convergence: bool = False,
    ):
        super().__init__(p=p, s=s)
        if selection not in SELECTION_METHODS:
            raise ValueError(f"selection must be one of {SELECTION_METHODS}, got {selection!r}")
        self.selection = selection
        self.n_alphas = n_alphas
        self.alpha_min_ratio = alpha_min_ratio
        self.n_splits = n_splits
        self.alpha = alpha
        self.max_iter = max_iter
        self.strict_convergence = strict_convergence

    def alpha_grid(self, design: np.ndarray, target: np.ndarray) -> np.ndarray:
        """Descending grid starting at the smallest penalty that zeroes every coefficient."""
        Xc = design - design.mean(axis=0)
        Yc = target - target.mean(axis=0)
        alpha_max = np.abs(Xc.T @ Yc).max() / design.shape[0]
        if not np.isfinite(alpha_max) or alpha_max <= 0:
            alpha_max = 1.0
        return np.geomspace(alpha_max, alpha_max * self.alpha_min_ratio, self.n_alphas)

    def _lasso(self, alpha: float) -> Lasso:
        return Lasso(alpha=alpha, fit_intercept=True, max_iter=self.max_iter)

    def _cv_scores(self, design, target, alphas) -> np.ndarray:
        n_rows = design.shape[0]
        n_splits = min(self.n_splits, n_rows - 1)
        if n_splits < 2:
            raise EstimationFailure(f"Only {n_rows} rows available for cross-validation")

        scores = np.zeros((len(alphas), n_splits))
        splitter = TimeSeriesSplit(n_splits=n_splits)
        for fold, (train_idx, test_idx) in enumerate(splitter.split(design)):
            model = Lasso(alpha=alphas[0], fit_intercept=True, max_iter=self.max_iter, warm_start=True)
            for i, alpha in enumerate(alphas):
                model.set_params(alpha=alpha)
                model.fit(design[train_idx], target[train_idx])
                pred = model.predict(design[test_idx]).reshape(target[test_idx].shape)
                scores[i, fold] = np.mean((target[test_idx] - pred) ** 2)
        return scores.mean(axis=1)

    def _ic_scores(self, design, target, alphas) -> np.ndarray:
        n_rows = design.shape[0]
        weight = np.log(n_rows) if self.selection == "bic" else 2.0
        scores = np.zeros(len(alphas))
        for i, alpha in enumerate(alphas):
            model = self._lasso(alpha).fit(design, target)
            resid = target - model.predict(design).reshape(target.shape)
            rss = np.maximum((resid ** 2).sum(axis=0), np.finfo(float).tiny)
            coef = np.atleast_2d(model.coef_)
            dof = np.count_nonzero(coef, axis=1) + 1
            scores[i] = np.sum(n_rows * np.log(rss / n_rows) + weight * dof)
        return scores

    def _fit_design(self, design, target, horizon, p, s) -> VARXModel:
        alphas = None
        scores = None
        if self.selection == "none":
            alpha = self.alpha
        else:
            alphas = self.alpha_grid(design, target)
            if self.selection == "cv":
                scores = self._cv_scores(design, target, alphas)
            else:
                scores = self._ic_scores(design, target, alphas)
            # argmin keeps the first (largest) penalty on ties
            alpha = float(alphas[int(np.argmin(scores))])

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            final = self._lasso(alpha).fit(design, target)
        if self.strict_convergence and any(issubclass(w.category, ConvergenceWarning) for w in caught):
            raise EstimationFailure(f"Horizon {horizon} fit did not converge (alpha={alpha:.4g})")

        coef = np.atleast_2d(final.coef_)
        return VARXModel(
            horizon=horizon,
            p=p,
            s=s,
            coef=coef,
            intercept=np.atleast_1d(np.asarray(final.intercept_, dtype=float)),
            y_tail=np.empty((0, 0)),
            x_tail=np.empty((0, 0)),
            alpha=alpha,
            selection=self.selection,
            cv_scores=scores,
            alphas=alphas,
        )


class LeastSquaresVARXEstimator(_DirectVARXEstimator):
    """Unpenalized direct VARX, one statsmodels OLS per equation."""

    def _fit_design(self, design, target, horizon, p, s) -> VARXModel:
        exog = sm.add_constant(design, has_constant="add")
        coefs = []
        intercepts = []
        for k in range(target.shape[1]):
            res = sm.OLS(target[:, k], exog).fit()
            intercepts.append(res.params[0])
            coefs.append(res.params[1:])
        return VARXModel(
            horizon=horizon,
            p=p,
            s=s,
            coef=np.vstack(coefs),
            intercept=np.asarray(intercepts, dtype=float),
            y_tail=np.empty((0, 0)),
            x_tail=np.empty((0, 0)),
            selection="ols",
        )


def make_estimator(
    backend: str = "lasso",
    p: Optional[int] = None,
    s: Optional[int] = None,
    **lasso_kwargs,
):
    if backend == "lasso":
        return SparseVARXEstimator(p=p, s=s, **lasso_kwargs)
    if backend == "ols":
        return LeastSquaresVARXEstimator(p=p, s=s)
    raise ValueError(f"Unknown estimator backend: {backend}")


# ===========================
# MODEL BUILDER / FORECASTER
# ===========================

def build_models(Y, X, horizons: int, estimator) -> List[VARXModel]:
    """Fit one direct model per horizon 1..H. Any failure aborts the whole set."""
    return [estimator.fit(Y, X, h) for h in range(1, horizons + 1)]


def forecast_horizons(models: Sequence, horizons: int) -> np.ndarray:
    """H x K forecast matrix, row i from the model fitted for horizon i + 1."""
    if len(models) < horizons:
        raise ValueError(f"Need {horizons} models, got {len(models)}")

    rows = []
    width = None
    for h in range(1, horizons + 1):
        row = np.atleast_2d(np.asarray(models[h - 1].forecast(h), dtype=float))
        if row.shape[0] != 1:
            raise ForecastShapeError(f"Horizon {h} model returned {row.shape[0]} rows, expected 1")
        if width is None:
            width = row.shape[1]
        elif row.shape[1] != width:
            raise ForecastShapeError(f"Horizon {h} model returned {row.shape[1]} columns, expected {width}")
        rows.append(row)
    return np.vstack(rows)
