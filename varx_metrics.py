"""Point-forecast accuracy metrics for horizon x variable forecast matrices."""

from typing import Dict

import numpy as np
from sklearn.metrics import mean_absolute_error, mean_squared_error


EPSILON = 1e-15
METRIC_NAMES = ["RMSE", "MAAPE", "MASE", "MAPE", "MAE"]
WEEKLY_COLUMNS = [f"Weekly_{name}" for name in METRIC_NAMES]
MONTHLY_COLUMNS = [f"Monthly_{name}" for name in METRIC_NAMES]

EVALUATION_COLUMNS = ["Segment"] + WEEKLY_COLUMNS + MONTHLY_COLUMNS + ["Variables", "Fit_Time_Sec"]
EVALUATION_ONLY_COLUMNS = EVALUATION_COLUMNS[:-1]


def rmse(actual, predicted) -> float:
    a = np.ravel(actual).astype(float)
    p = np.ravel(predicted).astype(float)
    return float(np.sqrt(mean_squared_error(a, p)))


def mae(actual, predicted) -> float:
    a = np.ravel(actual).astype(float)
    p = np.ravel(predicted).astype(float)
    return float(mean_absolute_error(a, p))


def mase(actual, predicted, insample) -> float:
    """
    MAE scaled by the in-sample one-step naive error, series by series.

    Each column is one series: its forecast MAE is divided by the mean
    absolute first difference of the same column of ``insample``, and the
    per-series ratios are averaged. Returns NaN when any series has a zero
    naive error or fewer than two in-sample points.
    """
    a = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    y = np.asarray(insample, dtype=float)
    if a.ndim == 1:
        a, p = a.reshape(-1, 1), p.reshape(-1, 1)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    if y.shape[1] != a.shape[1]:
        raise ValueError(f"In-sample data has {y.shape[1]} series, forecast has {a.shape[1]}")
    if y.shape[0] < 2:
        return np.nan

    scale = np.mean(np.abs(np.diff(y, axis=0)), axis=0)
    if not (scale > 0).all():
        return np.nan
    errors = np.mean(np.abs(a - p), axis=0)
    return float(np.mean(errors / scale))


def horizon_blocks(insample, horizon: int) -> np.ndarray:
    """
    Non-overlapping sums of ``horizon`` consecutive rows, aligned to the end
    of the sample. This is the in-sample counterpart of the summed forecast.
    """
    y = np.asarray(insample, dtype=float)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    n_blocks = y.shape[0] // horizon
    if n_blocks == 0:
        return np.empty((0, y.shape[1]))
    tail = y[y.shape[0] - n_blocks * horizon:]
    return tail.reshape(n_blocks, horizon, y.shape[1]).sum(axis=1)


def modified_mape(actual, predicted, eps: float = EPSILON) -> float:
    """MAPE with eps added to the denominator so zero actuals stay finite."""
    a = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    return float(np.mean(np.abs(a - p) / (a + eps)) * 100)


def modified_maape(actual, predicted, eps: float = EPSILON) -> float:
    """Arctan variant of modified_mape; bounded by 50*pi for non-negative actuals."""
    a = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    return float(np.mean(np.arctan(np.abs(a - p) / (a + eps))) * 100)


def compute_metric_battery(actual, predicted, insample) -> Dict[str, float]:
    return {
        "RMSE": rmse(actual, predicted),
        "MAAPE": modified_maape(actual, predicted),
        "MASE": mase(actual, predicted, insample),
        "MAPE": modified_mape(actual, predicted),
        "MAE": mae(actual, predicted),
    }


def evaluate_forecast(actual, predicted, insample, rounding: bool = False) -> Dict[str, float]:
    """
    Weekly (per entry) and Monthly (column sums over the horizon) metrics,
    rounded to 2 decimals.

    ``insample`` is the training block of the same series on the same scale;
    it sets the MASE scale (horizon-length block sums for Monthly). With
    rounding=True actual, predicted and insample are rounded to whole units
    first.
    """
    a = np.atleast_2d(np.asarray(actual, dtype=float))
    p = np.atleast_2d(np.asarray(predicted, dtype=float))
    y = np.asarray(insample, dtype=float)
    if a.shape != p.shape:
        raise ValueError(f"Actual shape {a.shape} does not match predicted shape {p.shape}")
    if rounding:
        a = np.round(a)
        p = np.round(p)
        y = np.round(y)

    weekly = compute_metric_battery(a, p, y)
    monthly = compute_metric_battery(
        a.sum(axis=0, keepdims=True),
        p.sum(axis=0, keepdims=True),
        horizon_blocks(y, a.shape[0]),
    )

    out = {}
    for name in METRIC_NAMES:
        out[f"Weekly_{name}"] = round(weekly[name], 2)
    for name in METRIC_NAMES:
        out[f"Monthly_{name}"] = round(monthly[name], 2)
    return out
