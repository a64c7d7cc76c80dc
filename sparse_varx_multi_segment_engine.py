import warnings
warnings.filterwarnings("ignore", category=FutureWarning)
warnings.filterwarnings("ignore", category=UserWarning)
try:
    from sklearn.exceptions import ConvergenceWarning
    warnings.filterwarnings("ignore", category=ConvergenceWarning)
except Exception:
    pass

import argparse
import io
import time
from contextlib import contextmanager, redirect_stderr, redirect_stdout
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from sparse_varx import (
    SELECTION_METHODS,
    build_models,
    forecast_horizons,
    make_estimator,
)
from varx_metrics import EVALUATION_COLUMNS, evaluate_forecast
from varx_segment_data import (
    SALES_MARKER,
    DataShapeError,
    SegmentData,
    apply_standardization,
    destandardize,
    discover_segments,
    load_segment,
    locate_segment_files,
    split_columns,
    standardize,
    undifference,
    validate_segment,
    zero_degenerate,
)
from varx_storage import CsvEvaluationSink, JoblibModelStore

# ===========================
# 1. CONFIG
# ===========================

BASE_DIR = Path(__file__).resolve().parent
PROCESSED_DIR = BASE_DIR / "data" / "processed"   # differenced "S Train.csv" / "S Test.csv"
RAW_DIR = BASE_DIR / "data" / "raw"               # original-unit "S Train.csv" / "S Test.csv"
MODEL_DIR = BASE_DIR / "models"
OUTPUT_DIR = BASE_DIR / "data_storage"

EVAL_STANDARDIZED_FILE = "sparse_varx_eval_standardized.csv"
EVAL_RAW_FILE = "sparse_varx_eval_raw.csv"
TEMP_EVAL_STANDARDIZED_FILE = "temp_sparse_varx_eval_standardized.csv"
TEMP_EVAL_RAW_FILE = "temp_sparse_varx_eval_raw.csv"
HOLDOUT_TS_FILE = "holdout_forecast_actuals.csv"
FAILURES_FILE = "failed_segments.csv"
TEMP_FAILURES_FILE = "temp_failed_segments.csv"

FORECAST_HORIZON = 4          # weeks; "monthly" metrics sum over this window
ESTIMATOR_BACKEND = "lasso"   # "lasso" (sparse) or "ols"
SELECTION_METHOD = "cv"       # "cv", "bic", "aic" or "none"
ENDOG_LAGS = None             # None -> floor(4 * (T/100)^(1/4))
EXOG_LAGS = None
CV_SPLITS = 5
N_ALPHAS = 30
ALPHA_MIN_RATIO = 1e-3
FIXED_ALPHA = 0.01            # used when SELECTION_METHOD == "none"
MAX_ITER = 10000
STRICT_CONVERGENCE = False
QUIET_MODEL_OUTPUT = True

HOLDOUT_COLUMNS = ["Segment", "Scale", "Horizon", "Variable", "Actual", "Forecast"]
FAILURE_COLUMNS = ["Segment", "Error_Type", "Message"]


# ===========================
# 2. HELPER FUNCTIONS
# ===========================

@contextmanager
def quiet_output(enabled: bool = True):
    if not enabled:
        yield
        return
    with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
        yield


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Multi-segment sparse VARX training and evaluation engine")
    parser.add_argument("--processed-dir", type=Path, default=PROCESSED_DIR)
    parser.add_argument("--raw-dir", type=Path, default=RAW_DIR)
    parser.add_argument("--model-dir", type=Path, default=MODEL_DIR)
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR)
    parser.add_argument("--horizon", type=int, default=FORECAST_HORIZON)
    parser.add_argument("--estimator", choices=["lasso", "ols"], default=ESTIMATOR_BACKEND)
    parser.add_argument("--selection", choices=list(SELECTION_METHODS), default=SELECTION_METHOD)
    parser.add_argument("--p", type=int, default=ENDOG_LAGS, help="Endogenous lag order")
    parser.add_argument("--s", type=int, default=EXOG_LAGS, help="Exogenous lag order")
    parser.add_argument("--sales-marker", default=SALES_MARKER)
    parser.add_argument(
        "--segments",
        type=int,
        nargs="*",
        default=None,
        help="Only process these segment ids (default: every discovered segment).",
    )
    parser.add_argument("--strict-convergence", action="store_true", default=STRICT_CONVERGENCE)
    parser.add_argument("--verbose", action="store_true", help="Show solver output during fits")
    return parser.parse_args(argv)


def configured_estimator(
    backend: str = ESTIMATOR_BACKEND,
    selection: str = SELECTION_METHOD,
    p: Optional[int] = ENDOG_LAGS,
    s: Optional[int] = EXOG_LAGS,
    strict_convergence: bool = STRICT_CONVERGENCE,
):
    if backend == "ols":
        return make_estimator("ols", p=p, s=s)
    return make_estimator(
        "lasso",
        p=p,
        s=s,
        selection=selection,
        n_alphas=N_ALPHAS,
        alpha_min_ratio=ALPHA_MIN_RATIO,
        n_splits=CV_SPLITS,
        alpha=FIXED_ALPHA,
        max_iter=MAX_ITER,
        strict_convergence=strict_convergence,
    )


@dataclass
class PreparedSegment:
    segment_id: int
    boundary: int
    endog_columns: List[str]
    exog_columns: List[str]
    Y_train: np.ndarray
    X_train: np.ndarray
    Y_test: np.ndarray
    y_std: np.ndarray
    y_mean: np.ndarray
    last_level: np.ndarray
    raw_train: np.ndarray
    raw_actual: np.ndarray


def prepare_segment(
    data: SegmentData,
    horizon: int,
    marker: str = SALES_MARKER,
    y_std: Optional[np.ndarray] = None,
    y_mean: Optional[np.ndarray] = None,
) -> PreparedSegment:
    """
    Split, standardize with train statistics, and cut the H-step holdout windows.

    Pass y_std / y_mean to reuse the sales statistics a model was fitted with
    instead of recomputing them from the current train table.
    """
    boundary = validate_segment(data, horizon, marker)

    y_train_df, x_train_df = split_columns(data.train, boundary)
    if y_std is None or y_mean is None:
        Y_train, y_std, y_mean = standardize(y_train_df)
    else:
        y_std = np.asarray(y_std, dtype=float)
        y_mean = np.asarray(y_mean, dtype=float)
        if y_std.shape != (y_train_df.shape[1],) or y_mean.shape != y_std.shape:
            raise DataShapeError(
                f"Segment {data.segment_id}: saved statistics cover {y_std.size} sales series, "
                f"table has {y_train_df.shape[1]}"
            )
        Y_train = apply_standardization(y_train_df, y_std, y_mean)
    flat = [c for c, sd in zip(y_train_df.columns, y_std) if not sd > 0]
    if flat:
        raise DataShapeError(f"Segment {data.segment_id}: sales series without variation: {flat}")

    X_train, x_std, _ = standardize(x_train_df)
    X_train = zero_degenerate(X_train, x_std)

    y_test_df, _ = split_columns(data.test, boundary)
    Y_test = apply_standardization(y_test_df.iloc[:horizon], y_std, y_mean)

    raw_train_endog, _ = split_columns(data.raw_train, boundary)
    raw_test_endog, _ = split_columns(data.raw_test, boundary)

    return PreparedSegment(
        segment_id=data.segment_id,
        boundary=boundary,
        endog_columns=list(y_train_df.columns),
        exog_columns=list(x_train_df.columns),
        Y_train=Y_train,
        X_train=X_train,
        Y_test=Y_test,
        y_std=y_std,
        y_mean=y_mean,
        last_level=raw_train_endog.iloc[-1].to_numpy(dtype=float),
        raw_train=raw_train_endog.to_numpy(dtype=float),
        raw_actual=raw_test_endog.iloc[:horizon].to_numpy(dtype=float),
    )


def to_raw_scale(forecast_std: np.ndarray, prepared: PreparedSegment) -> np.ndarray:
    """Standardized differences -> differences -> sales levels."""
    diffs = destandardize(forecast_std, prepared.y_std, prepared.y_mean)
    return undifference(diffs, prepared.last_level)


def evaluation_row(segment_id, metrics: Dict[str, float], n_vars: int, fit_time: Optional[float] = None) -> dict:
    row = {"Segment": segment_id}
    row.update(metrics)
    row["Variables"] = n_vars
    if fit_time is not None:
        row["Fit_Time_Sec"] = round(fit_time, 2)
    return row


def holdout_rows(segment_id, scale: str, columns: Sequence[str], actual: np.ndarray, forecast: np.ndarray) -> List[dict]:
    rows = []
    for h in range(forecast.shape[0]):
        for k, name in enumerate(columns):
            rows.append({
                "Segment": segment_id,
                "Scale": scale,
                "Horizon": h + 1,
                "Variable": name,
                "Actual": float(actual[h, k]),
                "Forecast": float(forecast[h, k]),
            })
    return rows


def evaluate_models(
    prepared: PreparedSegment,
    models: Sequence,
    horizon: int,
    rounding: bool = False,
) -> dict:
    """
    Forecast H steps and score them on both scales.

    rounding applies to the raw (sales unit) comparison only.
    """
    forecast_std = forecast_horizons(models, horizon)
    forecast_raw = to_raw_scale(forecast_std, prepared)
    return {
        "forecast_std": forecast_std,
        "forecast_raw": forecast_raw,
        "metrics_std": evaluate_forecast(prepared.Y_test, forecast_std, prepared.Y_train),
        "metrics_raw": evaluate_forecast(
            prepared.raw_actual, forecast_raw, prepared.raw_train, rounding=rounding
        ),
    }


def output_sinks(output_dir: Path) -> Dict[str, CsvEvaluationSink]:
    output_dir = Path(output_dir)
    return {
        "standardized": CsvEvaluationSink(output_dir / EVAL_STANDARDIZED_FILE, EVALUATION_COLUMNS),
        "raw": CsvEvaluationSink(output_dir / EVAL_RAW_FILE, EVALUATION_COLUMNS),
        "holdout": CsvEvaluationSink(output_dir / HOLDOUT_TS_FILE, HOLDOUT_COLUMNS),
        "failures": CsvEvaluationSink(output_dir / FAILURES_FILE, FAILURE_COLUMNS),
    }


# ===========================
# 3. MAIN ENGINE
# ===========================

def process_segment(
    segment_id: int,
    processed_dir: Path,
    raw_dir: Path,
    horizon: int,
    estimator,
    store,
    standardized_sink,
    raw_sink,
    holdout_sink=None,
    marker: str = SALES_MARKER,
    quiet: bool = QUIET_MODEL_OUTPUT,
) -> str:
    """Train, persist and evaluate one segment. Returns "SKIPPED" or "TRAINED"."""
    if store.exists(segment_id):
        print("  -> Skipping: model artifact already exists.")
        return "SKIPPED"

    files = locate_segment_files(segment_id, processed_dir, raw_dir)
    data = load_segment(files)
    prepared = prepare_segment(data, horizon, marker)
    n_vars = len(prepared.endog_columns)
    print(f"  {n_vars} sales series, {len(prepared.exog_columns)} regressors, {len(data.train)} train rows")

    t0 = time.perf_counter()
    with quiet_output(quiet):
        models = build_models(prepared.Y_train, prepared.X_train, horizon, estimator)
    fit_time = time.perf_counter() - t0
    print(f"  Fitted {len(models)} horizon models in {fit_time:,.2f}s")

    store.save(segment_id, {
        "segment_id": segment_id,
        "models": models,
        "horizon": horizon,
        "boundary": prepared.boundary,
        "endog_columns": prepared.endog_columns,
        "exog_columns": prepared.exog_columns,
        "y_std": prepared.y_std,
        "y_mean": prepared.y_mean,
        "fit_time_sec": fit_time,
    })

    result = evaluate_models(prepared, models, horizon)
    standardized_sink.append(evaluation_row(segment_id, result["metrics_std"], n_vars, fit_time))
    raw_sink.append(evaluation_row(segment_id, result["metrics_raw"], n_vars, fit_time))
    if holdout_sink is not None:
        for row in holdout_rows(segment_id, "standardized", prepared.endog_columns, prepared.Y_test, result["forecast_std"]):
            holdout_sink.append(row)
        for row in holdout_rows(segment_id, "raw", prepared.endog_columns, prepared.raw_actual, result["forecast_raw"]):
            holdout_sink.append(row)

    print(
        f"  -> Weekly RMSE (std): {result['metrics_std']['Weekly_RMSE']:.2f} | "
        f"Weekly RMSE (raw): {result['metrics_raw']['Weekly_RMSE']:.2f} | "
        f"Monthly MAE (raw): {result['metrics_raw']['Monthly_MAE']:.2f}"
    )
    return "TRAINED"


def run_pipeline(
    segment_ids: Sequence[int],
    processed_dir: Path,
    raw_dir: Path,
    horizon: int,
    estimator,
    store,
    standardized_sink,
    raw_sink,
    holdout_sink=None,
    failures_sink=None,
    marker: str = SALES_MARKER,
    quiet: bool = QUIET_MODEL_OUTPUT,
) -> dict:
    """Process segments one at a time; a failing segment is recorded and skipped."""
    for sink in (standardized_sink, raw_sink, holdout_sink, failures_sink):
        if sink is not None:
            sink.ensure_header()

    summary = {"trained": [], "skipped": [], "failed": []}
    total = len(segment_ids)
    for idx, segment_id in enumerate(segment_ids, start=1):
        print(f"\n=== [{idx}/{total}] Processing segment: {segment_id} ===")
        try:
            status = process_segment(
                segment_id,
                processed_dir,
                raw_dir,
                horizon,
                estimator,
                store,
                standardized_sink,
                raw_sink,
                holdout_sink=holdout_sink,
                marker=marker,
                quiet=quiet,
            )
        except Exception as exc:
            print(f"  -> FAILED ({type(exc).__name__}): {exc}")
            failure = {"Segment": segment_id, "Error_Type": type(exc).__name__, "Message": str(exc)}
            summary["failed"].append(failure)
            if failures_sink is not None:
                failures_sink.append(failure)
            continue

        summary["trained" if status == "TRAINED" else "skipped"].append(segment_id)

    print(
        f"\nSegments trained: {len(summary['trained'])} | "
        f"skipped: {len(summary['skipped'])} | failed: {len(summary['failed'])}"
    )
    for failure in summary["failed"]:
        print(f"  - Segment {failure['Segment']}: {failure['Error_Type']}: {failure['Message']}")
    return summary


def main(argv=None):
    args = _parse_args(argv)

    print(f"Scanning processed train files in {args.processed_dir}...")
    segment_ids = discover_segments(args.processed_dir)
    if args.segments:
        wanted = set(args.segments)
        segment_ids = [s for s in segment_ids if s in wanted]
    print(f"Found {len(segment_ids)} segments.")

    estimator = configured_estimator(
        backend=args.estimator,
        selection=args.selection,
        p=args.p,
        s=args.s,
        strict_convergence=args.strict_convergence,
    )
    print(f"Estimator: {args.estimator} (selection={args.selection}), horizon={args.horizon}")

    sinks = output_sinks(args.output_dir)
    summary = run_pipeline(
        segment_ids,
        args.processed_dir,
        args.raw_dir,
        args.horizon,
        estimator,
        JoblibModelStore(args.model_dir),
        sinks["standardized"],
        sinks["raw"],
        holdout_sink=sinks["holdout"],
        failures_sink=sinks["failures"],
        marker=args.sales_marker,
        quiet=not args.verbose,
    )

    print(f"\nDone. Evaluation tables written to: {Path(args.output_dir).resolve()}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    t0 = time.perf_counter()
    exit_code = main()
    elapsed = time.perf_counter() - t0
    print(f"\nTotal runtime: {elapsed:,.2f} seconds")
    raise SystemExit(exit_code)
