import argparse
import time
from pathlib import Path

from varx_metrics import EVALUATION_ONLY_COLUMNS
from varx_segment_data import (
    SALES_MARKER,
    DataShapeError,
    discover_segments,
    load_segment,
    locate_segment_files,
)
from varx_storage import CsvEvaluationSink, JoblibModelStore

from sparse_varx_multi_segment_engine import (
    FAILURE_COLUMNS,
    FORECAST_HORIZON,
    MODEL_DIR,
    OUTPUT_DIR,
    PROCESSED_DIR,
    RAW_DIR,
    TEMP_EVAL_RAW_FILE,
    TEMP_EVAL_STANDARDIZED_FILE,
    TEMP_FAILURES_FILE,
    evaluate_models,
    evaluation_row,
    prepare_segment,
)


def evaluate_saved_segment(
    segment_id: int,
    processed_dir: Path,
    raw_dir: Path,
    store,
    standardized_sink,
    raw_sink,
    horizon=None,
    rounding: bool = False,
    marker: str = SALES_MARKER,
) -> dict:
    """
    Re-score a persisted model set; never refits.

    Sales are standardized with the statistics saved alongside the models,
    and the current tables must still have the layout the models were
    fitted on.
    """
    bundle = store.load(segment_id)
    horizon = horizon or bundle.get("horizon", FORECAST_HORIZON)
    data = load_segment(locate_segment_files(segment_id, processed_dir, raw_dir))
    prepared = prepare_segment(
        data, horizon, marker, y_std=bundle["y_std"], y_mean=bundle["y_mean"]
    )

    if prepared.boundary != bundle["boundary"] or prepared.endog_columns != list(bundle["endog_columns"]):
        raise DataShapeError(
            f"Segment {segment_id}: sales columns {prepared.endog_columns} do not match "
            f"the saved models' {list(bundle['endog_columns'])}"
        )
    if prepared.exog_columns != list(bundle["exog_columns"]):
        raise DataShapeError(
            f"Segment {segment_id}: regressor columns {prepared.exog_columns} do not match "
            f"the saved models' {list(bundle['exog_columns'])}"
        )

    result = evaluate_models(prepared, bundle["models"], horizon, rounding=rounding)

    n_vars = len(prepared.endog_columns)
    standardized_sink.append(evaluation_row(segment_id, result["metrics_std"], n_vars))
    raw_sink.append(evaluation_row(segment_id, result["metrics_raw"], n_vars))
    return result


def run_evaluation(
    segment_ids,
    processed_dir: Path,
    raw_dir: Path,
    store,
    standardized_sink,
    raw_sink,
    horizon=None,
    rounding: bool = False,
    marker: str = SALES_MARKER,
    failures_sink=None,
) -> dict:
    for sink in (standardized_sink, raw_sink, failures_sink):
        if sink is not None:
            sink.ensure_header()

    summary = {"evaluated": [], "no_model": [], "failed": []}
    for segment_id in segment_ids:
        if not store.exists(segment_id):
            print(f"  - Segment {segment_id}: no saved model, skipping.")
            summary["no_model"].append(segment_id)
            continue
        try:
            result = evaluate_saved_segment(
                segment_id,
                processed_dir,
                raw_dir,
                store,
                standardized_sink,
                raw_sink,
                horizon=horizon,
                rounding=rounding,
                marker=marker,
            )
        except Exception as exc:
            print(f"  - Segment {segment_id}: FAILED ({type(exc).__name__}): {exc}")
            failure = {"Segment": segment_id, "Error_Type": type(exc).__name__, "Message": str(exc)}
            summary["failed"].append(failure)
            if failures_sink is not None:
                failures_sink.append(failure)
            continue
        print(
            f"  - Segment {segment_id}: Weekly RMSE (raw) {result['metrics_raw']['Weekly_RMSE']:.2f}, "
            f"Monthly MAE (raw) {result['metrics_raw']['Monthly_MAE']:.2f}"
        )
        summary["evaluated"].append(segment_id)
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Re-evaluate persisted sparse VARX models without refitting."
    )
    parser.add_argument("--processed-dir", type=Path, default=PROCESSED_DIR)
    parser.add_argument("--raw-dir", type=Path, default=RAW_DIR)
    parser.add_argument("--model-dir", type=Path, default=MODEL_DIR)
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR)
    parser.add_argument(
        "--horizon",
        type=int,
        default=None,
        help="Forecast horizon (default: the horizon stored with each model).",
    )
    parser.add_argument(
        "--round",
        dest="rounding",
        action="store_true",
        help="Round raw actuals and forecasts to whole units before scoring.",
    )
    parser.add_argument("--sales-marker", default=SALES_MARKER)
    args = parser.parse_args(argv)

    segment_ids = discover_segments(args.processed_dir)
    print(f"Evaluating saved models for {len(segment_ids)} segments (rounding={args.rounding})...")

    summary = run_evaluation(
        segment_ids,
        args.processed_dir,
        args.raw_dir,
        JoblibModelStore(args.model_dir),
        CsvEvaluationSink(args.output_dir / TEMP_EVAL_STANDARDIZED_FILE, EVALUATION_ONLY_COLUMNS),
        CsvEvaluationSink(args.output_dir / TEMP_EVAL_RAW_FILE, EVALUATION_ONLY_COLUMNS),
        horizon=args.horizon,
        rounding=args.rounding,
        marker=args.sales_marker,
        failures_sink=CsvEvaluationSink(args.output_dir / TEMP_FAILURES_FILE, FAILURE_COLUMNS),
    )
    print(
        f"\nEvaluated: {len(summary['evaluated'])} | no model: {len(summary['no_model'])} "
        f"| failed: {len(summary['failed'])}"
    )
    for failure in summary["failed"]:
        print(f"  - Segment {failure['Segment']}: {failure['Error_Type']}: {failure['Message']}")
    print(f"Saved evaluation tables to {args.output_dir}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    t0 = time.perf_counter()
    exit_code = main()
    print(f"\nTotal runtime: {time.perf_counter() - t0:,.2f} seconds")
    raise SystemExit(exit_code)
