import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np
import pandas as pd


SALES_MARKER = "Sales"
TRAIN_FILE_PATTERN = re.compile(r"^(\d+) Train\.csv$")
TRAIN_SUFFIX = " Train.csv"
TEST_SUFFIX = " Test.csv"


class SegmentError(Exception):
    """Base class for failures that stop processing of a single segment."""


class DataShapeError(SegmentError, ValueError):
    pass


class MissingFileError(SegmentError, FileNotFoundError):
    pass


@dataclass
class SegmentFiles:
    segment_id: int
    train: Path
    test: Path
    raw_train: Path
    raw_test: Path


@dataclass
class SegmentData:
    segment_id: int
    train: pd.DataFrame
    test: pd.DataFrame
    raw_train: pd.DataFrame
    raw_test: pd.DataFrame


# ===========================
# INDEX LOCATOR
# ===========================

def endogenous_boundary(columns: Sequence[str], marker: str = SALES_MARKER) -> int:
    """
    Number of sales columns + 1.

    Column 0 is the identifier, so endogenous columns are [1, boundary) and
    exogenous columns are [boundary, ncols). Returns 1 if nothing matches.
    """
    return sum(1 for name in columns if marker in str(name)) + 1


def split_columns(df: pd.DataFrame, boundary: int) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Return (endogenous, exogenous) blocks, dropping the identifier column."""
    return df.iloc[:, 1:boundary], df.iloc[:, boundary:]


# ===========================
# STANDARDIZER
# ===========================

def standardize(values) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Column-wise z-score with the sample (n-1) standard deviation.

    Returns (standardized, std, mean). Zero-variance columns come back as NaN
    with std = 0; callers decide what to do with them.
    """
    arr = np.asarray(values, dtype=float)
    mean = arr.mean(axis=0)
    std = arr.std(axis=0, ddof=1)
    return apply_standardization(arr, std, mean), std, mean


def apply_standardization(values, std: np.ndarray, mean: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (arr - mean) / std


def destandardize(values, std: np.ndarray, mean: np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype=float) * std + mean


def zero_degenerate(values: np.ndarray, std: np.ndarray) -> np.ndarray:
    """Regressors without variation carry no signal: columns with std == 0 -> 0."""
    arr = np.array(values, dtype=float)
    flat = np.asarray(std, dtype=float) == 0
    arr[:, flat] = 0.0
    return arr


def undifference(forecast: np.ndarray, last_level: np.ndarray) -> np.ndarray:
    """Invert first-order differencing by cumulating from the last known level."""
    return np.cumsum(np.asarray(forecast, dtype=float), axis=0) + np.asarray(last_level, dtype=float)


# ===========================
# FILE DISCOVERY / LOADING
# ===========================

def discover_segments(processed_dir: Union[str, Path]) -> List[int]:
    """Segment ids with a processed train file, ascending."""
    ids = []
    for name in os.listdir(processed_dir):
        match = TRAIN_FILE_PATTERN.match(name)
        if match:
            ids.append(int(match.group(1)))
    return sorted(ids)


def locate_segment_files(
    segment_id: int,
    processed_dir: Union[str, Path],
    raw_dir: Union[str, Path],
) -> SegmentFiles:
    processed_dir = Path(processed_dir)
    raw_dir = Path(raw_dir)
    files = SegmentFiles(
        segment_id=segment_id,
        train=processed_dir / f"{segment_id}{TRAIN_SUFFIX}",
        test=processed_dir / f"{segment_id}{TEST_SUFFIX}",
        raw_train=raw_dir / f"{segment_id}{TRAIN_SUFFIX}",
        raw_test=raw_dir / f"{segment_id}{TEST_SUFFIX}",
    )
    missing = [str(p) for p in (files.train, files.test, files.raw_train, files.raw_test) if not p.exists()]
    if missing:
        raise MissingFileError(f"Segment {segment_id}: missing input file(s): {missing}")
    return files


def load_segment(files: SegmentFiles) -> SegmentData:
    return SegmentData(
        segment_id=files.segment_id,
        train=pd.read_csv(files.train),
        test=pd.read_csv(files.test),
        raw_train=pd.read_csv(files.raw_train),
        raw_test=pd.read_csv(files.raw_test),
    )


def validate_segment(data: SegmentData, horizon: int, marker: str = SALES_MARKER) -> int:
    """
    Check that the four tables agree on variable layout, have enough test
    rows and no missing values where they are used, and return the
    endogenous boundary.
    """
    reference = list(data.train.columns)
    for label, df in [("test", data.test), ("raw train", data.raw_train), ("raw test", data.raw_test)]:
        if list(df.columns) != reference:
            raise DataShapeError(
                f"Segment {data.segment_id}: {label} columns do not match train columns"
            )

    boundary = endogenous_boundary(reference, marker)
    if boundary <= 1:
        raise DataShapeError(
            f"Segment {data.segment_id}: no column contains the sales marker '{marker}'"
        )

    if len(data.test) < horizon or len(data.raw_test) < horizon:
        raise DataShapeError(
            f"Segment {data.segment_id}: test tables need at least {horizon} rows "
            f"(got {len(data.test)} / {len(data.raw_test)})"
        )
    if data.raw_train.empty:
        raise DataShapeError(f"Segment {data.segment_id}: raw train table is empty")

    # every cell that feeds the fit or the scoring must be present
    checks = [
        ("train", data.train.iloc[:, 1:]),
        ("raw train", data.raw_train.iloc[:, 1:boundary]),
        ("test", data.test.iloc[:horizon, 1:boundary]),
        ("raw test", data.raw_test.iloc[:horizon, 1:boundary]),
    ]
    for label, block in checks:
        has_nan = block.isna().any()
        missing = has_nan[has_nan].index.tolist()
        if missing:
            raise DataShapeError(
                f"Segment {data.segment_id}: missing values in {label} column(s): {missing}"
            )
    return boundary
