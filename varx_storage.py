"""Model checkpoints and append-only evaluation tables."""

from pathlib import Path
from typing import Dict, List, Sequence, Union

import joblib
import pandas as pd


MODEL_FILE_SUFFIX = "_sparse_varx_models.pkl"


class JoblibModelStore:
    """One joblib file per segment; its presence marks the segment as trained."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, segment_id) -> Path:
        return self.directory / f"{segment_id}{MODEL_FILE_SUFFIX}"

    def exists(self, segment_id) -> bool:
        return self.path_for(segment_id).exists()

    def save(self, segment_id, bundle: dict) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(segment_id)
        joblib.dump(bundle, path)
        return path

    def load(self, segment_id) -> dict:
        return joblib.load(self.path_for(segment_id))


class InMemoryModelStore:
    def __init__(self):
        self.bundles: Dict[object, dict] = {}

    def exists(self, segment_id) -> bool:
        return segment_id in self.bundles

    def save(self, segment_id, bundle: dict):
        self.bundles[segment_id] = bundle
        return segment_id

    def load(self, segment_id) -> dict:
        return self.bundles[segment_id]


class CsvEvaluationSink:
    """Append-only CSV table; the header is written once per file."""

    def __init__(self, path: Union[str, Path], columns: Sequence[str]):
        self.path = Path(path)
        self.columns = list(columns)

    def ensure_header(self):
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame(columns=self.columns).to_csv(self.path, index=False)

    def append(self, row: dict):
        self.ensure_header()
        pd.DataFrame([row], columns=self.columns).to_csv(self.path, mode="a", header=False, index=False)

    def to_frame(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame(columns=self.columns)
        return pd.read_csv(self.path)


class InMemoryEvaluationSink:
    def __init__(self, columns: Sequence[str]):
        self.columns = list(columns)
        self.rows: List[dict] = []

    def ensure_header(self):
        pass

    def append(self, row: dict):
        self.rows.append({col: row.get(col) for col in self.columns})

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.columns)
