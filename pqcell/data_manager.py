"""
Data Manager Module

Handles loading, validation and the read surface of expression matrices
"""

import os
import logging
import h5py
import numpy as np
import pandas as pd
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Dict, Any, Iterable, Optional, Sequence, Tuple

from .errors import DimensionMismatch
from .utils import ensure_dir


@dataclass(frozen=True)
class ExpressionView:
    """Features x samples expression matrix with row and column annotations"""

    feature_ids: Tuple[str, ...]
    values: np.ndarray
    sample_names: Optional[Tuple[str, ...]] = None
    sample_labels: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float32)
        if values.ndim != 2:
            raise DimensionMismatch(f"Expression values must be 2-D, got shape {values.shape}")
        feature_ids = tuple(str(f) for f in self.feature_ids)
        if len(feature_ids) != values.shape[0]:
            raise DimensionMismatch(
                f"{len(feature_ids)} feature ids for a matrix with {values.shape[0]} rows")
        if len(set(feature_ids)) != len(feature_ids):
            raise ValueError("Feature ids must be unique within an expression matrix")

        object.__setattr__(self, "values", values)
        object.__setattr__(self, "feature_ids", feature_ids)
        for field_name in ("sample_names", "sample_labels"):
            column_values = getattr(self, field_name)
            if column_values is None:
                continue
            column_values = tuple(str(v) for v in column_values)
            if len(column_values) != values.shape[1]:
                raise DimensionMismatch(
                    f"{len(column_values)} {field_name} for a matrix with {values.shape[1]} columns")
            object.__setattr__(self, field_name, column_values)

    @property
    def n_features(self) -> int:
        return self.values.shape[0]

    @property
    def n_samples(self) -> int:
        return self.values.shape[1]

    @cached_property
    def feature_positions(self) -> Dict[str, int]:
        """Feature id -> row index, built once per view"""
        return {feature: row for row, feature in enumerate(self.feature_ids)}

    def names(self) -> Tuple[str, ...]:
        """Sample names, defaulting to the column positions"""
        if self.sample_names is not None:
            return self.sample_names
        return tuple(str(i) for i in range(self.n_samples))

    def subset_features(self, feature_ids: Iterable[str]) -> "ExpressionView":
        """Keep the given features, preserving the original row order"""
        keep = set(feature_ids)
        rows = [row for row, feature in enumerate(self.feature_ids) if feature in keep]
        return replace(self,
                       feature_ids=tuple(self.feature_ids[row] for row in rows),
                       values=self.values[rows, :])

    def with_labels(self, labels: Sequence[str]) -> "ExpressionView":
        return replace(self, sample_labels=tuple(labels))


class DataManager:
    """Expression dataset loader for CSV/TSV, npz and HDF5 files"""

    def __init__(self):
        """Initialize data manager"""
        self.logger = logging.getLogger(__name__)

    def load_expression(self, matrix_path: str, metadata_path: Optional[str] = None,
                        label_column: str = "cell_type1") -> ExpressionView:
        """Load a features x samples matrix and optionally attach sample labels"""
        if not os.path.exists(matrix_path):
            raise FileNotFoundError(f"Expression file not found: {matrix_path}")

        self.logger.info(f"Loading expression matrix: {matrix_path}")
        suffix = self._suffix(matrix_path)
        if suffix in (".h5", ".hdf5"):
            view = self._load_hdf5(matrix_path)
        elif suffix == ".npz":
            view = self._load_npz(matrix_path)
        elif suffix in (".csv", ".tsv", ".txt"):
            view = self._load_table(matrix_path)
        else:
            raise ValueError(f"Unsupported expression file format: {matrix_path}")

        if metadata_path:
            view = self._attach_labels(view, metadata_path, label_column)

        self._validate_data(view)

        self.logger.info("Expression matrix loaded:")
        self.logger.info(f"  Features: {view.n_features}")
        self.logger.info(f"  Samples: {view.n_samples}")
        self.logger.info(f"  Labelled: {view.sample_labels is not None}")
        return view

    def save_expression(self, view: ExpressionView, filepath: str) -> None:
        """Save an expression view to a compressed npz file"""
        ensure_dir(os.path.dirname(filepath))
        arrays = {
            "values": view.values,
            "feature_ids": np.array(view.feature_ids, dtype=str),
        }
        if view.sample_names is not None:
            arrays["sample_names"] = np.array(view.sample_names, dtype=str)
        if view.sample_labels is not None:
            arrays["sample_labels"] = np.array(view.sample_labels, dtype=str)
        np.savez_compressed(filepath, **arrays)
        self.logger.info(f"Expression matrix saved: {filepath}")

    @staticmethod
    def _suffix(path: str) -> str:
        name = path[:-3] if path.endswith(".gz") else path
        return os.path.splitext(name)[1].lower()

    def _load_table(self, filepath: str) -> ExpressionView:
        """Load delimited text format (features as rows, first column holds ids)"""
        sep = "," if self._suffix(filepath) == ".csv" else "\t"
        frame = pd.read_csv(filepath, sep=sep, index_col=0)
        return ExpressionView(
            feature_ids=tuple(frame.index.astype(str)),
            values=frame.to_numpy(dtype=np.float32),
            sample_names=tuple(frame.columns.astype(str)),
        )

    def _load_npz(self, filepath: str) -> ExpressionView:
        """Load npz format written by save_expression"""
        with np.load(filepath, allow_pickle=False) as data:
            sample_names = data["sample_names"] if "sample_names" in data.files else None
            sample_labels = data["sample_labels"] if "sample_labels" in data.files else None
            return ExpressionView(
                feature_ids=tuple(data["feature_ids"].tolist()),
                values=data["values"],
                sample_names=None if sample_names is None else tuple(sample_names.tolist()),
                sample_labels=None if sample_labels is None else tuple(sample_labels.tolist()),
            )

    def _load_hdf5(self, filepath: str) -> ExpressionView:
        """Load HDF5 format with matrix/features/samples/labels datasets"""
        def _strings(dataset) -> Tuple[str, ...]:
            return tuple(v.decode("utf-8") if isinstance(v, bytes) else str(v) for v in dataset[()])

        with h5py.File(filepath, 'r') as f:
            for key in ("matrix", "features"):
                if key not in f:
                    raise ValueError(f"Missing HDF5 key: {key}")
            return ExpressionView(
                feature_ids=_strings(f["features"]),
                values=np.array(f["matrix"], dtype=np.float32),
                sample_names=_strings(f["samples"]) if "samples" in f else None,
                sample_labels=_strings(f["labels"]) if "labels" in f else None,
            )

    def _attach_labels(self, view: ExpressionView, metadata_path: str,
                       label_column: str) -> ExpressionView:
        """Attach labels from a sample metadata table keyed by sample name"""
        sep = "," if self._suffix(metadata_path) == ".csv" else "\t"
        metadata = pd.read_csv(metadata_path, sep=sep, index_col=0)
        if label_column not in metadata.columns:
            raise ValueError(f"Label column '{label_column}' not found in {metadata_path}")

        metadata.index = metadata.index.astype(str)
        missing = [name for name in view.names() if name not in metadata.index]
        if missing:
            raise ValueError(f"{len(missing)} samples have no metadata row, e.g. {missing[:3]}")

        labels = metadata.loc[list(view.names()), label_column].astype(str)
        self.logger.info(f"Attached labels from column '{label_column}' "
                         f"({labels.nunique()} distinct)")
        return view.with_labels(labels.tolist())

    def _validate_data(self, view: ExpressionView) -> None:
        """Validate data integrity"""
        if not np.all(np.isfinite(view.values)):
            raise ValueError("Expression matrix contains NaN or infinite values")
        if view.values.size and view.values.min() < 0:
            self.logger.warning("Expression matrix has negative values; "
                                "expected normalized non-negative expression")
        self.logger.info("Data validation passed")

    def get_dataset_stats(self, view: ExpressionView) -> Dict[str, Any]:
        """Get dataset statistics"""
        stats = {
            "num_features": view.n_features,
            "num_samples": view.n_samples,
            "data_type": str(view.values.dtype),
            "total_memory_mb": view.values.nbytes / 1024 / 1024,
            "zero_fraction": float(np.mean(view.values == 0)) if view.values.size else 0.0,
        }
        if view.sample_labels is not None:
            stats["num_labels"] = len(set(view.sample_labels))
        return stats
