"""CSV ingestion into feature/label matrices."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from sklearn.preprocessing import LabelEncoder

from ..core.errors import ConfigError, RowParseError, ShapeMismatch
from ..core.matrix import Matrix
from ..core.types import Batch
from .utils import BatchPlan, SplitIndices, deterministic_split

LABEL_ENCODINGS = ("none", "onehot")
SPLITS = ("train", "validation", "test")

_LINE_RE = re.compile(r"line (\d+)")


@dataclass(frozen=True)
class Dataset:
    """Row-aligned feature and label matrices."""

    features: Matrix
    labels: Matrix
    feature_names: tuple[str, ...] = ()
    label_names: tuple[str, ...] = ()
    classes: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.features.rows != self.labels.rows:
            raise ShapeMismatch(
                f"{self.features.rows} feature rows but {self.labels.rows} label rows"
            )

    @property
    def rows(self) -> int:
        return self.features.rows

    def view(self, indices: Sequence[int] | np.ndarray, name: str = "all") -> "DatasetView":
        return DatasetView(self, np.asarray(indices, dtype=np.int64), name)

    def all(self) -> "DatasetView":
        return self.view(np.arange(self.rows), "all")

    def split(
        self,
        *,
        validation_split: float = 0.1,
        test_split: float = 0.0,
        seed: int = 0,
    ) -> "DatasetSplits":
        indices = deterministic_split(
            self.rows, validation_split=validation_split, test_split=test_split, seed=seed
        )
        return DatasetSplits(self, indices)


@dataclass(frozen=True)
class DatasetView:
    """A named row subset of a :class:`Dataset`."""

    dataset: Dataset
    indices: np.ndarray
    name: str = "all"

    @property
    def size(self) -> int:
        return int(self.indices.size)

    @property
    def features(self) -> Matrix:
        return self.dataset.features.select_rows(self.indices)

    @property
    def labels(self) -> Matrix:
        return self.dataset.labels.select_rows(self.indices)

    def batch(self, rows: np.ndarray) -> Batch:
        """Materialise the rows named by ``rows`` (dataset-level indices)."""

        return Batch(
            indices=rows,
            inputs=self.dataset.features.select_rows(rows),
            targets=self.dataset.labels.select_rows(rows),
        )

    def batch_plan(
        self,
        batch_size: int,
        *,
        shuffle: bool = False,
        seed: int = 0,
        epoch: int = 0,
    ) -> BatchPlan:
        return BatchPlan(self.indices, batch_size, shuffle=shuffle, seed=seed, epoch=epoch)


@dataclass(frozen=True)
class DatasetSplits:
    dataset: Dataset
    indices: SplitIndices

    @property
    def train(self) -> DatasetView:
        return self.dataset.view(self.indices.train, "train")

    @property
    def validation(self) -> DatasetView:
        return self.dataset.view(self.indices.validation, "validation")

    @property
    def test(self) -> DatasetView:
        return self.dataset.view(self.indices.test, "test")

    def get(self, name: str) -> DatasetView:
        if name == "all":
            return self.dataset.all()
        if name not in SPLITS:
            raise ConfigError(f"Unknown split {name!r}; expected all, {', '.join(SPLITS)}")
        return getattr(self, name)

    @property
    def sizes(self) -> Mapping[str, int]:
        return self.indices.sizes


def _read_frame(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise ConfigError(f"Dataset file not found: {path}")
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
    except pd.errors.EmptyDataError as exc:
        raise ConfigError(f"Dataset file {path} is empty") from exc
    except pd.errors.ParserError as exc:
        match = _LINE_RE.search(str(exc))
        # line 1 is the header
        row = int(match.group(1)) - 2 if match else -1
        raise RowParseError(row, f"malformed CSV row ({exc})") from exc
    if frame.empty:
        raise ConfigError(f"Dataset file {path} has no data rows")
    return frame


def _to_numeric(frame: pd.DataFrame) -> np.ndarray:
    """Convert every cell to float, failing on the first bad row."""

    numeric = frame.apply(pd.to_numeric, errors="coerce")
    values = numeric.to_numpy(dtype=np.float64)
    bad = ~np.isfinite(values)
    if bad.any():
        row, col = (int(v) for v in np.argwhere(bad)[0])
        raw = frame.iat[row, col]
        raise RowParseError(
            row,
            f"expected a finite number, got {raw!r}",
            column=str(frame.columns[col]),
        )
    return values


def _encode_classes(
    column: pd.Series, classes: Sequence[str] | None
) -> tuple[np.ndarray, tuple[str, ...]]:
    raw = column.map(lambda v: v.strip() if isinstance(v, str) else v)
    missing = raw.map(lambda v: not isinstance(v, str) or v == "").to_numpy()
    if missing.any():
        row = int(np.argmax(missing))
        raise RowParseError(row, "missing class label", column=str(column.name))
    encoder = LabelEncoder()
    if classes is None:
        encoded = encoder.fit_transform(raw.to_numpy())
    else:
        encoder.classes_ = np.asarray(list(classes), dtype=object)
        known = raw.isin(set(classes)).to_numpy()
        if not known.all():
            row = int(np.argmin(known))
            raise RowParseError(
                row, f"unknown class label {raw.iat[row]!r}", column=str(column.name)
            )
        encoded = encoder.transform(raw.to_numpy())
    names = tuple(str(c) for c in encoder.classes_)
    one_hot = np.eye(len(names), dtype=np.float64)[np.asarray(encoded, dtype=np.int64)]
    return one_hot, names


def load_csv(
    path: str | Path,
    *,
    label_columns: int = 1,
    label_encoding: str = "none",
    classes: Sequence[str] | None = None,
) -> Dataset:
    """Load a CSV whose last ``label_columns`` columns are labels.

    With ``label_encoding="onehot"`` the single label column holds class
    names which are one-hot encoded; pass ``classes`` to reuse an existing
    class order (for example the one stored in a checkpoint).
    """

    if label_encoding not in LABEL_ENCODINGS:
        raise ConfigError(
            f"label_encoding must be one of {', '.join(LABEL_ENCODINGS)}, got {label_encoding!r}"
        )
    path = Path(path)
    frame = _read_frame(path)
    n_cols = frame.shape[1]
    if not 1 <= label_columns < n_cols:
        raise ConfigError(
            f"label_columns={label_columns} leaves no features in a {n_cols}-column CSV"
        )
    if label_encoding == "onehot" and label_columns != 1:
        raise ConfigError("onehot label encoding requires exactly one label column")

    feature_frame = frame.iloc[:, : n_cols - label_columns]
    label_frame = frame.iloc[:, n_cols - label_columns :]
    dataset_classes: tuple[str, ...] | None = None
    if label_encoding == "onehot":
        features = _to_numeric(feature_frame)
        labels, dataset_classes = _encode_classes(label_frame.iloc[:, 0], classes)
        label_names = tuple(f"{label_frame.columns[0]}={name}" for name in dataset_classes)
    else:
        values = _to_numeric(frame)
        features = values[:, : n_cols - label_columns]
        labels = values[:, n_cols - label_columns :]
        label_names = tuple(str(c) for c in label_frame.columns)

    return Dataset(
        features=Matrix(features),
        labels=Matrix(labels),
        feature_names=tuple(str(c) for c in feature_frame.columns),
        label_names=label_names,
        classes=dataset_classes,
    )


def load_features(path: str | Path, n_features: int) -> tuple[Matrix, tuple[str, ...]]:
    """Load only the first ``n_features`` columns (for prediction)."""

    path = Path(path)
    frame = _read_frame(path)
    if frame.shape[1] < n_features:
        raise ShapeMismatch(
            f"{path} has {frame.shape[1]} columns, the network expects {n_features} features"
        )
    feature_frame = frame.iloc[:, :n_features]
    values = _to_numeric(feature_frame)
    return Matrix(values), tuple(str(c) for c in feature_frame.columns)


__all__ = [
    "Dataset",
    "DatasetSplits",
    "DatasetView",
    "LABEL_ENCODINGS",
    "SPLITS",
    "load_csv",
    "load_features",
]
