"""Forward-only evaluation and prediction over a stored checkpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from .core.backprop import predict as forward_predict
from .core.matrix import Matrix
from .core.network import Network
from .data.csv_dataset import Dataset, DatasetView, load_csv, load_features
from .training.checkpoint import Checkpoint, CheckpointStore
from .training.losses import REGISTRY as LOSS_REGISTRY
from .training.metrics import compute_metrics, default_metrics


@dataclass(frozen=True)
class EvaluationReport:
    split: str
    rows: int
    metrics: Mapping[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"split": self.split, "rows": self.rows, **self.metrics}


@dataclass(frozen=True)
class Predictions:
    outputs: Matrix
    output_names: tuple[str, ...]
    classes: tuple[str, ...] | None = None

    @property
    def predicted_classes(self) -> list[str] | None:
        if self.classes is None:
            return None
        idx = np.argmax(self.outputs.data, axis=1)
        return [self.classes[i] for i in idx]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.outputs.to_numpy(), columns=list(self.output_names))
        labels = self.predicted_classes
        if labels is not None:
            frame["predicted_class"] = labels
        return frame


def load_for_inference(path: str | Path, **store_options) -> Checkpoint:
    """Read ``path`` under the checkpoint lock and freeze its network."""

    checkpoint = CheckpointStore(path, **store_options).load()
    checkpoint.network.freeze()
    logger.debug(
        "Loaded {} (epoch {}, topology {})", path, checkpoint.epoch, checkpoint.topology.widths
    )
    return checkpoint


class Evaluator:
    """Compute loss and accuracy metrics for a frozen network."""

    def __init__(
        self,
        checkpoint: Checkpoint,
        *,
        loss: str | None = None,
        tolerance: float | None = None,
    ) -> None:
        self.checkpoint = checkpoint
        self.network: Network = checkpoint.network
        meta = checkpoint.metadata
        self.loss = LOSS_REGISTRY.resolve(
            loss or str(meta.get("loss", "auto")),
            output_activation=self.network.output_activation,
        )
        self.tolerance = float(tolerance if tolerance is not None else meta.get("tolerance", 0.1))

    def load_dataset(self, path: str | Path) -> Dataset:
        meta = self.checkpoint.metadata
        return load_csv(
            path,
            label_columns=int(meta.get("label_columns", 1)),
            label_encoding=str(meta.get("label_encoding", "none")),
            classes=meta.get("classes"),
        )

    def select(self, dataset: Dataset, split: str = "all") -> DatasetView:
        """Rebuild ``split`` with the seed and fractions used in training."""

        meta = self.checkpoint.metadata
        splits = dataset.split(
            validation_split=float(meta.get("validation_split", 0.0)),
            test_split=float(meta.get("test_split", 0.0)),
            seed=self.checkpoint.seed,
        )
        return splits.get(split)

    def evaluate(self, view: DatasetView) -> EvaluationReport:
        outputs = forward_predict(self.network, view.features)
        metrics = compute_metrics(
            default_metrics(),
            outputs,
            view.labels,
            loss=self.loss,
            output_activation=self.network.output_activation,
            tolerance=self.tolerance,
        )
        return EvaluationReport(split=view.name, rows=view.size, metrics=dict(metrics))


class Predictor:
    """Emit raw per-row outputs, plus class names for one-hot checkpoints."""

    def __init__(self, checkpoint: Checkpoint) -> None:
        self.checkpoint = checkpoint
        self.network: Network = checkpoint.network

    @property
    def classes(self) -> tuple[str, ...] | None:
        classes = self.checkpoint.metadata.get("classes")
        return tuple(classes) if classes else None

    def output_names(self) -> tuple[str, ...]:
        names: Sequence[str] | None = self.checkpoint.metadata.get("label_names")
        if names and len(names) == self.network.output_width:
            return tuple(names)
        return tuple(f"output_{i}" for i in range(self.network.output_width))

    def predict(self, features: Matrix) -> Predictions:
        outputs = forward_predict(self.network, features)
        return Predictions(outputs=outputs, output_names=self.output_names(), classes=self.classes)

    def predict_file(self, path: str | Path) -> Predictions:
        features, _ = load_features(path, self.network.input_width)
        return self.predict(features)


def write_predictions(predictions: Predictions, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    predictions.to_frame().to_csv(path, index=False)
    return path


__all__ = [
    "EvaluationReport",
    "Evaluator",
    "Predictions",
    "Predictor",
    "load_for_inference",
    "write_predictions",
]
