"""Metric helpers shared by the trainer and the evaluator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping

import numpy as np

from ..core.activations import ActivationKind
from ..core.errors import ConfigError, ShapeMismatch
from ..core.matrix import Matrix
from .losses import Loss

METRICS = ("loss", "accuracy", "mae", "rmse")


@dataclass(frozen=True)
class MetricResult:
    name: str
    value: float


def default_metrics() -> List[str]:
    return list(METRICS)


def _correct(
    preds: np.ndarray,
    targs: np.ndarray,
    *,
    output_activation: ActivationKind,
    tolerance: float,
) -> np.ndarray:
    """Per-row correctness.

    Multi-column outputs compare argmax; a single sigmoid output is
    thresholded at 0.5; any other output is correct when every column is
    within ``tolerance`` of its target.
    """

    if preds.shape[1] > 1 and output_activation is not ActivationKind.IDENTITY:
        return np.argmax(preds, axis=1) == np.argmax(targs, axis=1)
    if preds.shape[1] == 1 and output_activation is ActivationKind.SIGMOID:
        return (preds[:, 0] >= 0.5) == (targs[:, 0] >= 0.5)
    return np.all(np.abs(preds - targs) < tolerance, axis=1)


def compute_metric(
    name: str,
    predictions: Matrix,
    targets: Matrix,
    *,
    loss: Loss | None = None,
    output_activation: ActivationKind = ActivationKind.IDENTITY,
    tolerance: float = 0.1,
) -> MetricResult:
    if predictions.shape != targets.shape:
        raise ShapeMismatch(
            f"Predictions {predictions.shape} do not match targets {targets.shape}"
        )
    key = name.lower()
    preds = predictions.data
    targs = targets.data
    if preds.shape[0] == 0:
        return MetricResult(name=key, value=float("nan"))
    if key == "loss":
        if loss is None:
            raise ConfigError("The loss metric needs a loss function")
        value, _ = loss(predictions, targets)
    elif key == "accuracy":
        hits = _correct(preds, targs, output_activation=output_activation, tolerance=tolerance)
        value = float(np.mean(hits))
    elif key == "mae":
        value = float(np.mean(np.abs(preds - targs)))
    elif key == "rmse":
        value = float(np.sqrt(np.mean((preds - targs) ** 2)))
    else:
        raise ConfigError(f"Unknown metric: {name}")
    return MetricResult(name=key, value=float(value))


def compute_metrics(
    names: Iterable[str],
    predictions: Matrix,
    targets: Matrix,
    *,
    loss: Loss | None = None,
    output_activation: ActivationKind = ActivationKind.IDENTITY,
    tolerance: float = 0.1,
) -> Mapping[str, float]:
    results: Dict[str, float] = {}
    for name in names:
        metric = compute_metric(
            name,
            predictions,
            targets,
            loss=loss,
            output_activation=output_activation,
            tolerance=tolerance,
        )
        results[metric.name] = metric.value
    return results


__all__ = ["METRICS", "MetricResult", "compute_metric", "compute_metrics", "default_metrics"]
