"""Loss registry used by the forward/backward engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

import numpy as np

from ..core.activations import ActivationKind
from ..core.errors import ConfigError, ShapeMismatch
from ..core.matrix import Matrix

LossFn = Callable[[Matrix, Matrix], tuple[float, Matrix]]


@dataclass(frozen=True)
class Loss:
    """Loss wrapper returning the mean loss and the per-row ``dL/dy``.

    The gradient is *not* divided by the batch size; the engine averages
    parameter gradients over the batch rows.
    """

    name: str
    fn: LossFn

    def __call__(self, predictions: Matrix, targets: Matrix) -> tuple[float, Matrix]:
        if predictions.shape != targets.shape:
            raise ShapeMismatch(
                f"Predictions {predictions.shape} do not match targets {targets.shape}"
            )
        return self.fn(predictions, targets)


class LossRegistry:
    """Central registry for loss functions."""

    def __init__(self) -> None:
        self._registry: Dict[str, Loss] = {}

    def register(self, name: str, fn: LossFn) -> None:
        self._registry[name] = Loss(name, fn)

    def get(self, name: str) -> Loss:
        try:
            return self._registry[name]
        except KeyError as exc:
            raise ConfigError(f"Unknown loss: {name}") from exc

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def resolve(self, name: str, *, output_activation: ActivationKind) -> Loss:
        """Resolve ``auto``: softmax pairs with cross-entropy, else MSE."""

        if name == "auto":
            name = "cross_entropy" if output_activation is ActivationKind.SOFTMAX else "mse"
        if name not in self._registry:
            available = ", ".join(sorted(self._registry))
            raise ConfigError(f"Unknown loss {name!r}. Available losses: {available}")
        return self._registry[name]


REGISTRY = LossRegistry()

_EPS = 1e-12


def _mse(pred: Matrix, target: Matrix) -> tuple[float, Matrix]:
    diff = pred.data - target.data
    cols = max(1, pred.cols)
    loss = float(np.mean(np.sum(np.square(diff), axis=1) / cols)) if pred.rows else 0.0
    return loss, Matrix(2.0 * diff / cols)


def _cross_entropy(pred: Matrix, target: Matrix) -> tuple[float, Matrix]:
    probs = np.clip(pred.data, _EPS, 1.0)
    y = target.data
    loss = float(-np.mean(np.sum(y * np.log(probs), axis=1))) if pred.rows else 0.0
    return loss, Matrix(-y / probs)


REGISTRY.register("mse", _mse)
REGISTRY.register("cross_entropy", _cross_entropy)
# Short alias matching common config spelling
REGISTRY.register("ce", _cross_entropy)

__all__ = ["Loss", "LossRegistry", "REGISTRY"]
