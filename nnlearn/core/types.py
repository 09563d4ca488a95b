"""Core typing contracts for nnlearn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

import numpy as np

from .matrix import Matrix

Array = np.ndarray


@dataclass(frozen=True)
class Batch:
    """A row-subset of one dataset split, processed in one gradient step."""

    indices: Array
    inputs: Matrix
    targets: Matrix

    @property
    def size(self) -> int:
        return int(self.indices.size)


@dataclass
class ForwardCache:
    """Intermediate values captured during the forward pass.

    ``layer_inputs[i]`` is the input fed to layer ``i``; ``pre_activations``
    and ``activations`` hold ``W·x + b`` and its activated value per layer.
    """

    layer_inputs: List[Matrix]
    pre_activations: List[Matrix]
    activations: List[Matrix]

    @property
    def output(self) -> Matrix:
        return self.activations[-1]


@dataclass(frozen=True)
class LayerGradients:
    """Gradient of the loss with respect to one layer's parameters."""

    weights: Matrix
    bias: Matrix


Gradients = List[LayerGradients]


@dataclass(frozen=True)
class BatchResult:
    """Value returned by a worker for one batch."""

    index: int
    rows: int
    loss: float
    gradients: Gradients


__all__ = ["Array", "Batch", "BatchResult", "ForwardCache", "Gradients", "LayerGradients"]
