"""Hand-rolled forward and backward passes.

Row ``r`` of every matrix is one sample.  For layer ``i``::

    z_i = a_{i-1} · W_iᵀ + b_i
    a_i = act_i(z_i)

The backward pass walks the layers in reverse and returns, per layer, the
gradient of the batch-mean loss with respect to ``W_i`` and ``b_i``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np

from .activations import ActivationKind, activate
from .activations import backward as activation_backward
from .errors import NumericDivergence, ShapeMismatch
from .matrix import Matrix
from .network import Network
from .types import Batch, BatchResult, ForwardCache, Gradients, LayerGradients

if TYPE_CHECKING:  # pragma: no cover
    from ..training.losses import Loss

_CROSS_ENTROPY = {"cross_entropy", "ce"}


def forward(network: Network, inputs: Matrix) -> tuple[Matrix, ForwardCache]:
    """Run ``inputs`` through every layer, keeping values for backprop."""

    if inputs.cols != network.input_width:
        raise ShapeMismatch(
            f"Network expects {network.input_width} input columns, got {inputs.cols}"
        )
    layer_inputs: List[Matrix] = []
    pre_activations: List[Matrix] = []
    activations: List[Matrix] = []
    x = inputs
    for layer in network.layers:
        layer_inputs.append(x)
        z = (x @ layer.weights.T).add_row(layer.bias)
        a = activate(layer.activation, z, layer.temperature)
        pre_activations.append(z)
        activations.append(a)
        x = a
    cache = ForwardCache(
        layer_inputs=layer_inputs,
        pre_activations=pre_activations,
        activations=activations,
    )
    return x, cache


def predict(network: Network, inputs: Matrix) -> Matrix:
    """Forward pass without keeping intermediate values."""

    if inputs.cols != network.input_width:
        raise ShapeMismatch(
            f"Network expects {network.input_width} input columns, got {inputs.cols}"
        )
    x = inputs
    for layer in network.layers:
        x = activate(layer.activation, (x @ layer.weights.T).add_row(layer.bias), layer.temperature)
    return x


def backward(
    network: Network,
    cache: ForwardCache,
    targets: Matrix,
    loss: "Loss",
) -> tuple[float, Gradients]:
    """Return the batch loss and per-layer gradients averaged over rows."""

    output = cache.output
    rows = output.rows
    if rows == 0:
        raise ShapeMismatch("Cannot back-propagate an empty batch")
    loss_value, grad_output = loss(output, targets)

    last = network.layers[-1]
    if last.activation is ActivationKind.SOFTMAX and loss.name in _CROSS_ENTROPY:
        # softmax + cross-entropy collapse to p - y
        delta = (output - targets) / last.temperature
    else:
        delta = activation_backward(
            last.activation,
            cache.pre_activations[-1],
            output,
            grad_output,
            last.temperature,
        )

    grads: List[Optional[LayerGradients]] = [None] * len(network.layers)
    for idx in reversed(range(len(network.layers))):
        layer = network.layers[idx]
        grads[idx] = LayerGradients(
            weights=(delta.T @ cache.layer_inputs[idx]) / rows,
            bias=delta.sum_rows() / rows,
        )
        if idx == 0:
            break
        prev = network.layers[idx - 1]
        delta = activation_backward(
            prev.activation,
            cache.pre_activations[idx - 1],
            cache.activations[idx - 1],
            delta @ layer.weights,
            prev.temperature,
        )
    return loss_value, [g for g in grads if g is not None]


def ensure_finite(loss_value: float, grads: Gradients, *, context: str = "batch") -> None:
    """Raise :class:`NumericDivergence` if the loss or any gradient is non-finite."""

    if not np.isfinite(loss_value):
        raise NumericDivergence(f"Non-finite loss {loss_value!r} in {context}")
    for idx, grad in enumerate(grads):
        if not (grad.weights.is_finite() and grad.bias.is_finite()):
            raise NumericDivergence(f"Non-finite gradient for layer {idx} in {context}")


def compute_gradients(
    network: Network,
    batch: Batch,
    loss: "Loss",
    index: int = 0,
) -> BatchResult:
    """Forward + backward for one batch; reads ``network`` without mutating it."""

    _, cache = forward(network, batch.inputs)
    loss_value, grads = backward(network, cache, batch.targets, loss)
    ensure_finite(loss_value, grads, context=f"batch {index}")
    return BatchResult(index=index, rows=batch.size, loss=loss_value, gradients=grads)


def aggregate(results: Sequence[BatchResult]) -> tuple[float, Gradients, int]:
    """Row-weighted mean of batch results.

    Results are reduced in batch-index order so the outcome does not depend
    on which worker finished first.
    """

    if not results:
        raise ValueError("Nothing to aggregate")
    ordered = sorted(results, key=lambda r: r.index)
    total_rows = sum(r.rows for r in ordered)
    n_layers = len(ordered[0].gradients)
    weight_sums = [np.zeros(ordered[0].gradients[i].weights.shape) for i in range(n_layers)]
    bias_sums = [np.zeros(ordered[0].gradients[i].bias.shape) for i in range(n_layers)]
    loss_sum = 0.0
    for result in ordered:
        share = result.rows
        loss_sum += result.loss * share
        for i, grad in enumerate(result.gradients):
            if grad.weights.shape != weight_sums[i].shape:
                raise ShapeMismatch(f"Gradient shapes differ across batches for layer {i}")
            weight_sums[i] += grad.weights.data * share
            bias_sums[i] += grad.bias.data * share
    grads = [
        LayerGradients(Matrix(w / total_rows), Matrix(b / total_rows))
        for w, b in zip(weight_sums, bias_sums)
    ]
    return loss_sum / total_rows, grads, total_rows


__all__ = ["aggregate", "backward", "compute_gradients", "ensure_finite", "forward", "predict"]
