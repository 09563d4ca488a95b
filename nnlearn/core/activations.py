"""Activation functions for nnlearn.

The activation set is closed, so dispatch goes through a table keyed by
:class:`ActivationKind` instead of a class hierarchy.  Each entry pairs a
forward function with its element-wise derivative; softmax has no
element-wise derivative and is back-propagated through its Jacobian.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np

from .errors import InvalidTopology, ShapeMismatch
from .matrix import Matrix
from .types import Array


class ActivationKind(str, Enum):
    IDENTITY = "identity"
    SIGMOID = "sigmoid"
    RELU = "relu"
    TANH = "tanh"
    SOFTMAX = "softmax"

    @classmethod
    def parse(cls, value: "ActivationKind | str") -> "ActivationKind":
        if isinstance(value, ActivationKind):
            return value
        key = str(value).strip().lower()
        if key == "linear":
            key = "identity"
        try:
            return cls(key)
        except ValueError as exc:
            names = ", ".join(kind.value for kind in cls)
            raise InvalidTopology(f"Unknown activation {value!r}; expected one of {names}") from exc


def identity(z: Array, temperature: float = 1.0) -> Array:
    return z.copy()


def sigmoid(z: Array, temperature: float = 1.0) -> Array:
    return 0.5 * (1.0 + np.tanh(0.5 * z))


def relu(z: Array, temperature: float = 1.0) -> Array:
    """Return the ReLU activation."""

    return np.maximum(z, 0.0)


def tanh(z: Array, temperature: float = 1.0) -> Array:
    return np.tanh(z)


def softmax(z: Array, temperature: float = 1.0) -> Array:
    """Row-wise softmax of ``z / temperature``."""

    scaled = z / temperature
    shifted = scaled - np.max(scaled, axis=1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=1, keepdims=True)


def _identity_deriv(z: Array, a: Array) -> Array:
    return np.ones_like(z)


def _sigmoid_deriv(z: Array, a: Array) -> Array:
    return a * (1.0 - a)


def _relu_deriv(z: Array, a: Array) -> Array:
    return (z > 0).astype(np.float64)


def _tanh_deriv(z: Array, a: Array) -> Array:
    return 1.0 - a * a


ForwardFn = Callable[[Array, float], Array]
DerivFn = Callable[[Array, Array], Array]


@dataclass(frozen=True)
class ActivationFns:
    forward: ForwardFn
    derivative: Optional[DerivFn]


ACTIVATIONS: Dict[ActivationKind, ActivationFns] = {
    ActivationKind.IDENTITY: ActivationFns(identity, _identity_deriv),
    ActivationKind.SIGMOID: ActivationFns(sigmoid, _sigmoid_deriv),
    ActivationKind.RELU: ActivationFns(relu, _relu_deriv),
    ActivationKind.TANH: ActivationFns(tanh, _tanh_deriv),
    ActivationKind.SOFTMAX: ActivationFns(softmax, None),
}


def activate(kind: ActivationKind, z: Matrix, temperature: float = 1.0) -> Matrix:
    fns = ACTIVATIONS[kind]
    return z.apply(lambda values: fns.forward(values, temperature))


def derivative(kind: ActivationKind, z: Matrix, a: Matrix) -> Matrix:
    """Element-wise ``da/dz``; undefined for softmax."""

    fns = ACTIVATIONS[kind]
    if fns.derivative is None:
        raise ValueError(f"{kind.value} has no element-wise derivative")
    return Matrix(fns.derivative(z.data, a.data))


def backward(
    kind: ActivationKind,
    z: Matrix,
    a: Matrix,
    grad_a: Matrix,
    temperature: float = 1.0,
) -> Matrix:
    """Map ``dL/da`` to ``dL/dz`` for one layer."""

    if kind is ActivationKind.SOFTMAX:
        if grad_a.shape != a.shape:
            raise ShapeMismatch(f"Gradient {grad_a.shape} does not match output {a.shape}")
        g = grad_a.data
        p = a.data
        dot = np.sum(g * p, axis=1, keepdims=True)
        return Matrix(p * (g - dot) / temperature)
    return grad_a * derivative(kind, z, a)


__all__ = [
    "ACTIVATIONS",
    "ActivationFns",
    "ActivationKind",
    "activate",
    "backward",
    "derivative",
    "identity",
    "relu",
    "sigmoid",
    "softmax",
    "tanh",
]
