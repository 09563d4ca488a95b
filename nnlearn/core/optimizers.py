"""Optimizers that apply layer gradients to a network in place."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Protocol

import numpy as np

from .errors import ConfigError, ShapeMismatch
from .matrix import Matrix
from .network import Network
from .types import Gradients


@dataclass
class OptimizerState:
    """Serializable optimizer snapshot stored in checkpoints."""

    name: str
    learning_rate: float
    steps: int = 0
    hyper: Dict[str, float] = field(default_factory=dict)
    slots: Dict[str, np.ndarray] = field(default_factory=dict)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OptimizerState):
            return NotImplemented
        return (
            self.name == other.name
            and self.learning_rate == other.learning_rate
            and self.steps == other.steps
            and self.hyper == other.hyper
            and self.slots.keys() == other.slots.keys()
            and all(np.array_equal(v, other.slots[k]) for k, v in self.slots.items())
        )


class Optimizer(Protocol):
    name: str
    learning_rate: float

    def step(self, network: Network, grads: Gradients) -> None:
        """Apply ``grads`` to ``network`` in place."""

    def scale_learning_rate(self, factor: float) -> None:
        """Multiply the learning rate by ``factor``."""

    def state_dict(self) -> OptimizerState:
        """Return a copy of the optimizer state."""

    def load_state_dict(self, state: OptimizerState) -> None:
        """Restore state produced by :meth:`state_dict`."""


def _check_gradients(network: Network, grads: Gradients) -> None:
    if len(grads) != len(network.layers):
        raise ShapeMismatch(
            f"Got gradients for {len(grads)} layers, network has {len(network.layers)}"
        )
    for idx, (layer, grad) in enumerate(zip(network.layers, grads)):
        if grad.weights.shape != layer.weights.shape or grad.bias.shape != layer.bias.shape:
            raise ShapeMismatch(f"Gradient shape does not match layer {idx}")


@dataclass
class SGDOptimizer:
    """Plain gradient descent: ``param -= learning_rate * grad``."""

    learning_rate: float
    steps: int = 0
    name: ClassVar[str] = "sgd"

    def __post_init__(self) -> None:
        if not self.learning_rate > 0:
            raise ConfigError(f"learning_rate must be positive, got {self.learning_rate}")
        self._slots: Dict[str, np.ndarray] = {}

    def step(self, network: Network, grads: Gradients) -> None:
        _check_gradients(network, grads)
        self.steps += 1
        for idx, (layer, grad) in enumerate(zip(network.layers, grads)):
            layer.weights -= self._delta(f"w{idx}", grad.weights)
            layer.bias -= self._delta(f"b{idx}", grad.bias)

    def _delta(self, key: str, grad: Matrix) -> Matrix:
        return grad * self.learning_rate

    def scale_learning_rate(self, factor: float) -> None:
        self.learning_rate *= factor

    def _hyper(self) -> Dict[str, float]:
        return {}

    def state_dict(self) -> OptimizerState:
        return OptimizerState(
            name=self.name,
            learning_rate=float(self.learning_rate),
            steps=int(self.steps),
            hyper=self._hyper(),
            slots={key: value.copy() for key, value in self._slots.items()},
        )

    def load_state_dict(self, state: OptimizerState) -> None:
        if state.name != self.name:
            raise ConfigError(f"Cannot load {state.name!r} state into {self.name!r} optimizer")
        self.learning_rate = float(state.learning_rate)
        self.steps = int(state.steps)
        self._slots = {key: np.array(value, dtype=np.float64) for key, value in state.slots.items()}


@dataclass
class MomentumOptimizer(SGDOptimizer):
    """Heavy-ball momentum: ``v = μ·v + g; param -= lr·v``."""

    momentum: float = 0.9
    name: ClassVar[str] = "momentum"

    def _delta(self, key: str, grad: Matrix) -> Matrix:
        velocity = self._slots.get(f"v_{key}")
        if velocity is None:
            velocity = np.zeros(grad.shape)
        velocity = self.momentum * velocity + grad.data
        self._slots[f"v_{key}"] = velocity
        return Matrix(self.learning_rate * velocity)

    def _hyper(self) -> Dict[str, float]:
        return {"momentum": float(self.momentum)}


@dataclass
class AdamOptimizer(SGDOptimizer):
    """Adam with bias-corrected first and second moments."""

    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    name: ClassVar[str] = "adam"

    def _delta(self, key: str, grad: Matrix) -> Matrix:
        g = grad.data
        m = self._slots.get(f"m_{key}")
        v = self._slots.get(f"v_{key}")
        if m is None or v is None:
            m = np.zeros(grad.shape)
            v = np.zeros(grad.shape)
        m = self.beta1 * m + (1.0 - self.beta1) * g
        v = self.beta2 * v + (1.0 - self.beta2) * g * g
        self._slots[f"m_{key}"] = m
        self._slots[f"v_{key}"] = v
        m_hat = m / (1.0 - self.beta1**self.steps)
        v_hat = v / (1.0 - self.beta2**self.steps)
        return Matrix(self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon))

    def _hyper(self) -> Dict[str, float]:
        return {
            "beta1": float(self.beta1),
            "beta2": float(self.beta2),
            "epsilon": float(self.epsilon),
        }


_OPTIMIZERS = {
    SGDOptimizer.name: SGDOptimizer,
    MomentumOptimizer.name: MomentumOptimizer,
    AdamOptimizer.name: AdamOptimizer,
}


def build_optimizer(name: str, learning_rate: float, **hyper: Any) -> SGDOptimizer:
    key = str(name).lower()
    if key not in _OPTIMIZERS:
        available = ", ".join(sorted(_OPTIMIZERS))
        raise ConfigError(f"Unknown optimizer {name!r}. Available optimizers: {available}")
    try:
        return _OPTIMIZERS[key](learning_rate=float(learning_rate), **hyper)
    except TypeError as exc:
        raise ConfigError(f"Invalid options for optimizer {key!r}: {exc}") from exc


def optimizer_from_state(state: OptimizerState) -> SGDOptimizer:
    optimizer = build_optimizer(state.name, state.learning_rate, **state.hyper)
    optimizer.load_state_dict(state)
    return optimizer


__all__ = [
    "AdamOptimizer",
    "MomentumOptimizer",
    "Optimizer",
    "OptimizerState",
    "SGDOptimizer",
    "build_optimizer",
    "optimizer_from_state",
]
