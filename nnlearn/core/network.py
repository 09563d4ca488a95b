"""Network model and the topology-driven generator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Sequence

import numpy as np

from .activations import ActivationKind
from .errors import InvalidTopology, ShapeMismatch
from .matrix import Matrix

DEFAULT_INIT_RANGE = 0.5


@dataclass(frozen=True)
class LayerSpec:
    """One ``(width, activation)`` entry of a topology."""

    width: int
    activation: ActivationKind = ActivationKind.IDENTITY
    temperature: float = 1.0

    def to_dict(self) -> dict:
        payload: dict = {"width": self.width, "activation": self.activation.value}
        if self.temperature != 1.0:
            payload["temperature"] = self.temperature
        return payload


@dataclass(frozen=True)
class Topology:
    """Ordered layer widths and activation kinds.

    The first entry describes the input width; its activation is ignored.
    Every following entry becomes one dense layer.
    """

    layers: tuple[LayerSpec, ...]

    def __post_init__(self) -> None:
        if len(self.layers) < 2:
            raise InvalidTopology(
                f"A topology needs at least two layers, got {len(self.layers)}"
            )
        for idx, spec in enumerate(self.layers):
            if not isinstance(spec.width, int) or isinstance(spec.width, bool) or spec.width <= 0:
                raise InvalidTopology(f"Layer {idx} has non-positive width {spec.width!r}")
            if spec.temperature <= 0:
                raise InvalidTopology(f"Layer {idx} has non-positive temperature")
            if spec.temperature != 1.0 and spec.activation is not ActivationKind.SOFTMAX:
                raise InvalidTopology(
                    f"Layer {idx} sets a temperature on a {spec.activation.value} activation; "
                    "only softmax layers take one"
                )

    @classmethod
    def parse(cls, entries: Iterable[object]) -> "Topology":
        """Build a topology from config entries.

        Accepted entry forms: ``{"width": 4, "activation": "relu"}``,
        ``[4, "relu"]`` or a bare integer width (identity activation).
        """

        if entries is None or isinstance(entries, (str, bytes)):
            raise InvalidTopology("Topology must be a sequence of layer entries")
        specs: List[LayerSpec] = []
        for idx, entry in enumerate(entries):
            specs.append(_parse_entry(idx, entry))
        if specs:
            specs[0] = LayerSpec(specs[0].width)
        return cls(tuple(specs))

    @property
    def widths(self) -> List[int]:
        return [spec.width for spec in self.layers]

    @property
    def input_width(self) -> int:
        return self.layers[0].width

    @property
    def output_width(self) -> int:
        return self.layers[-1].width

    @property
    def output_activation(self) -> ActivationKind:
        return self.layers[-1].activation

    def to_list(self) -> List[dict]:
        return [spec.to_dict() for spec in self.layers]


def _parse_entry(idx: int, entry: object) -> LayerSpec:
    if isinstance(entry, LayerSpec):
        return entry
    width: object
    activation: object = ActivationKind.IDENTITY
    temperature: object = 1.0
    if isinstance(entry, Mapping):
        if "width" not in entry:
            raise InvalidTopology(f"Layer {idx} is missing 'width'")
        width = entry["width"]
        activation = entry.get("activation", activation)
        temperature = entry.get("temperature", temperature)
    elif isinstance(entry, (list, tuple)):
        if not 1 <= len(entry) <= 3:
            raise InvalidTopology(f"Layer {idx} must be [width, activation(, temperature)]")
        width = entry[0]
        if len(entry) > 1:
            activation = entry[1]
        if len(entry) > 2:
            temperature = entry[2]
    else:
        width = entry
    if isinstance(width, bool) or not isinstance(width, (int, np.integer)):
        raise InvalidTopology(f"Layer {idx} width must be an integer, got {width!r}")
    try:
        temp = float(temperature)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidTopology(f"Layer {idx} temperature must be numeric") from exc
    return LayerSpec(int(width), ActivationKind.parse(activation), temp)  # type: ignore[arg-type]


@dataclass
class Layer:
    """Dense layer: ``activation(x · Wᵀ + b)``."""

    weights: Matrix
    bias: Matrix
    activation: ActivationKind
    temperature: float = 1.0

    def __post_init__(self) -> None:
        if self.bias.shape != (1, self.weights.rows):
            raise ShapeMismatch(
                f"Bias {self.bias.shape} does not match weights {self.weights.shape}"
            )

    @property
    def input_width(self) -> int:
        return self.weights.cols

    @property
    def output_width(self) -> int:
        return self.weights.rows

    def copy(self) -> "Layer":
        return Layer(self.weights.copy(), self.bias.copy(), self.activation, self.temperature)


@dataclass
class Network:
    """Ordered stack of layers; output width of layer i feeds layer i+1."""

    layers: List[Layer] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.layers:
            raise InvalidTopology("A network needs at least one layer")
        for idx, (prev, nxt) in enumerate(zip(self.layers[:-1], self.layers[1:])):
            if prev.output_width != nxt.input_width:
                raise ShapeMismatch(
                    f"Layer {idx} outputs {prev.output_width} values but layer "
                    f"{idx + 1} expects {nxt.input_width}"
                )

    @property
    def topology(self) -> Topology:
        specs = [LayerSpec(self.layers[0].input_width)]
        specs.extend(
            LayerSpec(layer.output_width, layer.activation, layer.temperature)
            for layer in self.layers
        )
        return Topology(tuple(specs))

    @property
    def input_width(self) -> int:
        return self.layers[0].input_width

    @property
    def output_width(self) -> int:
        return self.layers[-1].output_width

    @property
    def output_activation(self) -> ActivationKind:
        return self.layers[-1].activation

    @property
    def frozen(self) -> bool:
        return all(layer.weights.frozen and layer.bias.frozen for layer in self.layers)

    def freeze(self) -> "Network":
        """Make every parameter buffer read-only."""

        for layer in self.layers:
            layer.weights.freeze()
            layer.bias.freeze()
        return self

    def copy(self) -> "Network":
        return Network([layer.copy() for layer in self.layers])

    def parameter_count(self) -> int:
        return int(
            sum(layer.weights.rows * layer.weights.cols + layer.bias.cols for layer in self.layers)
        )

    def is_finite(self) -> bool:
        return all(layer.weights.is_finite() and layer.bias.is_finite() for layer in self.layers)

    def same_parameters(self, other: "Network") -> bool:
        """Exact equality of topology and every weight and bias value."""

        if self.topology != other.topology:
            return False
        return all(
            a.weights == b.weights and a.bias == b.bias
            for a, b in zip(self.layers, other.layers)
        )


def generate_network(
    topology: Topology | Sequence[object],
    rng: np.random.Generator,
    *,
    init_range: float = DEFAULT_INIT_RANGE,
) -> Network:
    """Instantiate ``topology`` with ``uniform(-init_range, init_range)`` weights.

    ``rng`` is consumed layer by layer in order, so the same seed and
    topology always yield identical weights.
    """

    if not isinstance(topology, Topology):
        topology = Topology.parse(topology)
    if init_range < 0:
        raise InvalidTopology("init_range must be non-negative")
    layers: List[Layer] = []
    for prev, spec in zip(topology.layers[:-1], topology.layers[1:]):
        weights = rng.uniform(-init_range, init_range, size=(spec.width, prev.width))
        layers.append(
            Layer(
                weights=Matrix(weights),
                bias=Matrix.zeros(1, spec.width),
                activation=spec.activation,
                temperature=spec.temperature,
            )
        )
    return Network(layers)


def zero_network(topology: Topology | Sequence[object]) -> Network:
    """A network with all weights and biases set to zero."""

    if not isinstance(topology, Topology):
        topology = Topology.parse(topology)
    layers = [
        Layer(
            Matrix.zeros(spec.width, prev.width),
            Matrix.zeros(1, spec.width),
            spec.activation,
            spec.temperature,
        )
        for prev, spec in zip(topology.layers[:-1], topology.layers[1:])
    ]
    return Network(layers)


__all__ = [
    "DEFAULT_INIT_RANGE",
    "Layer",
    "LayerSpec",
    "Network",
    "Topology",
    "generate_network",
    "zero_network",
]
