"""Training configuration and its YAML loader."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from loguru import logger

from ..core.errors import ConfigError
from ..core.network import DEFAULT_INIT_RANGE, Topology
from ..data.csv_dataset import LABEL_ENCODINGS

REQUIRED_KEYS = ("topology", "epochs")
AGGREGATION_MODES = ("epoch", "round")
_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class OptimizerConfig:
    name: str = "sgd"
    options: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def parse(cls, value: object) -> "OptimizerConfig":
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(name=value.lower())
        if isinstance(value, Mapping):
            options = {str(k): float(v) for k, v in value.items() if k != "name"}
            return cls(name=str(value.get("name", "sgd")).lower(), options=options)
        raise ConfigError(f"optimizer must be a name or a mapping, got {value!r}")


@dataclass(frozen=True)
class TrainingConfig:
    """Options recognised in a training config file.

    Attributes
    ----------
    topology:
        Layer widths and activations; the first entry is the input width.
    epochs:
        Total passes over the training split.
    aggregation:
        ``"epoch"`` applies one optimizer step per epoch from the mean of
        every batch gradient; ``"round"`` steps after each round of
        ``workers`` batches.
    tolerance:
        Absolute error under which a regression output counts as correct.
    """

    topology: Topology
    epochs: int
    learning_rate: float = 0.01
    batch_size: int = 32
    seed: int = 0
    validation_split: float = 0.1
    test_split: float = 0.0
    workers: int = 1
    shuffle: bool = True
    checkpoint_every: int = 1
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    loss: str = "auto"
    label_columns: int = 1
    label_encoding: str = "none"
    tolerance: float = 0.1
    aggregation: str = "epoch"
    init_range: float = DEFAULT_INIT_RANGE
    lock_timeout: float = 10.0
    lock_retries: int = 5
    run_dir: str | None = None
    enable_plots: bool = False

    def __post_init__(self) -> None:
        if self.epochs < 0:
            raise ConfigError("epochs must be non-negative")
        if not self.learning_rate > 0:
            raise ConfigError("learning_rate must be positive")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if self.workers <= 0:
            raise ConfigError("workers must be positive")
        if self.checkpoint_every <= 0:
            raise ConfigError("checkpoint_every must be positive")
        if self.seed < 0:
            raise ConfigError("seed must be non-negative")
        if not 0 <= self.validation_split < 1 or not 0 <= self.test_split < 1:
            raise ConfigError("validation_split and test_split must be in [0, 1)")
        if self.validation_split + self.test_split >= 1:
            raise ConfigError("validation_split + test_split must be < 1")
        if self.label_encoding not in LABEL_ENCODINGS:
            raise ConfigError(f"label_encoding must be one of {', '.join(LABEL_ENCODINGS)}")
        if self.aggregation not in AGGREGATION_MODES:
            raise ConfigError(f"aggregation must be one of {', '.join(AGGREGATION_MODES)}")
        if self.lock_retries < 0 or self.lock_timeout < 0:
            raise ConfigError("lock_timeout and lock_retries must be non-negative")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TrainingConfig":
        missing = [key for key in REQUIRED_KEYS if data.get(key) is None]
        if missing:
            raise ConfigError(f"Config is missing required keys: {', '.join(missing)}")
        known = {f.name: f for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.debug("Ignoring unknown config key {!r}", key)

        kwargs: Dict[str, Any] = {}
        kwargs["topology"] = Topology.parse(data["topology"])
        converters = {
            "epochs": int,
            "learning_rate": float,
            "batch_size": int,
            "seed": int,
            "validation_split": float,
            "test_split": float,
            "workers": int,
            "shuffle": _as_bool,
            "checkpoint_every": int,
            "loss": str,
            "label_columns": int,
            "label_encoding": str,
            "tolerance": float,
            "aggregation": str,
            "init_range": float,
            "lock_timeout": float,
            "lock_retries": int,
            "enable_plots": _as_bool,
        }
        for key, convert in converters.items():
            if key in data and data[key] is not None:
                try:
                    kwargs[key] = convert(data[key])
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"Invalid value for {key!r}: {data[key]!r}") from exc
        if data.get("run_dir") is not None:
            kwargs["run_dir"] = str(data["run_dir"])
        if "optimizer" in data:
            try:
                kwargs["optimizer"] = OptimizerConfig.parse(data["optimizer"])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid optimizer options: {exc}") from exc
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["topology"] = self.topology.to_list()
        return payload


def _read_mapping(path: str | Path) -> Mapping[str, Any]:
    path = Path(path)
    try:
        text = path.read_text()
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must decode to a mapping")
    return data


def load_config(
    path: str | Path, overrides: Mapping[str, Any] | None = None
) -> TrainingConfig:
    """Read a YAML config file into a :class:`TrainingConfig`.

    Non-``None`` entries of ``overrides`` replace the file's values.
    """

    merged = dict(_read_mapping(path))
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return TrainingConfig.from_mapping(merged)


def load_topology(path: str | Path) -> Topology:
    """Read only the ``topology`` key of a config file."""

    data = _read_mapping(path)
    if "topology" not in data:
        raise ConfigError(f"Config file {path} has no topology")
    return Topology.parse(data["topology"])


__all__ = ["AGGREGATION_MODES", "OptimizerConfig", "TrainingConfig", "load_config", "load_topology"]
