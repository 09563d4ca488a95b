"""nnlearn public API."""

from .core.errors import (
    CheckpointCorrupt,
    CheckpointNotFound,
    ConfigError,
    InvalidTopology,
    LockContention,
    NNLearnError,
    NumericDivergence,
    RowParseError,
    ShapeMismatch,
)
from .core.matrix import Matrix
from .core.network import Network, Topology, generate_network
from .data.csv_dataset import Dataset, load_csv
from .evaluation import Evaluator, Predictor, load_for_inference
from .training.checkpoint import Checkpoint, CheckpointStore
from .training.config import TrainingConfig, load_config
from .training.trainer import Trainer, TrainerState, TrainingResult

__all__ = [
    "Checkpoint",
    "CheckpointCorrupt",
    "CheckpointNotFound",
    "CheckpointStore",
    "ConfigError",
    "Dataset",
    "Evaluator",
    "InvalidTopology",
    "LockContention",
    "Matrix",
    "NNLearnError",
    "Network",
    "NumericDivergence",
    "Predictor",
    "RowParseError",
    "ShapeMismatch",
    "Topology",
    "Trainer",
    "TrainerState",
    "TrainingConfig",
    "TrainingResult",
    "generate_network",
    "load_config",
    "load_csv",
    "load_for_inference",
]
