"""Split and batching helpers for datasets."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Mapping

import numpy as np

from ..core.errors import ConfigError


@dataclass(frozen=True)
class SplitIndices:
    """Indices for train/validation/test partitions."""

    train: np.ndarray
    validation: np.ndarray
    test: np.ndarray

    @property
    def sizes(self) -> Mapping[str, int]:
        return {
            "train": int(self.train.size),
            "validation": int(self.validation.size),
            "test": int(self.test.size),
        }


def deterministic_split(
    n_samples: int,
    *,
    validation_split: float = 0.1,
    test_split: float = 0.0,
    seed: int = 0,
) -> SplitIndices:
    """Partition ``range(n_samples)`` with a seeded permutation.

    Every index lands in exactly one split.  A non-zero fraction always
    reserves at least one row; the training split must stay non-empty.
    """

    if not 0 <= validation_split < 1:
        raise ConfigError("validation_split must be in [0, 1)")
    if not 0 <= test_split < 1:
        raise ConfigError("test_split must be in [0, 1)")
    if validation_split + test_split >= 1:
        raise ConfigError("validation_split + test_split must be < 1")

    rng = np.random.default_rng(seed)
    indices = rng.permutation(n_samples)

    test_size = int(round(n_samples * test_split))
    val_size = int(round(n_samples * validation_split))
    # Ensure at least one sample per split when possible
    test_size = min(max(test_size, 1 if test_split > 0 else 0), n_samples)
    remaining = n_samples - test_size
    val_size = min(max(val_size, 1 if validation_split > 0 else 0), remaining)
    train_size = n_samples - val_size - test_size
    if train_size <= 0:
        raise ConfigError(
            f"Not enough rows ({n_samples}) for the requested validation/test fractions"
        )

    test_idx = np.sort(indices[:test_size])
    val_idx = np.sort(indices[test_size : test_size + val_size])
    train_idx = np.sort(indices[test_size + val_size :])

    return SplitIndices(train=train_idx, validation=val_idx, test=test_idx)


class BatchPlan:
    """Finite, restartable sequence of row-index groups.

    Iterating twice yields the same groups.  With ``shuffle`` the order is
    drawn from a generator seeded by ``(seed, epoch)``, so each epoch gets
    its own order without touching any shared RNG.  The final group may be
    shorter than ``batch_size``; it is never dropped.
    """

    def __init__(
        self,
        indices: np.ndarray,
        batch_size: int,
        *,
        shuffle: bool = False,
        seed: int = 0,
        epoch: int = 0,
    ) -> None:
        if batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {batch_size}")
        self.indices = np.asarray(indices, dtype=np.int64)
        self.batch_size = int(batch_size)
        self.shuffle = shuffle
        self.seed = seed
        self.epoch = epoch

    def order(self) -> np.ndarray:
        if not self.shuffle:
            return self.indices
        rng = np.random.default_rng([int(self.seed), int(self.epoch)])
        return rng.permutation(self.indices)

    def __iter__(self) -> Iterator[np.ndarray]:
        order = self.order()
        for start in range(0, order.size, self.batch_size):
            yield order[start : start + self.batch_size]

    def __len__(self) -> int:
        return math.ceil(self.indices.size / self.batch_size)


__all__ = ["BatchPlan", "SplitIndices", "deterministic_split"]
