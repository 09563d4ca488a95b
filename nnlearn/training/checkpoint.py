"""Checkpoint record, codec and locked atomic storage.

A checkpoint is a compressed NumPy ``.npz`` archive: one array per weight,
bias and optimizer slot (float64, so values round-trip exactly) plus a
JSON metadata string.  Archives are loaded with ``allow_pickle=False``.

:class:`CheckpointStore` guards every read and write with an advisory
lock on ``<checkpoint>.lock``.  Writes go to a temporary file in the same
directory which is then moved over the checkpoint with :func:`os.replace`,
so a reader sees either the previous or the new archive, never a partial
one.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator

import numpy as np
from filelock import FileLock, Timeout
from loguru import logger

from ..core.errors import (
    CheckpointCorrupt,
    CheckpointNotFound,
    InvalidTopology,
    LockContention,
    ShapeMismatch,
)
from ..core.matrix import Matrix
from ..core.network import Layer, Network, Topology
from ..core.optimizers import OptimizerState

FORMAT = "nnlearn-checkpoint"
VERSION = 1
_META_KEY = "__meta__"


@dataclass
class Checkpoint:
    """Snapshot of a network plus training progress."""

    network: Network
    epoch: int = 0
    seed: int = 0
    optimizer_state: OptimizerState | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def topology(self) -> Topology:
        return self.network.topology


def encode(checkpoint: Checkpoint) -> Dict[str, np.ndarray]:
    """Flatten ``checkpoint`` into named arrays for :func:`numpy.savez`."""

    arrays: Dict[str, np.ndarray] = {}
    for idx, layer in enumerate(checkpoint.network.layers):
        arrays[f"layer{idx}_weights"] = layer.weights.to_numpy()
        arrays[f"layer{idx}_bias"] = layer.bias.to_numpy()
    optimizer_meta = None
    state = checkpoint.optimizer_state
    if state is not None:
        optimizer_meta = {
            "name": state.name,
            "learning_rate": state.learning_rate,
            "steps": state.steps,
            "hyper": dict(state.hyper),
            "slots": sorted(state.slots),
        }
        for name, value in state.slots.items():
            arrays[f"slot_{name}"] = np.asarray(value, dtype=np.float64)
    meta = {
        "format": FORMAT,
        "version": VERSION,
        "topology": checkpoint.network.topology.to_list(),
        "epoch": int(checkpoint.epoch),
        "seed": int(checkpoint.seed),
        "optimizer": optimizer_meta,
        "metadata": checkpoint.metadata,
    }
    arrays[_META_KEY] = np.array(json.dumps(meta, sort_keys=True))
    return arrays


def decode(arrays: Any, *, source: str = "<memory>") -> Checkpoint:
    """Rebuild a :class:`Checkpoint` from :func:`encode` output."""

    try:
        meta = json.loads(str(arrays[_META_KEY][()]))
        if meta.get("format") != FORMAT:
            raise CheckpointCorrupt(f"{source} is not an nnlearn checkpoint")
        if int(meta.get("version", -1)) != VERSION:
            raise CheckpointCorrupt(f"{source} has unsupported version {meta.get('version')!r}")
        topology = Topology.parse(meta["topology"])
        layers = []
        for idx, (prev, spec) in enumerate(zip(topology.layers[:-1], topology.layers[1:])):
            weights = np.array(arrays[f"layer{idx}_weights"], dtype=np.float64)
            bias = np.array(arrays[f"layer{idx}_bias"], dtype=np.float64)
            if weights.shape != (spec.width, prev.width) or bias.shape != (1, spec.width):
                raise CheckpointCorrupt(f"{source}: layer {idx} arrays do not match the topology")
            layers.append(Layer(Matrix(weights), Matrix(bias), spec.activation, spec.temperature))
        state = None
        opt = meta.get("optimizer")
        if opt is not None:
            state = OptimizerState(
                name=str(opt["name"]),
                learning_rate=float(opt["learning_rate"]),
                steps=int(opt["steps"]),
                hyper={str(k): float(v) for k, v in opt.get("hyper", {}).items()},
                slots={
                    name: np.array(arrays[f"slot_{name}"], dtype=np.float64)
                    for name in opt.get("slots", [])
                },
            )
        return Checkpoint(
            network=Network(layers),
            epoch=int(meta["epoch"]),
            seed=int(meta["seed"]),
            optimizer_state=state,
            metadata=dict(meta.get("metadata") or {}),
        )
    except CheckpointCorrupt:
        raise
    except (KeyError, TypeError, ValueError, InvalidTopology, ShapeMismatch) as exc:
        raise CheckpointCorrupt(f"{source} is malformed: {exc}") from exc


def write_checkpoint(path: str | Path, checkpoint: Checkpoint) -> Path:
    """Atomically write ``checkpoint`` to ``path`` (no locking)."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    arrays = encode(checkpoint)
    handle = tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    tmp_path = Path(handle.name)
    try:
        with handle:
            np.savez_compressed(handle, **arrays)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def read_checkpoint(path: str | Path) -> Checkpoint:
    """Read a checkpoint from ``path`` (no locking)."""

    path = Path(path)
    if not path.exists():
        raise CheckpointNotFound(f"No checkpoint at {path}")
    try:
        loaded = np.load(path, allow_pickle=False)
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError, ValueError) as exc:
        raise CheckpointCorrupt(f"{path} could not be read: {exc}") from exc
    if not isinstance(loaded, np.lib.npyio.NpzFile):
        raise CheckpointCorrupt(f"{path} holds a bare array, not a checkpoint archive")
    try:
        with loaded as archive:
            return decode(archive, source=str(path))
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError, ValueError) as exc:
        raise CheckpointCorrupt(f"{path} could not be read: {exc}") from exc


class CheckpointStore:
    """Locked, atomic access to one checkpoint file.

    Lock acquisition is retried ``retries`` times with exponential backoff
    starting at ``backoff`` seconds before :class:`LockContention` is
    raised.  The lock is held only while a single read or write runs.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        timeout: float = 10.0,
        retries: int = 5,
        backoff: float = 0.05,
    ) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path))
        delay = self.backoff
        for attempt in range(self.retries + 1):
            try:
                lock.acquire(timeout=self.timeout)
                break
            except Timeout:
                if attempt == self.retries:
                    raise LockContention(
                        f"Could not lock {self.path} after {self.retries + 1} attempts"
                    ) from None
                logger.warning(
                    "Checkpoint lock {} busy (attempt {}/{}), retrying in {:.2f}s",
                    self.lock_path,
                    attempt + 1,
                    self.retries + 1,
                    delay,
                )
                time.sleep(delay)
                delay *= 2
        try:
            yield
        finally:
            lock.release()

    def save(self, checkpoint: Checkpoint) -> Path:
        with self.locked():
            path = write_checkpoint(self.path, checkpoint)
        logger.debug("Wrote checkpoint {} (epoch {})", self.path, checkpoint.epoch)
        return path

    def load(self) -> Checkpoint:
        if not self.path.exists():
            raise CheckpointNotFound(f"No checkpoint at {self.path}")
        with self.locked():
            return read_checkpoint(self.path)


__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "decode",
    "encode",
    "read_checkpoint",
    "write_checkpoint",
]
