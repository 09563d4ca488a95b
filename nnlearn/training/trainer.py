"""Parallel training loop with locked checkpoints and divergence recovery."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Sequence

import numpy as np
from loguru import logger
from tqdm import tqdm

from ..core.backprop import aggregate, compute_gradients, ensure_finite, predict
from ..core.errors import (
    CheckpointCorrupt,
    CheckpointNotFound,
    ConfigError,
    InvalidTopology,
    NumericDivergence,
    ShapeMismatch,
)
from ..core.network import Network, generate_network
from ..core.optimizers import Optimizer, OptimizerState, build_optimizer
from ..core.types import Batch, BatchResult
from ..data.csv_dataset import DatasetView
from .checkpoint import Checkpoint, CheckpointStore
from .config import TrainingConfig
from .losses import REGISTRY as LOSS_REGISTRY
from .losses import Loss
from .metrics import compute_metrics, default_metrics

GradientFn = Callable[[Network, Batch, Loss, int], BatchResult]


class TrainerState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING_EPOCH = "running_epoch"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TrainingResult:
    network: Network
    epochs_completed: int
    final_loss: float
    learning_rate: float
    train_metrics: Mapping[str, float] = field(default_factory=dict)
    validation_metrics: Mapping[str, float] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    state: TrainerState = TrainerState.COMPLETED


class Trainer:
    """Run epochs over a worker pool and keep the checkpoint current.

    Workers only read the network and return gradients; the coordinating
    thread reduces them and is the only writer.  A :class:`NumericDivergence`
    rolls the network back to the last good checkpoint and retries with half
    the learning rate; a second divergence before any epoch succeeds fails
    the run.
    """

    def __init__(
        self,
        config: TrainingConfig,
        *,
        store: CheckpointStore | None = None,
        network: Network | None = None,
        optimizer: Optimizer | None = None,
        gradient_fn: GradientFn = compute_gradients,
        callbacks: Sequence[object] | None = None,
        metadata: Mapping[str, Any] | None = None,
        progress: bool = False,
    ) -> None:
        self.config = config
        self.store = store
        self.network = network
        self.optimizer = optimizer
        self.gradient_fn = gradient_fn
        self.callbacks = list(callbacks or [])
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.progress = progress
        self.loss = LOSS_REGISTRY.resolve(
            config.loss, output_activation=config.topology.output_activation
        )
        self.state = TrainerState.IDLE
        self.epoch = 0
        self.history: List[Dict[str, Any]] = []
        self._saved_epoch: int | None = None
        self._last_good: Checkpoint | None = None

    # ------------------------------------------------------------------
    # Lifecycle

    def _transition(self, state: TrainerState) -> None:
        logger.debug("Trainer {} -> {}", self.state.value, state.value)
        self.state = state

    def initialize(self) -> Network:
        """Load the checkpoint if one is usable, otherwise start fresh."""

        self._transition(TrainerState.INITIALIZING)
        checkpoint = self._load_existing()
        if checkpoint is not None:
            if checkpoint.topology != self.config.topology:
                raise InvalidTopology(
                    f"Checkpoint topology {checkpoint.topology.to_list()} does not match "
                    f"the configured topology {self.config.topology.to_list()}"
                )
            self.network = checkpoint.network
            self.epoch = checkpoint.epoch
            self.metadata = {**checkpoint.metadata, **self.metadata}
            logger.info("Resuming from {} at epoch {}", self.store.path, self.epoch)
        elif self.network is not None:
            if self.network.topology != self.config.topology:
                raise InvalidTopology(
                    f"Network topology {self.network.topology.to_list()} does not match "
                    f"the configured topology {self.config.topology.to_list()}"
                )
            self.network = self.network.copy()
        else:
            rng = np.random.default_rng(self.config.seed)
            self.network = generate_network(
                self.config.topology, rng, init_range=self.config.init_range
            )

        if self.optimizer is None:
            opt_cfg = self.config.optimizer
            self.optimizer = build_optimizer(
                opt_cfg.name, self.config.learning_rate, **opt_cfg.options
            )
        if checkpoint is not None and checkpoint.optimizer_state is not None:
            self._restore_optimizer(checkpoint.optimizer_state)

        self._checkpoint()
        return self.network

    def _load_existing(self) -> Checkpoint | None:
        if self.store is None:
            return None
        try:
            return self.store.load()
        except CheckpointNotFound:
            logger.info("No checkpoint at {}; starting from a fresh network", self.store.path)
        except CheckpointCorrupt as exc:
            logger.warning("Ignoring unusable checkpoint ({}); starting fresh", exc)
        return None

    def _restore_optimizer(self, state: OptimizerState) -> None:
        if state.name != self.optimizer.name:
            logger.warning(
                "Checkpoint holds {} optimizer state; keeping a fresh {} optimizer",
                state.name,
                self.optimizer.name,
            )
            return
        self.optimizer.load_state_dict(state)

    def _snapshot(self) -> Checkpoint:
        return Checkpoint(
            network=self.network.copy(),
            epoch=self.epoch,
            seed=self.config.seed,
            optimizer_state=self.optimizer.state_dict(),
            metadata=dict(self.metadata),
        )

    def _checkpoint(self) -> None:
        previous = self.state
        self._transition(TrainerState.CHECKPOINTING)
        snapshot = self._snapshot()
        if self.store is not None:
            self.store.save(snapshot)
        self._last_good = snapshot
        self._saved_epoch = self.epoch
        self.history.append({"event": "checkpoint", "epoch": self.epoch})
        self._transition(previous)

    # ------------------------------------------------------------------
    # Training

    def fit(self, train: DatasetView, validation: DatasetView | None = None) -> TrainingResult:
        """Train until ``config.epochs`` epochs have completed."""

        try:
            if self.state is TrainerState.IDLE:
                self.initialize()
            self._check_data(train)
            result = self._run(train, validation)
        except BaseException:
            self._transition(TrainerState.FAILED)
            raise
        self._transition(TrainerState.COMPLETED)
        return result

    def _check_data(self, view: DatasetView) -> None:
        if view.size == 0:
            raise ConfigError("The training split is empty")
        dataset = view.dataset
        if dataset.features.cols != self.network.input_width:
            raise ShapeMismatch(
                f"Dataset has {dataset.features.cols} feature columns, "
                f"network expects {self.network.input_width}"
            )
        if dataset.labels.cols != self.network.output_width:
            raise ShapeMismatch(
                f"Dataset has {dataset.labels.cols} label columns, "
                f"network outputs {self.network.output_width}"
            )

    def _run(self, train: DatasetView, validation: DatasetView | None) -> TrainingResult:
        cfg = self.config
        retried = False
        bar = tqdm(
            total=cfg.epochs,
            initial=min(self.epoch, cfg.epochs),
            desc="train",
            unit="epoch",
            disable=not self.progress,
        )
        val_metrics: Mapping[str, float] = {}
        with bar, ThreadPoolExecutor(
            max_workers=cfg.workers, thread_name_prefix="nnlearn-worker"
        ) as pool:
            while self.epoch < cfg.epochs:
                self._transition(TrainerState.RUNNING_EPOCH)
                epoch = self.epoch + 1
                try:
                    train_loss = self._run_epoch(pool, train, epoch)
                except NumericDivergence as exc:
                    if retried:
                        logger.error("Epoch {} diverged again after rollback: {}", epoch, exc)
                        self.history.append({"event": "failed", "epoch": epoch, "reason": str(exc)})
                        raise
                    self._rollback(epoch, exc)
                    bar.n = self.epoch
                    bar.refresh()
                    retried = True
                    continue
                retried = False
                self.epoch = epoch

                metrics: Dict[str, float] = {
                    "loss": train_loss,
                    "learning_rate": float(self.optimizer.learning_rate),
                }
                if validation is not None and validation.size:
                    val_metrics = self.evaluate_view(validation)
                    metrics.update({f"val_{k}": v for k, v in val_metrics.items()})
                self.history.append({"event": "epoch", "epoch": epoch, **metrics})
                logger.info(
                    "Epoch {}/{} loss={:.6f} lr={:g}",
                    epoch,
                    cfg.epochs,
                    train_loss,
                    self.optimizer.learning_rate,
                )
                bar.update(1)
                bar.set_postfix(loss=f"{train_loss:.4f}")
                self._emit_epoch(epoch, metrics)

                if epoch % cfg.checkpoint_every == 0:
                    self._checkpoint()

        if self._saved_epoch != self.epoch:
            self._checkpoint()
        train_metrics = self.evaluate_view(train)
        return TrainingResult(
            network=self.network,
            epochs_completed=self.epoch,
            final_loss=float(train_metrics["loss"]),
            learning_rate=float(self.optimizer.learning_rate),
            train_metrics=train_metrics,
            validation_metrics=val_metrics,
            history=list(self.history),
        )

    def _rounds(self, plan: Sequence[np.ndarray]) -> List[List[tuple[int, np.ndarray]]]:
        groups = list(enumerate(plan))
        if self.config.aggregation == "epoch":
            return [groups]
        size = self.config.workers
        return [groups[start : start + size] for start in range(0, len(groups), size)]

    def _run_epoch(self, pool: ThreadPoolExecutor, train: DatasetView, epoch: int) -> float:
        cfg = self.config
        plan = train.batch_plan(cfg.batch_size, shuffle=cfg.shuffle, seed=cfg.seed, epoch=epoch)
        network = self.network
        loss_fn = self.loss

        def work(item: tuple[int, np.ndarray]) -> BatchResult:
            index, rows = item
            return self.gradient_fn(network, train.batch(rows), loss_fn, index)

        loss_sum = 0.0
        seen = 0
        for round_ in self._rounds(list(plan)):
            # map() returns only after every batch of the round has finished
            results = list(pool.map(work, round_))
            mean_loss, grads, rows = aggregate(results)
            ensure_finite(mean_loss, grads, context=f"epoch {epoch}")
            self.optimizer.step(network, grads)
            if not network.is_finite():
                raise NumericDivergence(f"Parameters became non-finite in epoch {epoch}")
            loss_sum += mean_loss * rows
            seen += rows
        return loss_sum / seen

    def _rollback(self, epoch: int, exc: NumericDivergence) -> None:
        previous_lr = float(self.optimizer.learning_rate)
        checkpoint = self._last_good
        if self.store is not None:
            try:
                checkpoint = self.store.load()
            except (CheckpointNotFound, CheckpointCorrupt) as load_exc:
                logger.warning("Rolling back from memory; checkpoint unreadable: {}", load_exc)
        if checkpoint is None:
            raise exc
        self.network = checkpoint.network.copy()
        self.epoch = checkpoint.epoch
        if checkpoint.optimizer_state is not None:
            self._restore_optimizer(checkpoint.optimizer_state)
        self.optimizer.learning_rate = previous_lr
        self.optimizer.scale_learning_rate(0.5)
        logger.warning(
            "Epoch {} diverged ({}); restored epoch {} and halved learning rate to {:g}",
            epoch,
            exc.message,
            self.epoch,
            self.optimizer.learning_rate,
        )
        self.history.append(
            {
                "event": "rollback",
                "epoch": epoch,
                "restored_epoch": self.epoch,
                "learning_rate": float(self.optimizer.learning_rate),
                "reason": exc.message,
            }
        )

    # ------------------------------------------------------------------
    # Reporting

    def evaluate_view(self, view: DatasetView) -> Mapping[str, float]:
        outputs = predict(self.network, view.features)
        return compute_metrics(
            default_metrics(),
            outputs,
            view.labels,
            loss=self.loss,
            output_activation=self.network.output_activation,
            tolerance=self.config.tolerance,
        )

    def _emit_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        for callback in self.callbacks:
            if hasattr(callback, "on_epoch"):
                callback.on_epoch(epoch, metrics)  # type: ignore[attr-defined]
            elif callable(callback):
                callback(epoch, metrics)


__all__ = ["Trainer", "TrainerState", "TrainingResult"]
