"""End-to-end workflows behind the four command line entry points."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np
from loguru import logger

from ..core.errors import CheckpointCorrupt, CheckpointNotFound, InvalidTopology, stage
from ..core.network import DEFAULT_INIT_RANGE, Network, Topology, generate_network
from ..data.csv_dataset import Dataset, load_csv
from ..evaluation import (
    EvaluationReport,
    Evaluator,
    Predictions,
    Predictor,
    load_for_inference,
    write_predictions,
)
from ..reporting.artifacts import write_manifest
from ..reporting.metrics import CsvSink, JsonlSink
from ..reporting.plots import PlotAdapter
from .checkpoint import Checkpoint, CheckpointStore
from .config import TrainingConfig
from .trainer import Trainer, TrainingResult


def parse_topology_string(text: str) -> Topology:
    """Parse ``"2,8:relu,3:softmax:0.5"`` into a :class:`Topology`.

    Each comma separated entry is ``width[:activation[:temperature]]``.
    """

    entries: List[List[Any]] = []
    for chunk in text.split(","):
        parts = [p.strip() for p in chunk.strip().split(":")]
        try:
            width = int(parts[0])
        except ValueError as exc:
            raise InvalidTopology(f"Bad layer width {parts[0]!r} in {text!r}") from exc
        entries.append([width, *parts[1:]])
    return Topology.parse(entries)


def generate_network_file(
    topology: Topology | Sequence[object],
    output: str | Path,
    *,
    seed: int = 0,
    init_range: float = DEFAULT_INIT_RANGE,
    store_options: Mapping[str, Any] | None = None,
) -> Checkpoint:
    """Instantiate ``topology`` from ``seed`` and store it as an epoch-0 checkpoint."""

    with stage("generation"):
        if not isinstance(topology, Topology):
            topology = Topology.parse(topology)
        network = generate_network(
            topology, np.random.default_rng(seed), init_range=init_range
        )
        checkpoint = Checkpoint(network=network, epoch=0, seed=seed)
        CheckpointStore(output, **dict(store_options or {})).save(checkpoint)
    logger.info(
        "Generated network {} ({} parameters) -> {}",
        topology.widths,
        network.parameter_count(),
        output,
    )
    return checkpoint


def _store_options(config: TrainingConfig) -> Dict[str, Any]:
    return {"timeout": config.lock_timeout, "retries": config.lock_retries}


def _dataset_metadata(config: TrainingConfig, dataset: Dataset, path: Path) -> Dict[str, Any]:
    return {
        "dataset": str(path),
        "label_columns": config.label_columns,
        "label_encoding": config.label_encoding,
        "classes": list(dataset.classes) if dataset.classes is not None else None,
        "feature_names": list(dataset.feature_names),
        "label_names": list(dataset.label_names),
        "validation_split": config.validation_split,
        "test_split": config.test_split,
        "loss": config.loss,
        "tolerance": config.tolerance,
    }


def _initial_network(path: str | Path, config: TrainingConfig) -> Network | None:
    try:
        return CheckpointStore(path, **_store_options(config)).load().network
    except (CheckpointNotFound, CheckpointCorrupt) as exc:
        logger.warning("Cannot use network file {} ({}); generating one instead", path, exc)
        return None


def run_training(
    config: TrainingConfig,
    dataset_path: str | Path,
    checkpoint_path: str | Path,
    *,
    network_path: str | Path | None = None,
    progress: bool = False,
    callbacks: Sequence[object] | None = None,
) -> TrainingResult:
    """Load the dataset, train, and keep ``checkpoint_path`` current."""

    dataset_path = Path(dataset_path)
    with stage("training"):
        dataset = load_csv(
            dataset_path,
            label_columns=config.label_columns,
            label_encoding=config.label_encoding,
        )
        splits = dataset.split(
            validation_split=config.validation_split,
            test_split=config.test_split,
            seed=config.seed,
        )
        logger.info("Loaded {} rows from {} (splits {})", dataset.rows, dataset_path, dict(splits.sizes))

        network = _initial_network(network_path, config) if network_path else None
        store = CheckpointStore(checkpoint_path, **_store_options(config))

        run_callbacks = list(callbacks or [])
        plots: PlotAdapter | None = None
        run_dir = Path(config.run_dir) if config.run_dir else None
        if run_dir is not None:
            run_callbacks.append(JsonlSink(run_dir / "metrics.jsonl", seed=config.seed))
            run_callbacks.append(CsvSink(run_dir / "metrics.csv"))
            plots = PlotAdapter(run_dir, enable_plots=config.enable_plots)
            run_callbacks.append(plots)

        metadata = _dataset_metadata(config, dataset, dataset_path)
        trainer = Trainer(
            config,
            store=store,
            network=network,
            callbacks=run_callbacks,
            metadata=metadata,
            progress=progress,
        )
        result = trainer.fit(splits.train, splits.validation)

    if plots is not None:
        plots.close()
    if run_dir is not None:
        write_manifest(
            run_dir / "manifest.json",
            config=config.to_dict(),
            dataset={**metadata, "splits": dict(splits.sizes)},
            result={
                "epochs": result.epochs_completed,
                "final_loss": result.final_loss,
                "learning_rate": result.learning_rate,
                "train": dict(result.train_metrics),
                "validation": dict(result.validation_metrics),
            },
        )
    logger.info(
        "Training finished after {} epochs: loss={:.6f} accuracy={:.4f}",
        result.epochs_completed,
        result.final_loss,
        result.train_metrics.get("accuracy", float("nan")),
    )
    return result


def run_evaluation(
    checkpoint_path: str | Path,
    dataset_path: str | Path,
    *,
    split: str = "all",
    store_options: Mapping[str, Any] | None = None,
) -> EvaluationReport:
    with stage("evaluation"):
        checkpoint = load_for_inference(checkpoint_path, **dict(store_options or {}))
        evaluator = Evaluator(checkpoint)
        view = evaluator.select(evaluator.load_dataset(dataset_path), split)
        report = evaluator.evaluate(view)
    logger.info("Evaluated {} rows of split {!r}: {}", report.rows, report.split, report.metrics)
    return report


def run_prediction(
    checkpoint_path: str | Path,
    dataset_path: str | Path,
    *,
    output: str | Path | None = None,
    store_options: Mapping[str, Any] | None = None,
) -> Predictions:
    with stage("prediction"):
        checkpoint = load_for_inference(checkpoint_path, **dict(store_options or {}))
        predictions = Predictor(checkpoint).predict_file(dataset_path)
        if output is not None:
            write_predictions(predictions, output)
            logger.info("Wrote {} predictions to {}", predictions.outputs.rows, output)
    return predictions


__all__ = [
    "generate_network_file",
    "parse_topology_string",
    "run_evaluation",
    "run_prediction",
    "run_training",
]
