"""Command line entry points for nnlearn: generate, train, evaluate, predict."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable, List

from loguru import logger

from nnlearn.core.errors import NNLearnError, stage
from nnlearn.data.csv_dataset import SPLITS
from nnlearn.training import pipelines
from nnlearn.training.config import load_config, load_topology
from nnlearn.utils import configure_logging


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level",
    )
    parser.add_argument("--log-file", type=Path, help="Also write DEBUG logs to this file")


def _add_generate(sub: argparse.ArgumentParser) -> None:
    source = sub.add_mutually_exclusive_group(required=True)
    source.add_argument("--config", type=Path, help="YAML config holding a topology")
    source.add_argument(
        "--topology",
        help="Inline topology, e.g. '2,8:relu,3:softmax' (width[:activation[:temperature]])",
    )
    sub.add_argument("--output", type=Path, required=True, help="Network file to write")
    sub.add_argument("--seed", type=int, default=0, help="Seed for weight initialisation")
    sub.add_argument(
        "--init-range",
        type=float,
        default=0.5,
        help="Weights are drawn from uniform(-init_range, init_range)",
    )


def _add_train(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--config", type=Path, required=True, help="YAML training config")
    sub.add_argument("--data", type=Path, required=True, help="CSV dataset")
    sub.add_argument("--checkpoint", type=Path, required=True, help="Checkpoint file")
    sub.add_argument("--network", type=Path, help="Initial network file from 'generate'")
    sub.add_argument("--epochs", type=int, help="Override the configured epoch count")
    sub.add_argument("--seed", type=int, help="Override the configured seed")
    sub.add_argument("--workers", type=int, help="Override the worker count")
    sub.add_argument("--learning-rate", type=float, help="Override the learning rate")
    sub.add_argument("--run-dir", help="Write metrics and a manifest to this directory")
    sub.add_argument(
        "--enable-plots", action="store_true", default=None, help="Save a loss curve PNG"
    )
    sub.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Show a progress bar",
    )


def _add_evaluate(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--checkpoint", type=Path, required=True, help="Checkpoint file")
    sub.add_argument("--data", type=Path, required=True, help="CSV dataset")
    sub.add_argument(
        "--split",
        default="all",
        choices=["all", *SPLITS],
        help="Split to evaluate, rebuilt from the checkpoint's seed",
    )
    sub.add_argument("--output", type=Path, help="Also write the report to this JSON file")


def _add_predict(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--checkpoint", type=Path, required=True, help="Checkpoint file")
    sub.add_argument("--data", type=Path, required=True, help="CSV with feature columns first")
    sub.add_argument("--output", type=Path, help="Predictions CSV (stdout when omitted)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nnlearn", description=__doc__)
    _add_common(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)
    builders = {
        "generate": (_add_generate, "Create a network file from a topology"),
        "train": (_add_train, "Train a network and keep its checkpoint current"),
        "evaluate": (_add_evaluate, "Report loss and accuracy for a checkpoint"),
        "predict": (_add_predict, "Write per-row outputs for a checkpoint"),
    }
    for name, (add, help_text) in builders.items():
        add(subparsers.add_parser(name, help=help_text, description=help_text))
    return parser


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(list(argv) if argv is not None else None)


def _generate(args: argparse.Namespace) -> dict:
    with stage("generation"):
        if args.config is not None:
            topology = load_topology(args.config)
        else:
            topology = pipelines.parse_topology_string(args.topology)
    checkpoint = pipelines.generate_network_file(
        topology, args.output, seed=args.seed, init_range=args.init_range
    )
    return {
        "network": str(args.output),
        "topology": checkpoint.topology.widths,
        "parameters": checkpoint.network.parameter_count(),
    }


def _train(args: argparse.Namespace) -> dict:
    overrides = {
        "epochs": args.epochs,
        "seed": args.seed,
        "workers": args.workers,
        "learning_rate": args.learning_rate,
        "run_dir": args.run_dir,
        "enable_plots": args.enable_plots,
    }
    with stage("training"):
        config = load_config(args.config, overrides)
    result = pipelines.run_training(
        config,
        args.data,
        args.checkpoint,
        network_path=args.network,
        progress=args.progress,
    )
    return {
        "checkpoint": str(args.checkpoint),
        "epochs": result.epochs_completed,
        "final_loss": result.final_loss,
        "learning_rate": result.learning_rate,
        "train": dict(result.train_metrics),
        "validation": dict(result.validation_metrics),
    }


def _evaluate(args: argparse.Namespace) -> dict:
    report = pipelines.run_evaluation(args.checkpoint, args.data, split=args.split)
    payload = report.to_dict()
    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(payload, indent=2, sort_keys=True))
    return payload


def _predict(args: argparse.Namespace) -> dict | None:
    predictions = pipelines.run_prediction(args.checkpoint, args.data, output=args.output)
    if args.output is None:
        predictions.to_frame().to_csv(sys.stdout, index=False)
        return None
    return {"predictions": str(args.output), "rows": predictions.outputs.rows}


_HANDLERS = {
    "generate": _generate,
    "train": _train,
    "evaluate": _evaluate,
    "predict": _predict,
}


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    try:
        payload = _HANDLERS[args.command](args)
    except NNLearnError as exc:
        logger.error("{} failed: {}", exc.stage or args.command, exc)
        return exc.exit_code
    if payload is not None:
        print(json.dumps(payload, sort_keys=True))
    return 0


def _command_main(command: str, argv: Iterable[str] | None) -> int:
    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    # global options must precede the subcommand
    common: List[str] = []
    rest: List[str] = []
    it = iter(args)
    for token in it:
        if token in ("--log-level", "--log-file"):
            common.extend([token, next(it, "")])
        elif token.startswith(("--log-level=", "--log-file=")):
            common.append(token)
        else:
            rest.append(token)
    return main([*common, command, *rest])


def generate_main(argv: Iterable[str] | None = None) -> int:
    return _command_main("generate", argv)


def train_main(argv: Iterable[str] | None = None) -> int:
    return _command_main("train", argv)


def evaluate_main(argv: Iterable[str] | None = None) -> int:
    return _command_main("evaluate", argv)


def predict_main(argv: Iterable[str] | None = None) -> int:
    return _command_main("predict", argv)


if __name__ == "__main__":
    raise SystemExit(main())
