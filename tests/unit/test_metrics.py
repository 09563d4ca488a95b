import numpy as np
import pytest

from nnlearn.core.activations import ActivationKind
from nnlearn.core.errors import ConfigError, ShapeMismatch
from nnlearn.core.matrix import Matrix
from nnlearn.training.losses import REGISTRY
from nnlearn.training.metrics import compute_metric, compute_metrics


def test_accuracy_uses_argmax_for_multi_column_outputs():
    preds = Matrix([[0.9, 0.1], [0.2, 0.8], [0.6, 0.4]])
    targets = Matrix([[1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])
    result = compute_metric(
        "accuracy", preds, targets, output_activation=ActivationKind.SOFTMAX
    )
    assert result.value == pytest.approx(2 / 3)


def test_accuracy_thresholds_single_sigmoid_output():
    preds = Matrix([[0.7], [0.4], [0.51]])
    targets = Matrix([[1.0], [0.0], [0.0]])
    result = compute_metric(
        "accuracy", preds, targets, output_activation=ActivationKind.SIGMOID
    )
    assert result.value == pytest.approx(2 / 3)


def test_regression_accuracy_uses_tolerance():
    preds = Matrix([[1.05], [2.5]])
    targets = Matrix([[1.0], [2.0]])
    metrics = compute_metrics(
        ["accuracy", "mae", "rmse"], preds, targets, tolerance=0.1
    )
    assert metrics["accuracy"] == 0.5
    assert metrics["mae"] == pytest.approx(0.275)
    assert metrics["rmse"] == pytest.approx(np.sqrt((0.05**2 + 0.5**2) / 2))


def test_loss_metric_and_resolution():
    preds = Matrix([[0.5, 0.5]])
    targets = Matrix([[1.0, 0.0]])
    ce = REGISTRY.resolve("auto", output_activation=ActivationKind.SOFTMAX)
    assert ce.name == "cross_entropy"
    assert REGISTRY.resolve("auto", output_activation=ActivationKind.TANH).name == "mse"
    value = compute_metric("loss", preds, targets, loss=ce).value
    assert value == pytest.approx(np.log(2))
    with pytest.raises(ConfigError):
        REGISTRY.resolve("hinge", output_activation=ActivationKind.TANH)
    with pytest.raises(ConfigError):
        compute_metric("f1", preds, targets)
    with pytest.raises(ShapeMismatch):
        compute_metric("mae", preds, Matrix([[1.0]]))
