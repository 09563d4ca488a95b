import threading

import numpy as np
import pytest

from nnlearn.core.backprop import compute_gradients
from nnlearn.core.errors import NumericDivergence
from nnlearn.core.matrix import Matrix
from nnlearn.core.network import generate_network
from nnlearn.core.types import BatchResult, LayerGradients
from nnlearn.data.csv_dataset import Dataset
from nnlearn.evaluation import Evaluator, load_for_inference
from nnlearn.training.checkpoint import CheckpointStore
from nnlearn.training.config import TrainingConfig
from nnlearn.training.trainer import Trainer, TrainerState


def _or_dataset():
    features = Matrix([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])
    labels = Matrix([[1.0, 0.0], [0.0, 1.0], [0.0, 1.0], [0.0, 1.0]])
    return Dataset(features=features, labels=labels, classes=("false", "true"))


def _config(**overrides):
    data = {
        "topology": [2, [4, "tanh"], [2, "softmax"]],
        "epochs": 300,
        "learning_rate": 1.0,
        "batch_size": 4,
        "seed": 3,
        "validation_split": 0.0,
        "shuffle": False,
    }
    data.update(overrides)
    return TrainingConfig.from_mapping(data)


def _regression_dataset(rows=10):
    rng = np.random.default_rng(11)
    x = rng.uniform(-1, 1, size=(rows, 3))
    y = np.tanh(x @ np.array([[0.5], [-0.3], [0.8]]))
    return Dataset(features=Matrix(x), labels=Matrix(y))


def test_converges_and_round_trips_through_checkpoint(tmp_path):
    dataset = _or_dataset()
    store = CheckpointStore(tmp_path / "or.ckpt")
    trainer = Trainer(_config(), store=store)
    result = trainer.fit(dataset.all())

    assert trainer.state is TrainerState.COMPLETED
    assert result.epochs_completed == 300
    assert result.train_metrics["accuracy"] >= 0.99

    checkpoint = load_for_inference(store.path)
    assert checkpoint.epoch == 300
    assert checkpoint.network.frozen
    assert checkpoint.network.same_parameters(result.network)
    report = Evaluator(checkpoint).evaluate(dataset.all())
    assert report.rows == 4
    assert report.metrics["accuracy"] >= 0.99
    assert report.metrics["loss"] == pytest.approx(result.final_loss)


def test_training_is_deterministic(tmp_path):
    dataset = _or_dataset()
    first = Trainer(_config(epochs=40), store=CheckpointStore(tmp_path / "a.ckpt")).fit(
        dataset.all()
    )
    second = Trainer(_config(epochs=40), store=CheckpointStore(tmp_path / "b.ckpt")).fit(
        dataset.all()
    )
    assert first.network.same_parameters(second.network)
    assert [h for h in first.history if h["event"] == "epoch"] == [
        h for h in second.history if h["event"] == "epoch"
    ]


def test_worker_count_does_not_change_epoch_aggregation():
    dataset = _regression_dataset()
    common = dict(
        topology=[3, [5, "tanh"], [1, "identity"]],
        epochs=5,
        learning_rate=0.1,
        batch_size=3,
        shuffle=True,
    )
    single = Trainer(_config(workers=1, **common)).fit(dataset.all())
    pooled = Trainer(_config(workers=3, **common)).fit(dataset.all())
    assert single.network.same_parameters(pooled.network)


def test_round_aggregation_steps_once_per_round():
    dataset = _regression_dataset()
    trainer = Trainer(
        _config(
            topology=[3, [1, "identity"]],
            epochs=1,
            batch_size=3,
            workers=2,
            aggregation="round",
            learning_rate=0.1,
        )
    )
    trainer.fit(dataset.all())
    # 10 rows in batches of 3 -> 4 batches -> 2 rounds of 2 workers
    assert trainer.optimizer.steps == 2


def _diverge_on(calls_to_fail):
    calls = {"n": 0}

    def gradient_fn(network, batch, loss, index):
        calls["n"] += 1
        result = compute_gradients(network, batch, loss, index)
        if calls["n"] in calls_to_fail:
            return BatchResult(result.index, result.rows, float("nan"), result.gradients)
        return result

    return gradient_fn


def _infinite_gradient_on(calls_to_fail):
    calls = {"n": 0}
    lock = threading.Lock()

    def gradient_fn(network, batch, loss, index):
        with lock:
            calls["n"] += 1
            call = calls["n"]
        result = compute_gradients(network, batch, loss, index)
        if call not in calls_to_fail:
            return result
        first = result.gradients[0]
        poisoned = LayerGradients(Matrix(np.full(first.weights.shape, np.inf)), first.bias)
        return BatchResult(result.index, result.rows, result.loss, [poisoned, *result.gradients[1:]])

    return gradient_fn


def test_divergence_rolls_back_and_halves_learning_rate(tmp_path):
    store = CheckpointStore(tmp_path / "model.ckpt")
    trainer = Trainer(
        _config(epochs=6, learning_rate=0.5),
        store=store,
        gradient_fn=_diverge_on({3}),
    )
    result = trainer.fit(_or_dataset().all())

    rollbacks = [h for h in result.history if h["event"] == "rollback"]
    assert len(rollbacks) == 1
    assert rollbacks[0]["epoch"] == 3
    assert rollbacks[0]["restored_epoch"] == 2
    assert rollbacks[0]["learning_rate"] == pytest.approx(0.25)
    assert result.epochs_completed == 6
    assert result.learning_rate == pytest.approx(0.25)

    saved = store.load()
    assert saved.epoch == 6
    assert saved.network.is_finite()
    assert saved.optimizer_state.learning_rate == pytest.approx(0.25)


def test_second_consecutive_divergence_fails_without_saving_bad_state(tmp_path):
    store = CheckpointStore(tmp_path / "model.ckpt")
    trainer = Trainer(
        _config(epochs=6, learning_rate=0.5),
        store=store,
        gradient_fn=_diverge_on({3, 4}),
    )
    with pytest.raises(NumericDivergence):
        trainer.fit(_or_dataset().all())
    assert trainer.state is TrainerState.FAILED

    saved = store.load()
    assert saved.epoch == 2
    assert saved.network.is_finite()


def test_divergence_budget_resets_after_a_good_epoch():
    trainer = Trainer(_config(epochs=5, learning_rate=0.5), gradient_fn=_diverge_on({2, 4}))
    result = trainer.fit(_or_dataset().all())
    rollbacks = [h for h in result.history if h["event"] == "rollback"]
    assert len(rollbacks) == 2
    assert result.learning_rate == pytest.approx(0.125)


def test_resumes_from_existing_checkpoint(tmp_path):
    dataset = _or_dataset()
    path = tmp_path / "model.ckpt"
    Trainer(_config(epochs=10), store=CheckpointStore(path)).fit(dataset.all())
    resumed = Trainer(_config(epochs=25), store=CheckpointStore(path))
    result = resumed.fit(dataset.all())
    assert [h["epoch"] for h in result.history if h["event"] == "epoch"] == list(range(11, 26))

    straight = Trainer(_config(epochs=25)).fit(dataset.all())
    assert straight.network.same_parameters(result.network)


def test_corrupt_checkpoint_falls_back_to_fresh_network(tmp_path):
    path = tmp_path / "model.ckpt"
    path.write_bytes(b"garbage")
    network = generate_network([2, [4, "tanh"], [2, "softmax"]], np.random.default_rng(99))
    trainer = Trainer(_config(epochs=2), store=CheckpointStore(path), network=network)
    trainer.fit(_or_dataset().all())
    assert CheckpointStore(path).load().epoch == 2


def test_checkpoint_interval(tmp_path):
    trainer = Trainer(_config(epochs=7, checkpoint_every=3), store=CheckpointStore(tmp_path / "m.ckpt"))
    result = trainer.fit(_or_dataset().all())
    saved = [h["epoch"] for h in result.history if h["event"] == "checkpoint"]
    assert saved == [0, 3, 6, 7]


def test_epoch_callbacks_receive_validation_metrics():
    seen = []
    dataset = _regression_dataset(rows=20)
    splits = dataset.split(validation_split=0.25, seed=0)
    trainer = Trainer(
        _config(topology=[3, [4, "tanh"], [1, "identity"]], epochs=3, learning_rate=0.1),
        callbacks=[lambda epoch, metrics: seen.append((epoch, dict(metrics)))],
    )
    result = trainer.fit(splits.train, splits.validation)
    assert [epoch for epoch, _ in seen] == [1, 2, 3]
    assert {"loss", "learning_rate", "val_loss", "val_accuracy"} <= set(seen[-1][1])
    assert result.validation_metrics["loss"] == pytest.approx(seen[-1][1]["val_loss"])


def test_infinite_gradient_mid_epoch_undoes_the_partial_epoch(tmp_path):
    store = CheckpointStore(tmp_path / "model.ckpt")
    # 4 single-row batches in rounds of 2: epoch 3 is calls 9-12, the second round is 11-12
    trainer = Trainer(
        _config(epochs=4, learning_rate=0.5, batch_size=1, workers=2, aggregation="round"),
        store=store,
        gradient_fn=_infinite_gradient_on({11}),
    )
    result = trainer.fit(_or_dataset().all())

    rollbacks = [h for h in result.history if h["event"] == "rollback"]
    assert len(rollbacks) == 1
    assert rollbacks[0]["epoch"] == 3
    assert rollbacks[0]["restored_epoch"] == 2
    assert result.learning_rate == pytest.approx(0.25)
    assert result.epochs_completed == 4
    assert result.network.is_finite()
    assert store.load().epoch == 4


def test_bare_array_checkpoint_falls_back_to_fresh_network(tmp_path):
    path = tmp_path / "model.ckpt"
    with path.open("wb") as handle:
        np.save(handle, np.zeros(3))
    trainer = Trainer(_config(epochs=2), store=CheckpointStore(path))
    trainer.fit(_or_dataset().all())
    assert trainer.state is TrainerState.COMPLETED
    assert CheckpointStore(path).load().epoch == 2


def test_softmax_temperature_survives_checkpoint_and_resume(tmp_path):
    dataset = _or_dataset()
    path = tmp_path / "model.ckpt"
    topology = [2, [4, "tanh"], [2, "softmax", 0.5]]
    first = Trainer(_config(topology=topology, epochs=4), store=CheckpointStore(path))
    first_result = first.fit(dataset.all())

    saved = CheckpointStore(path).load()
    assert saved.network.layers[-1].temperature == 0.5
    assert saved.network.same_parameters(first_result.network)

    resumed = Trainer(_config(topology=topology, epochs=6), store=CheckpointStore(path))
    result = resumed.fit(dataset.all())
    assert [h["epoch"] for h in result.history if h["event"] == "epoch"] == [5, 6]
