import numpy as np
import pytest

from nnlearn.core.errors import ConfigError, ShapeMismatch
from nnlearn.core.matrix import Matrix
from nnlearn.core.network import zero_network
from nnlearn.core.optimizers import (
    AdamOptimizer,
    MomentumOptimizer,
    SGDOptimizer,
    build_optimizer,
    optimizer_from_state,
)
from nnlearn.core.types import LayerGradients


def _network():
    return zero_network([2, [1, "identity"]])


def _grads(value=1.0):
    return [LayerGradients(Matrix([[value, -value]]), Matrix([[value]]))]


def test_sgd_subtracts_scaled_gradient():
    network = _network()
    SGDOptimizer(learning_rate=0.5).step(network, _grads())
    assert network.layers[0].weights.tolist() == [[-0.5, 0.5]]
    assert network.layers[0].bias.tolist() == [[-0.5]]


def test_momentum_accumulates_velocity():
    network = _network()
    opt = MomentumOptimizer(learning_rate=1.0, momentum=0.5)
    opt.step(network, _grads())
    opt.step(network, _grads())
    # v1 = 1, v2 = 0.5 * 1 + 1
    assert network.layers[0].weights.tolist() == [[-2.5, 2.5]]


def test_adam_first_step_moves_by_learning_rate():
    network = _network()
    opt = AdamOptimizer(learning_rate=0.1)
    opt.step(network, _grads(3.0))
    np.testing.assert_allclose(network.layers[0].weights.data, [[-0.1, 0.1]], rtol=1e-6)


def test_gradient_shapes_are_checked():
    network = _network()
    with pytest.raises(ShapeMismatch):
        SGDOptimizer(learning_rate=0.1).step(
            network, [LayerGradients(Matrix([[1.0]]), Matrix([[1.0]]))]
        )
    with pytest.raises(ShapeMismatch):
        SGDOptimizer(learning_rate=0.1).step(network, [])


def test_state_round_trip_resumes_identically():
    first, second = _network(), _network()
    opt = build_optimizer("adam", 0.05, beta1=0.8)
    opt.step(first, _grads())
    restored = optimizer_from_state(opt.state_dict())
    assert restored.state_dict() == opt.state_dict()
    second.layers[0].weights.data[:] = first.layers[0].weights.data
    second.layers[0].bias.data[:] = first.layers[0].bias.data
    opt.step(first, _grads(2.0))
    restored.step(second, _grads(2.0))
    assert first.same_parameters(second)


def test_learning_rate_scaling_and_validation():
    opt = build_optimizer("momentum", 0.4)
    opt.scale_learning_rate(0.5)
    assert opt.learning_rate == pytest.approx(0.2)
    assert opt.state_dict().hyper == {"momentum": 0.9}
    with pytest.raises(ConfigError):
        build_optimizer("rmsprop", 0.1)
    with pytest.raises(ConfigError):
        build_optimizer("sgd", 0.1, momentum=0.9)
    with pytest.raises(ConfigError):
        build_optimizer("sgd", 0.0)
    with pytest.raises(ConfigError):
        SGDOptimizer(learning_rate=0.1).load_state_dict(opt.state_dict())
