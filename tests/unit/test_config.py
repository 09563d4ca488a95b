import pytest

from nnlearn.core.activations import ActivationKind
from nnlearn.core.errors import ConfigError, InvalidTopology
from nnlearn.training.config import TrainingConfig, load_config, load_topology

CONFIG = """
topology:
  - 2
  - [8, relu]
  - {width: 3, activation: softmax}
epochs: 5
learning_rate: 0.2
batch_size: 16
seed: 4
workers: 2
optimizer:
  name: momentum
  momentum: 0.8
something_new: true
"""


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    config = load_config(path)
    assert config.topology.widths == [2, 8, 3]
    assert config.topology.output_activation is ActivationKind.SOFTMAX
    assert config.epochs == 5
    assert config.learning_rate == 0.2
    assert config.workers == 2
    assert config.optimizer.name == "momentum"
    assert config.optimizer.options == {"momentum": 0.8}
    # defaults
    assert config.validation_split == 0.1
    assert config.aggregation == "epoch"
    assert config.loss == "auto"


def test_overrides_replace_file_values(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    config = load_config(path, {"epochs": 9, "seed": None})
    assert config.epochs == 9
    assert config.seed == 4


def test_missing_required_keys_fail_at_load(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("topology: [2, 1]\nlearning_rate: 0.1\n")
    with pytest.raises(ConfigError) as info:
        load_config(path)
    assert "epochs" in str(info.value)
    assert load_topology(path).widths == [2, 1]

    path.write_text("topology: [2, 1]\nepochs:\n")
    with pytest.raises(ConfigError) as info:
        load_config(path)
    assert "epochs" in str(info.value)


@pytest.mark.parametrize(
    "overrides",
    [
        {"learning_rate": 0},
        {"batch_size": 0},
        {"workers": 0},
        {"validation_split": 0.6, "test_split": 0.5},
        {"aggregation": "step"},
        {"label_encoding": "ordinal"},
        {"epochs": "many"},
        {"shuffle": "sometimes"},
        {"enable_plots": 2},
    ],
)
def test_invalid_values(overrides):
    data = {"topology": [2, 1], "epochs": 1, **overrides}
    with pytest.raises(ConfigError):
        TrainingConfig.from_mapping(data)


def test_bad_topology_is_reported_as_topology_error():
    with pytest.raises(InvalidTopology):
        TrainingConfig.from_mapping({"topology": [2], "epochs": 1})


def test_unreadable_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
    path = tmp_path / "broken.yaml"
    path.write_text("topology: [2, 1\n")
    with pytest.raises(ConfigError):
        load_config(path)
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_boolean_options_parse_yaml_strings(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text('topology: [2, 1]\nepochs: 1\nshuffle: "false"\nenable_plots: "yes"\n')
    config = load_config(path)
    assert config.shuffle is False
    assert config.enable_plots is True
    assert TrainingConfig.from_mapping({"topology": [2, 1], "epochs": 1, "shuffle": "No"}).shuffle is False
