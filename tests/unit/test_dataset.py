import numpy as np
import pytest

from nnlearn.core.errors import ConfigError, RowParseError
from nnlearn.data.csv_dataset import load_csv, load_features
from nnlearn.data.utils import BatchPlan, deterministic_split


def _write(path, text):
    path.write_text(text)
    return path


def test_load_csv_splits_features_and_labels(tmp_path):
    path = _write(tmp_path / "data.csv", "a,b,y1,y2\n1,2,0,1\n3,4,1,0\n5,6,1,1\n")
    dataset = load_csv(path, label_columns=2)
    assert dataset.rows == 3
    assert dataset.features.tolist() == [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]
    assert dataset.labels.tolist() == [[0.0, 1.0], [1.0, 0.0], [1.0, 1.0]]
    assert dataset.feature_names == ("a", "b")
    assert dataset.label_names == ("y1", "y2")
    assert dataset.classes is None


@pytest.mark.parametrize(
    "body, row",
    [
        ("1,2,0\n3,x,1\n5,6,0\n", 1),
        ("1,2,0\n3,4,1\n5,,0\n", 2),
        ("1,nan,0\n3,4,1\n", 0),
        ("1,2,0\n3,4,inf\n", 1),
    ],
)
def test_bad_rows_name_the_row_index(tmp_path, body, row):
    path = _write(tmp_path / "bad.csv", "a,b,y\n" + body)
    with pytest.raises(RowParseError) as info:
        load_csv(path)
    assert info.value.row == row
    assert f"row {row}" in str(info.value)


def test_row_with_too_many_fields_is_rejected(tmp_path):
    path = _write(tmp_path / "wide.csv", "a,b,y\n1,2,0\n3,4,1\n5,6,7,8\n")
    with pytest.raises(RowParseError) as info:
        load_csv(path)
    assert info.value.row == 2


def test_onehot_labels_use_sorted_classes(tmp_path):
    path = _write(tmp_path / "cls.csv", "x,label\n0.1,dog\n0.2,cat\n0.3,dog\n")
    dataset = load_csv(path, label_encoding="onehot")
    assert dataset.classes == ("cat", "dog")
    assert dataset.labels.tolist() == [[0.0, 1.0], [1.0, 0.0], [0.0, 1.0]]

    with pytest.raises(RowParseError) as info:
        load_csv(path, label_encoding="onehot", classes=["cat", "bird"])
    assert info.value.row == 0


def test_missing_file_and_label_column_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_csv(tmp_path / "missing.csv")
    path = _write(tmp_path / "one.csv", "y\n1\n")
    with pytest.raises(ConfigError):
        load_csv(path)


def test_load_features_takes_leading_columns(tmp_path):
    path = _write(tmp_path / "data.csv", "a,b,y\n1,2,yes\n3,4,no\n")
    features, names = load_features(path, 2)
    assert features.tolist() == [[1.0, 2.0], [3.0, 4.0]]
    assert names == ("a", "b")


def test_split_is_disjoint_covering_and_deterministic():
    split = deterministic_split(103, validation_split=0.2, test_split=0.1, seed=9)
    combined = np.concatenate([split.train, split.validation, split.test])
    assert sorted(combined.tolist()) == list(range(103))
    assert split.sizes == {"train": 72, "validation": 21, "test": 10}
    again = deterministic_split(103, validation_split=0.2, test_split=0.1, seed=9)
    assert np.array_equal(split.train, again.train)
    assert np.array_equal(split.validation, again.validation)
    other = deterministic_split(103, validation_split=0.2, test_split=0.1, seed=10)
    assert not np.array_equal(split.validation, other.validation)


def test_split_keeps_training_rows():
    with pytest.raises(ConfigError):
        deterministic_split(2, validation_split=0.5, test_split=0.4)
    tiny = deterministic_split(4, validation_split=0.0)
    assert tiny.sizes == {"train": 4, "validation": 0, "test": 0}


def test_batch_plan_keeps_short_last_batch():
    plan = BatchPlan(np.arange(10), 4)
    groups = list(plan)
    assert len(plan) == 3
    assert [g.tolist() for g in groups] == [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]]
    # restartable
    assert [g.tolist() for g in plan] == [g.tolist() for g in groups]


def test_shuffled_batches_depend_on_seed_and_epoch():
    first = [g.tolist() for g in BatchPlan(np.arange(20), 6, shuffle=True, seed=1, epoch=1)]
    again = [g.tolist() for g in BatchPlan(np.arange(20), 6, shuffle=True, seed=1, epoch=1)]
    later = [g.tolist() for g in BatchPlan(np.arange(20), 6, shuffle=True, seed=1, epoch=2)]
    assert first == again
    assert first != later
    assert sorted(sum(first, [])) == list(range(20))
    assert [len(g) for g in first] == [6, 6, 6, 2]


def test_dataset_views_follow_split(tmp_path):
    rows = "\n".join(f"{i},{i * 2},{i % 2}" for i in range(10))
    path = _write(tmp_path / "data.csv", "a,b,y\n" + rows + "\n")
    splits = load_csv(path).split(validation_split=0.3, seed=4)
    assert splits.sizes == {"train": 7, "validation": 3, "test": 0}
    view = splits.get("validation")
    assert view.name == "validation"
    assert view.features.rows == 3
    assert splits.get("all").size == 10
    with pytest.raises(ConfigError):
        splits.get("holdout")
