import csv
import json

from nnlearn.reporting import CsvSink, JsonlSink, PlotAdapter, write_manifest


def test_metric_sinks_write_one_record_per_epoch(tmp_path):
    jsonl = JsonlSink(tmp_path / "metrics.jsonl", seed=5)
    table = CsvSink(tmp_path / "metrics.csv")
    for epoch, loss in [(1, 0.9), (2, 0.4)]:
        metrics = {"loss": loss, "learning_rate": 0.1, "note": "ignored"}
        jsonl.on_epoch(epoch, metrics)
        table(epoch, metrics)

    records = [json.loads(line) for line in (tmp_path / "metrics.jsonl").read_text().splitlines()]
    assert [r["epoch"] for r in records] == [1, 2]
    assert records[0] == {"epoch": 1, "split": "train", "seed": 5, "loss": 0.9, "learning_rate": 0.1}

    with (tmp_path / "metrics.csv").open() as handle:
        rows = list(csv.DictReader(handle))
    assert [row["loss"] for row in rows] == ["0.9", "0.4"]


def test_plot_adapter_is_inert_unless_enabled(tmp_path):
    disabled = PlotAdapter(tmp_path / "off")
    disabled.on_epoch(1, {"loss": 1.0})
    assert disabled.close() is None
    assert not (tmp_path / "off").exists()

    enabled = PlotAdapter(tmp_path / "on", enable_plots=True)
    for epoch in range(1, 4):
        enabled(epoch, {"loss": 1.0 / epoch, "val_loss": 1.2 / epoch})
    path = enabled.close()
    assert path is not None and path.exists()


def test_manifest_records_config_and_result(tmp_path):
    path = write_manifest(
        tmp_path / "run" / "manifest.json",
        config={"epochs": 3},
        dataset={"rows": 4},
        result={"final_loss": 0.1},
    )
    manifest = json.loads(open(path).read())
    assert manifest["config"] == {"epochs": 3}
    assert manifest["dataset"] == {"rows": 4}
    assert manifest["result"] == {"final_loss": 0.1}
