import pandas as pd
import pytest

from harvester.schema import FAILURE_FIELDS, RECORD_FIELDS, RelocationFailure
from harvester.sink import CsvSink, SinkError, failure_sink


def test_initialize_writes_header_only(tmp_path):
    sink = CsvSink(tmp_path / "out" / "records.csv")

    sink.initialize()

    header = sink.path.read_text(encoding="utf-8").splitlines()
    assert header == [",".join(f'"{name}"' for name in RECORD_FIELDS)]
    assert sink.has_header()


def test_append_keeps_column_order_and_quotes(tmp_path):
    sink = CsvSink(tmp_path / "records.csv", ["city", "headline", "imageWidth"])
    sink.initialize()

    written = sink.append_many(
        [
            {"headline": 'Quote "this", please', "city": "Paris", "imageWidth": "800"},
            {"city": "Lyon"},
        ]
    )
    sink.append({"city": "Nice", "headline": "Third"})

    assert written == 2
    frame = pd.read_csv(sink.path, dtype=str, keep_default_na=False)
    assert list(frame.columns) == ["city", "headline", "imageWidth"]
    assert frame["city"].tolist() == ["Paris", "Lyon", "Nice"]
    assert frame.loc[0, "headline"] == 'Quote "this", please'
    assert frame.loc[1, "headline"] == ""


def test_ensure_initialized_does_not_truncate(tmp_path):
    sink = CsvSink(tmp_path / "records.csv", ["city"])
    sink.initialize()
    sink.append({"city": "Paris"})

    sink.ensure_initialized()

    frame = pd.read_csv(sink.path, dtype=str)
    assert frame["city"].tolist() == ["Paris"]


def test_append_many_with_no_rows(tmp_path):
    sink = CsvSink(tmp_path / "records.csv")
    assert sink.append_many([]) == 0
    assert not sink.path.exists()


def test_failure_sink_layout(tmp_path):
    sink = failure_sink(tmp_path / "records_move_failures.csv")
    sink.initialize()
    sink.append(
        RelocationFailure(
            image_href="a.jpg", image_path="/m/a.jpg", reason="copy_failed"
        ).as_row()
    )

    frame = pd.read_csv(sink.path, dtype=str, keep_default_na=False)
    assert list(frame.columns) == list(FAILURE_FIELDS)
    assert frame.loc[0, "failureReason"] == "copy_failed"
    assert frame.loc[0, "filterStatus"] == "passed"


def test_unwritable_output_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")

    with pytest.raises(SinkError):
        CsvSink(blocker / "records.csv").initialize()
