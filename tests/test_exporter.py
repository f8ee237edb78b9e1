"""End-to-end tests for the per-file export pipeline."""

import gzip
from pathlib import Path

import pytest

from sfm_exporter.exporter import EXPORTED, FAILED, PENDING, SKIPPED, FileExporter
from sfm_exporter.metrics import MetricsClient
from sfm_exporter.storage import LocalBlobStore
from tests.helpers import RecordingStore, json_lines, sfm_content


@pytest.fixture
def exporter(config, store):
    return FileExporter(config, store)


def test_exports_rows_and_flips_sentinel(exporter, store, write_sfm):
    path = write_sfm("a.sfm", "#id,name\njsonS3Exported:false\n1,alice\n2,bob\n")

    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.keys == ["a/batch-0.json"]
    assert store.objects["a/batch-0.json"] == (
        b'{"id":"1","name":"alice"}\n{"id":"2","name":"bob"}\n'
    )
    assert result.records == 2
    assert result.columns == 2
    assert result.state_updated is True
    assert result.state_outcome == "flipped"
    assert Path(path).read_text() == "#id,name\njsonS3Exported:true\n1,alice\n2,bob\n"


def test_exported_file_is_skipped(exporter, store, write_sfm):
    path = write_sfm("a.sfm", sfm_content(3, sentinel="jsonS3Exported:true"))

    result = exporter.export(path)

    assert result.status == SKIPPED
    assert store.calls == []


def test_second_run_skips_after_success(exporter, store, write_sfm):
    path = write_sfm("a.sfm", sfm_content(3))

    assert exporter.export(path).status == EXPORTED
    assert exporter.export(path).status == SKIPPED
    assert len(store.calls) == 1


def test_upload_failure_leaves_sentinel_false(make_config, write_sfm):
    content = sfm_content(5)
    path = write_sfm("a.sfm", content)
    store = RecordingStore(fail_on={1})
    exporter = FileExporter(make_config(batch_size=2), store)

    result = exporter.export(path)

    assert result.status == FAILED
    assert result.error_type == "UploadError"
    assert result.keys == ["a/batch-0.json"]
    assert Path(path).read_text() == content


def test_rerun_after_failure_overwrites_same_keys(make_config, write_sfm):
    path = write_sfm("a.sfm", sfm_content(5))
    store = RecordingStore(fail_on={1})
    exporter = FileExporter(make_config(batch_size=2), store)

    assert exporter.export(path).status == FAILED
    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.keys == ["a/batch-0.json", "a/batch-1.json", "a/batch-2.json"]
    assert sorted(store.objects) == result.keys
    assert json_lines(store.objects["a/batch-2.json"]) == ['{"id":"4","name":"name-4"}']


def test_missing_header_fails_without_upload(exporter, store, write_sfm):
    content = "jsonS3Exported:false\n1,alice\n"
    path = write_sfm("a.sfm", content)

    result = exporter.export(path)

    assert result.status == FAILED
    assert result.error_type == "SchemaNotFoundError"
    assert store.calls == []
    assert Path(path).read_text() == content


def test_mismatched_rows_dropped_but_file_succeeds(exporter, store, write_sfm):
    path = write_sfm("a.sfm", "#id,name\njsonS3Exported:false\n1,alice\n2\n3,carol\n")

    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.records == 2
    assert result.mismatched == 1
    assert len(json_lines(store.objects["a/batch-0.json"])) == 2


def test_header_only_file_is_marked_without_upload(exporter, store, write_sfm):
    path = write_sfm("a.sfm", sfm_content(0))

    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.keys == []
    assert store.calls == []
    assert result.state_updated is True


def test_sentinel_inserted_after_anchor(exporter, write_sfm):
    path = write_sfm("a.sfm", "#id,name\nsegmeta.json\n1,alice\n")

    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.state_outcome == "inserted"
    assert Path(path).read_text() == "#id,name\nsegmeta.json\njsonS3Exported:true\n1,alice\n"


def test_no_sentinel_and_no_anchor_reported(exporter, store, write_sfm):
    content = "#id,name\n1,alice\n"
    path = write_sfm("a.sfm", content)

    result = exporter.export(path)

    assert result.status == EXPORTED
    assert result.keys == ["a/batch-0.json"]
    assert result.state_updated is False
    assert result.error_type == "StateUpdateError"
    assert Path(path).read_text() == content


def test_dry_run_reports_pending_without_touching_anything(exporter, store, write_sfm):
    content = sfm_content(3)
    path = write_sfm("a.sfm", content)

    result = exporter.export(path, dry_run=True)

    assert result.status == PENDING
    assert store.calls == []
    assert Path(path).read_text() == content


def test_missing_file_fails(exporter, tmp_path):
    result = exporter.export(str(tmp_path / "missing.sfm"))

    assert result.status == FAILED
    assert result.error_type == "FileNotFoundError"


def test_compressed_upload_to_local_store(make_config, write_sfm, tmp_path):
    config = make_config(compression=True)
    store = LocalBlobStore(config.storage_path)
    path = write_sfm("a.sfm", sfm_content(500))

    result = FileExporter(config, store).export(path)

    assert result.keys == ["a/batch-0.json.gz"]
    uploaded = (tmp_path / "exports" / "a" / "batch-0.json.gz").read_bytes()
    assert len(json_lines(gzip.decompress(uploaded))) == 500
    assert list((tmp_path / "work").iterdir()) == []


def test_small_batch_uploaded_uncompressed(make_config, store, write_sfm):
    exporter = FileExporter(make_config(compression=True), store)
    path = write_sfm("a.sfm", sfm_content(1))

    result = exporter.export(path)

    assert result.keys == ["a/batch-0.json"]
    assert store.objects["a/batch-0.json"] == b'{"id":"0","name":"name-0"}\n'


def test_metrics_recorded(config, store, write_sfm):
    metrics = MetricsClient(config)
    exporter = FileExporter(config, store, metrics=metrics)
    path = write_sfm("a.sfm", "#id,name\njsonS3Exported:false\n1,alice\n2\n")

    exporter.export(path)

    assert metrics.pending == [
        "sfm_exporter.files.exported,env=test count=1",
        "sfm_exporter.records.written,env=test count=1",
        "sfm_exporter.records.skipped,env=test count=1",
        "sfm_exporter.batches.uploaded,env=test count=1",
        "sfm_exporter.bytes.uploaded,env=test count=26",
    ]


def test_failed_file_counted_with_error_type(make_config, write_sfm):
    config = make_config(batch_size=2)
    metrics = MetricsClient(config)
    exporter = FileExporter(config, RecordingStore(fail_on={1}), metrics=metrics)
    path = write_sfm("a.sfm", "#id,name\njsonS3Exported:false\n1,a\n2,b\n3,c\n")

    exporter.export(path)

    assert metrics.pending[0] == "sfm_exporter.files.failed,env=test,error_type=UploadError count=1"
    assert "sfm_exporter.batches.uploaded,env=test count=1" in metrics.pending


def test_skipped_file_counted(config, store, write_sfm):
    metrics = MetricsClient(config)
    path = write_sfm("a.sfm", sfm_content(1, sentinel="jsonS3Exported:true"))

    FileExporter(config, store, metrics=metrics).export(path)

    assert metrics.pending == ["sfm_exporter.files.skipped,env=test count=1"]
