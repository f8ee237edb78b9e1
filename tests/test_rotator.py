"""Tests for batch accumulation, rotation and upload handoff."""

import gzip
import json
from pathlib import Path

import pytest

from sfm_exporter.errors import CompressionError, UploadError
from sfm_exporter.rotator import BatchRotator, RotatorState
from tests.helpers import RecordingStore, json_lines

SOURCE = "/data/segment_01.sfm"


def _records(n: int) -> list[str]:
    return [json.dumps({"id": str(i)}, separators=(",", ":")) for i in range(n)]


class PassThroughCompressor:
    """Compressor that never finds compression worthwhile."""

    suffix = ".gz"

    def __init__(self) -> None:
        self.calls: list[str] = []

    def compress(self, path: str) -> str:
        self.calls.append(path)
        return path

    def decompress(self, path: str) -> str:
        raise NotImplementedError


class FailingCompressor(PassThroughCompressor):
    """Fails on the given 0-based call."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on

    def compress(self, path: str) -> str:
        if len(self.calls) == self.fail_on:
            self.calls.append(path)
            raise CompressionError("disk full")
        return super().compress(path)


def test_1200_records_in_batches_of_500(make_config, store):
    config = make_config(batch_size=500)

    batches = BatchRotator(SOURCE, config, store).run(_records(1200))

    assert [b.key for b in batches] == [
        "segment_01/batch-0.json",
        "segment_01/batch-1.json",
        "segment_01/batch-2.json",
    ]
    assert [b.records for b in batches] == [500, 500, 200]
    assert [len(json_lines(store.objects[b.key])) for b in batches] == [500, 500, 200]


def test_records_keep_order_across_batches(make_config, store):
    config = make_config(batch_size=3)
    records = _records(7)

    BatchRotator(SOURCE, config, store).run(records)

    uploaded = []
    for key in store.keys:
        uploaded.extend(json_lines(store.objects[key]))
    assert uploaded == records


@pytest.mark.parametrize("batch_size", [0, -1])
def test_non_positive_batch_size_gives_single_artifact(make_config, store, batch_size):
    config = make_config(batch_size=batch_size, flush_every=10)

    batches = BatchRotator(SOURCE, config, store).run(_records(2500))

    assert [b.key for b in batches] == ["segment_01/batch-0.json"]
    assert batches[0].records == 2500


def test_record_filling_batch_triggers_rotation(make_config, store):
    config = make_config(batch_size=2)

    BatchRotator(SOURCE, config, store).run(_records(3))

    assert json_lines(store.objects["segment_01/batch-0.json"]) == _records(2)
    assert json_lines(store.objects["segment_01/batch-1.json"]) == _records(3)[2:]


def test_exact_multiple_leaves_no_empty_trailing_batch(make_config, store, tmp_path):
    config = make_config(batch_size=500)

    rotator = BatchRotator(SOURCE, config, store)
    batches = rotator.run(_records(1000))

    assert len(batches) == 2
    assert store.keys == ["segment_01/batch-0.json", "segment_01/batch-1.json"]
    assert rotator.state is RotatorState.DONE
    assert list((tmp_path / "work").iterdir()) == []


def test_no_records_uploads_nothing(make_config, store, tmp_path):
    rotator = BatchRotator(SOURCE, make_config(), store)

    assert rotator.run([]) == []
    assert store.calls == []
    assert rotator.state is RotatorState.DONE
    assert list((tmp_path / "work").iterdir()) == []


def test_keep_artifacts_leaves_local_files(make_config, store, tmp_path):
    config = make_config(batch_size=2, keep_artifacts=True)

    BatchRotator(SOURCE, config, store, stamp="20240115-103000").run(_records(3))

    assert sorted(p.name for p in (tmp_path / "work").iterdir()) == [
        "segment_01-20240115-103000-batch-1.json",
        "segment_01-20240115-103000.json",
    ]


def test_writer_flushed_every_n_records(make_config, store):
    config = make_config(batch_size=100, flush_every=2)

    with BatchRotator(SOURCE, config, store) as rotator:
        rotator.write(_records(1)[0])
        rotator.write(_records(2)[1])
        on_disk = Path(rotator._artifact_path).read_text()

    assert json_lines(on_disk.encode()) == _records(2)


def test_compressed_artifact_uploaded_with_gz_suffix(make_config, store):
    config = make_config(batch_size=0, compression=True)
    records = _records(2000)

    batches = BatchRotator(SOURCE, config, store).run(records)

    assert [b.key for b in batches] == ["segment_01/batch-0.json.gz"]
    assert batches[0].compressed is True
    payload = gzip.decompress(store.objects["segment_01/batch-0.json.gz"])
    assert json_lines(payload) == records


def test_uncompressed_upload_when_compression_not_beneficial(make_config, store):
    config = make_config(batch_size=0, compression=True)
    compressor = PassThroughCompressor()
    records = _records(3)

    batches = BatchRotator(SOURCE, config, store, compressor=compressor).run(records)

    assert len(compressor.calls) == 1
    assert [b.key for b in batches] == ["segment_01/batch-0.json"]
    assert batches[0].compressed is False
    assert store.objects["segment_01/batch-0.json"] == ("\n".join(records) + "\n").encode()


def test_compression_disabled_never_calls_compressor(make_config, store):
    compressor = PassThroughCompressor()

    BatchRotator(SOURCE, make_config(batch_size=2), store, compressor=compressor).run(_records(5))

    assert compressor.calls == []


def test_compression_failure_stops_remaining_batches(make_config, store):
    config = make_config(batch_size=2, compression=True)
    compressor = FailingCompressor(fail_on=1)
    rotator = BatchRotator(SOURCE, config, store, compressor=compressor)

    with pytest.raises(CompressionError) as excinfo:
        rotator.run(_records(10))

    assert excinfo.value.batch_index == 1
    assert excinfo.value.source_file == SOURCE
    assert store.keys == ["segment_01/batch-0.json"]
    assert len(compressor.calls) == 2


def test_upload_failure_stops_remaining_batches(make_config):
    store = RecordingStore(fail_on={1})
    rotator = BatchRotator(SOURCE, make_config(batch_size=2), store)

    with pytest.raises(UploadError) as excinfo:
        rotator.run(_records(10))

    assert excinfo.value.key == "segment_01/batch-1.json"
    assert excinfo.value.batch_index == 1
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert store.keys == ["segment_01/batch-0.json", "segment_01/batch-1.json"]
    assert [b.batch_index for b in rotator.uploaded] == [0]


def test_failed_batch_artifact_kept_for_inspection(make_config, tmp_path):
    store = RecordingStore(fail_on={0})
    rotator = BatchRotator(SOURCE, make_config(batch_size=0), store, stamp="20240115-103000")

    with pytest.raises(UploadError):
        rotator.run(_records(4))

    assert (tmp_path / "work" / "segment_01-20240115-103000.json").exists()


def test_write_after_finish_is_rejected(make_config, store):
    rotator = BatchRotator(SOURCE, make_config(), store)
    rotator.run(_records(1))

    with pytest.raises(RuntimeError):
        rotator.write("{}")
