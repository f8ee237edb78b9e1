"""
Batch accumulation and rotation for one source file.

The rotator writes JSON lines into a local artifact and, whenever the batch
boundary is reached, finalizes it:

    WRITING -> FLUSHING -> (COMPRESSING) -> UPLOADING -> ROTATING -> WRITING

End-of-stream finalizes the last non-empty batch and ends in DONE. A
failure while compressing or uploading stops the file: no further batches
are attempted and the error propagates to the caller.

Upload keys are deterministic ("<base>/batch-<n>.json[.gz]"), so re-running
a file overwrites its earlier objects instead of duplicating them.
"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterable

import structlog

from sfm_exporter.artifacts import (
    artifact_filename,
    base_name,
    cleanup_temp_files,
    format_bytes,
    run_stamp,
    upload_key,
)
from sfm_exporter.compression import Compressor, GzipCompressor
from sfm_exporter.config import Config
from sfm_exporter.errors import CompressionError, UploadError
from sfm_exporter.storage import BlobStore

log = structlog.get_logger()


class RotatorState(enum.Enum):
    WRITING = "writing"
    FLUSHING = "flushing"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    ROTATING = "rotating"
    DONE = "done"


@dataclass
class UploadedBatch:
    """One finalized batch that the blob store acknowledged."""
    batch_index: int
    key: str
    records: int
    local_path: str      # The file that was uploaded
    compressed: bool
    size_bytes: int


class BatchRotator:
    """
    Accumulates records into size-bounded batches and uploads each one.

    Use as a context manager, or call run() which does so:

        with BatchRotator(source_file, config, store) as rotator:
            for line in lines:
                rotator.write(line)
            batches = rotator.finish()
    """

    def __init__(
        self,
        source_file: str,
        config: Config,
        store: BlobStore,
        compressor: Compressor | None = None,
        stamp: str | None = None,
    ) -> None:
        self.source_file = source_file
        self.config = config
        self.store = store
        self.compressor = compressor or GzipCompressor()
        self.base = base_name(source_file)
        self.stamp = stamp or run_stamp()

        self.state: RotatorState | None = None
        self.batch_index = 0
        self.batch_records = 0
        self.total_records = 0
        self.uploaded: list[UploadedBatch] = []

        self._artifact_path: str | None = None
        self._writer: IO[str] | None = None

    def __enter__(self) -> "BatchRotator":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        # Only closes the handle; a failed batch's artifact stays for inspection
        self._close_writer()

    def _transition(self, state: RotatorState) -> None:
        log.debug(
            "rotator_state",
            file=self.source_file,
            batch=self.batch_index,
            state=state.value,
        )
        self.state = state

    def open(self) -> None:
        """Create the first artifact and start WRITING."""
        Path(self.config.temp_dir).mkdir(parents=True, exist_ok=True)
        self._open_artifact()
        self._transition(RotatorState.WRITING)

    def _open_artifact(self) -> None:
        filename = artifact_filename(self.base, self.stamp, self.batch_index)
        self._artifact_path = str(Path(self.config.temp_dir) / filename)
        self._writer = open(self._artifact_path, "w", encoding="utf-8", newline="\n")

    def _close_writer(self) -> None:
        if self._writer is not None and not self._writer.closed:
            self._writer.close()

    def write(self, line: str) -> None:
        """
        Append one JSON line to the current batch.

        Rotates immediately after the record that fills the batch, so no
        record ever spans two batches.
        """
        if self.state is not RotatorState.WRITING:
            raise RuntimeError(f"cannot write in state {self.state}")

        self._writer.write(line)
        self._writer.write("\n")
        self.batch_records += 1
        self.total_records += 1

        # Bound buffered data independently of the batch boundary
        if self.total_records % self.config.flush_every == 0:
            self._writer.flush()

        if self.config.batch_size > 0 and self.batch_records >= self.config.batch_size:
            self._finalize()
            self._rotate()

    def finish(self) -> list[UploadedBatch]:
        """
        Finalize the trailing batch at end-of-stream and enter DONE.

        An empty trailing artifact (no records, or the stream ended right
        on a batch boundary) is deleted instead of uploaded.

        Returns:
            Every batch uploaded for this file, in order
        """
        if self.state is RotatorState.DONE:
            return self.uploaded

        if self.batch_records > 0:
            self._finalize()
        else:
            self._close_writer()
            cleanup_temp_files([self._artifact_path])

        self._transition(RotatorState.DONE)
        return self.uploaded

    def run(self, lines: Iterable[str]) -> list[UploadedBatch]:
        """Write every line and finish. Returns the uploaded batches."""
        with self:
            for line in lines:
                self.write(line)
            return self.finish()

    def _finalize(self) -> None:
        """FLUSHING -> (COMPRESSING) -> UPLOADING for the current batch."""
        self._transition(RotatorState.FLUSHING)
        self._writer.flush()
        self._close_writer()

        artifact = self._artifact_path
        upload_path = artifact

        if self.config.compression:
            self._transition(RotatorState.COMPRESSING)
            try:
                upload_path = self.compressor.compress(artifact)
            except CompressionError as e:
                e.source_file = self.source_file
                e.batch_index = self.batch_index
                raise

        compressed = upload_path != artifact
        key = upload_key(self.base, self.batch_index, compressed)
        size_bytes = Path(upload_path).stat().st_size

        self._transition(RotatorState.UPLOADING)
        try:
            self.store.put(upload_path, key)
        except Exception as e:
            raise UploadError(
                f"error uploading {upload_path} to {self.store.uri(key)}: {e}",
                key=key,
                source_file=self.source_file,
                batch_index=self.batch_index,
            ) from e

        self.uploaded.append(UploadedBatch(
            batch_index=self.batch_index,
            key=key,
            records=self.batch_records,
            local_path=upload_path,
            compressed=compressed,
            size_bytes=size_bytes,
        ))

        log.info(
            "batch_uploaded",
            file=self.source_file,
            batch=self.batch_index,
            records=self.batch_records,
            key=key,
            destination=self.store.uri(key),
            size=format_bytes(size_bytes),
            compressed=compressed,
        )

        if not self.config.keep_artifacts:
            cleanup_temp_files([artifact, upload_path] if compressed else [artifact])

    def _rotate(self) -> None:
        """ROTATING: open the next artifact and reset the batch counter."""
        self._transition(RotatorState.ROTATING)
        self.batch_index += 1
        self.batch_records = 0
        self._open_artifact()
        self._transition(RotatorState.WRITING)
