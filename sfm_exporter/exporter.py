"""
Per-file export pipeline.

For one SFM file:
1. Read the export sentinel; skip the file if it is already exported
2. Resolve the header schema
3. Rewind and stream every line through the RecordTransformer
4. Feed the JSON lines to the BatchRotator (compress + upload per batch)
5. After every batch uploaded, flip the sentinel to true

Any failure before step 5 leaves the sentinel untouched, so the next run
re-exports the whole file; deterministic keys turn that into an overwrite.
A failure in step 5 is logged but does not undo the upload.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from sfm_exporter.compression import Compressor
from sfm_exporter.config import Config
from sfm_exporter.errors import ExportError, StateUpdateError
from sfm_exporter.rotator import BatchRotator, UploadedBatch
from sfm_exporter.schema import resolve_header
from sfm_exporter.state import ExportStateTracker
from sfm_exporter.storage import BlobStore
from sfm_exporter.transform import RecordTransformer

if TYPE_CHECKING:
    from sfm_exporter.metrics import MetricsClient

log = structlog.get_logger()

EXPORTED = "exported"
SKIPPED = "skipped"    # Sentinel already true
PENDING = "pending"    # Dry run: would be exported
FAILED = "failed"


@dataclass
class ExportResult:
    """Outcome of exporting a single file."""
    source_file: str
    status: str = FAILED
    columns: int = 0
    records: int = 0
    mismatched: int = 0
    batches: list[UploadedBatch] = field(default_factory=list)
    state_updated: bool = False
    state_outcome: str | None = None
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0

    @property
    def keys(self) -> list[str]:
        return [batch.key for batch in self.batches]


class FileExporter:
    """Runs the export pipeline for individual files."""

    def __init__(
        self,
        config: Config,
        store: BlobStore,
        compressor: Compressor | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.compressor = compressor
        self.metrics = metrics
        self.tracker = ExportStateTracker(config.fmt)

    def export(self, path: str, dry_run: bool = False) -> ExportResult:
        """
        Export one file. Never raises for pipeline errors; they are
        captured in the result.

        Args:
            path: SFM file to export
            dry_run: Only check the sentinel, report PENDING instead of exporting

        Returns:
            ExportResult describing what happened
        """
        started = time.monotonic()
        result = ExportResult(source_file=path)

        self._run(path, result, dry_run)

        result.duration_seconds = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_result(result)

        if result.status == EXPORTED:
            log.info(
                "file_exported",
                file=path,
                records=result.records,
                records_dropped=result.mismatched,
                batches=len(result.batches),
                keys=result.keys,
                sentinel=result.state_outcome,
                duration_seconds=round(result.duration_seconds, 3),
            )
        return result

    def _run(self, path: str, result: ExportResult, dry_run: bool) -> None:
        try:
            if self.tracker.is_exported(path):
                result.status = SKIPPED
                log.info("file_already_exported", file=path)
                return

            if dry_run:
                result.status = PENDING
                log.info("file_pending_export", file=path)
                return

            log.info("file_processing_started", file=path)
            self._convert_and_upload(path, result)

        except (ExportError, OSError, UnicodeError) as e:
            result.status = FAILED
            result.error = str(e)
            result.error_type = type(e).__name__
            log.error(
                "file_export_failed",
                file=path,
                error=result.error,
                error_type=result.error_type,
                batch=getattr(e, "batch_index", None),
                batches_uploaded=len(result.batches),
            )
            return

        result.status = EXPORTED
        self._mark_exported(path, result)

    def _convert_and_upload(self, path: str, result: ExportResult) -> None:
        rotator = BatchRotator(path, self.config, self.store, compressor=self.compressor)

        with open(path, encoding="utf-8", errors="replace") as f:
            schema = resolve_header(f, self.config.fmt, source_file=path)
            result.columns = len(schema)
            f.seek(0)

            transformer = RecordTransformer(schema, self.config.fmt)
            try:
                rotator.run(transformer.transform(f))
            finally:
                # Keep the batches acknowledged before any failure
                result.batches = list(rotator.uploaded)
                result.records = transformer.stats.records
                result.mismatched = transformer.stats.mismatched

    def _mark_exported(self, path: str, result: ExportResult) -> None:
        try:
            outcome = self.tracker.mark_exported(path)
        except StateUpdateError as e:
            # Upload already succeeded; the file will be re-exported next run
            log.error(
                "state_update_failed",
                file=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.error = str(e)
            result.error_type = type(e).__name__
            return

        result.state_updated = True
        result.state_outcome = outcome.value
