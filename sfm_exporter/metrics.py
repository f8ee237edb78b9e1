"""
Export metrics pushed to Dynatrace.

Counters are buffered per run in Dynatrace line protocol and sent in a
single request at the end of the run:

    sfm_exporter.files.<status>          one per file (exported, failed, ...)
    sfm_exporter.records.written         JSON lines uploaded
    sfm_exporter.records.skipped         rows dropped for a column-count mismatch
    sfm_exporter.batches.uploaded        batches acknowledged by the store
    sfm_exporter.bytes.uploaded          size of the uploaded artifacts
    sfm_exporter.state_update.failed     exports whose sentinel could not be written
    sfm_exporter.files.found             gauge, files discovered by the scan
    sfm_exporter.run.duration_seconds    gauge, wall time of the run
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from sfm_exporter.config import Config
from sfm_exporter.exporter import EXPORTED, FAILED, ExportResult

if TYPE_CHECKING:
    from sfm_exporter.main import RunSummary

log = structlog.get_logger()

PREFIX = "sfm_exporter"


class MetricsClient:
    """Buffers export metrics and pushes them to Dynatrace on flush."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.start_time = time.monotonic()
        self._buffer: list[str] = []
        self._token: str | None = None

    def _get_token(self) -> str | None:
        """Load Dynatrace token from file."""
        if self._token is not None:
            return self._token

        token_path = Path(self.config.dynatrace_token_path)
        if token_path.exists():
            self._token = token_path.read_text().strip()
            return self._token

        log.debug("dynatrace_token_not_found", path=str(token_path))
        return None

    def record_result(self, result: ExportResult) -> None:
        """Count the outcome of one file export."""
        status_dims = {"error_type": result.error_type} if result.status == FAILED else None
        self.increment(f"{PREFIX}.files.{result.status}", dimensions=status_dims)

        if result.status == EXPORTED:
            self.increment(f"{PREFIX}.records.written", result.records)
            self.increment(f"{PREFIX}.records.skipped", result.mismatched)
            if not result.state_updated:
                self.increment(f"{PREFIX}.state_update.failed")

        # Batches uploaded before a failure still reached the store
        self.increment(f"{PREFIX}.batches.uploaded", len(result.batches))
        self.increment(f"{PREFIX}.bytes.uploaded", sum(b.size_bytes for b in result.batches))

    def record_run(self, summary: RunSummary) -> None:
        """Record run-level gauges once every file has been visited."""
        self.gauge(f"{PREFIX}.files.found", summary.total)
        self.gauge(f"{PREFIX}.run.duration_seconds", round(self.elapsed(), 3))

    def increment(self, metric: str, value: int = 1, dimensions: dict[str, Any] | None = None) -> None:
        """Increment a counter metric. Zero increments are not recorded."""
        if value:
            self._record(metric, value, "count", dimensions)

    def gauge(self, metric: str, value: float, dimensions: dict[str, Any] | None = None) -> None:
        """Record a gauge metric."""
        self._record(metric, value, "gauge", dimensions)

    def elapsed(self) -> float:
        """Return elapsed time since client creation."""
        return time.monotonic() - self.start_time

    @property
    def pending(self) -> list[str]:
        """Metric lines waiting to be flushed."""
        return list(self._buffer)

    def _record(
        self,
        metric: str,
        value: float,
        metric_type: str,
        dimensions: dict[str, Any] | None = None,
    ) -> None:
        dims = {"env": self.config.env}
        if dimensions:
            dims.update(dimensions)

        dim_str = ",".join(f"{k}={v}" for k, v in dims.items())
        self._buffer.append(f"{metric},{dim_str} {metric_type}={value}")

        log.debug("metric_recorded", metric=metric, value=value, type=metric_type)

    def flush(self) -> None:
        """Send buffered metrics to Dynatrace. Never raises."""
        if not self._buffer:
            return

        try:
            token = self._get_token()
            if not token or not self.config.dynatrace_endpoint:
                log.debug("metrics_flush_skipped", reason="no endpoint or token configured")
                return

            response = httpx.post(
                f"{self.config.dynatrace_endpoint}/api/v2/metrics/ingest",
                headers={
                    "Authorization": f"Api-Token {token}",
                    "Content-Type": "text/plain",
                },
                content="\n".join(self._buffer),
                timeout=10,
            )

            if response.status_code == 202:
                log.info("metrics_flushed", count=len(self._buffer))
            else:
                log.error(
                    "metrics_flush_failed",
                    status=response.status_code,
                    body=response.text[:500],
                )
        except Exception as e:
            # Metrics must never change the outcome of an export run
            log.warning("metrics_flush_error", error=str(e), error_type=type(e).__name__)
        finally:
            self._buffer.clear()
