"""
Record transformation: SFM data lines to JSON Lines.

Each data line is split on the separator and zipped with the header's
column names. Lines whose field count differs from the header are dropped
and counted rather than raised, so one malformed row never fails a file.
"""

import json
from dataclasses import dataclass, field
from typing import Iterable, Iterator

import structlog

from sfm_exporter.config import SfmFormat
from sfm_exporter.schema import HeaderSchema
from sfm_exporter.state import parse_sentinel

log = structlog.get_logger()

# Line numbers of dropped rows kept for logging; the count itself is exact
MAX_MISMATCH_SAMPLES = 20


@dataclass
class TransformStats:
    """Counters for one pass over a file."""
    lines_read: int = 0
    records: int = 0         # Lines emitted as JSON
    skipped: int = 0         # Comment, blank and sentinel lines
    mismatched: int = 0      # Arity mismatches, dropped
    mismatch_lines: list[int] = field(default_factory=list)


class RecordTransformer:
    """Converts data lines into compact, key-ordered JSON objects."""

    def __init__(self, schema: HeaderSchema, fmt: SfmFormat) -> None:
        self.schema = schema
        self.fmt = fmt
        self.stats = TransformStats()

    def to_record(self, line: str) -> dict[str, str] | None:
        """
        Map one line to a record.

        Returns None for lines that carry no record (comments, blanks, the
        sentinel) and for lines whose arity does not match the header. Only
        the latter are counted as mismatches.
        """
        line = line.rstrip("\r\n")
        if line.startswith(self.fmt.comment_marker) or not line.strip():
            self.stats.skipped += 1
            return None
        if parse_sentinel(line, self.fmt.sentinel_key) is not None:
            self.stats.skipped += 1
            return None

        values = line.split(self.fmt.separator)
        if len(values) != len(self.schema):
            self.stats.mismatched += 1
            if len(self.stats.mismatch_lines) < MAX_MISMATCH_SAMPLES:
                self.stats.mismatch_lines.append(self.stats.lines_read)
            return None

        return {name: value.strip() for name, value in zip(self.schema.columns, values)}

    def transform_line(self, line: str) -> str | None:
        """Transform one line to a JSON string without trailing newline."""
        self.stats.lines_read += 1
        record = self.to_record(line)
        if record is None:
            return None

        self.stats.records += 1
        return json.dumps(record, ensure_ascii=False, separators=(",", ":"))

    def transform(self, lines: Iterable[str]) -> Iterator[str]:
        """Yield one JSON string per well-formed line, in input order."""
        for line in lines:
            encoded = self.transform_line(line)
            if encoded is not None:
                yield encoded

        if self.stats.mismatched:
            log.warning(
                "records_dropped_shape_mismatch",
                dropped=self.stats.mismatched,
                expected_fields=len(self.schema),
                sample_lines=self.stats.mismatch_lines,
            )
