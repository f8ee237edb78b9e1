"""
Export state tracking via the sentinel line embedded in each SFM file.

The sentinel is a line of the form "jsonS3Exported:true" (whitespace around
the colon tolerated). It is parsed strictly: the whole line must be the key,
a colon and a boolean literal, so fields that merely contain the key
(e.g. "jsonS3ExportedAt:true") never match.

Marking a file is a parse -> flip -> serialize round-trip over its lines.
Every byte outside the sentinel line is written back unchanged.
"""

import enum
import os
import re
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import structlog

from sfm_exporter.config import SfmFormat
from sfm_exporter.errors import StateUpdateError

log = structlog.get_logger()

# Round-trips arbitrary bytes through str
ENCODING = "utf-8"
ERRORS = "surrogateescape"

# Splits on "\n" only so "\r\n" endings and any other bytes survive a rewrite
_LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")


@lru_cache(maxsize=8)
def _sentinel_pattern(key: str) -> re.Pattern:
    return re.compile(
        rf"^(?P<lead>\s*{re.escape(key)}\s*:\s*)(?P<value>true|false)(?P<trail>\s*)$"
    )


def parse_sentinel(line: str, key: str) -> bool | None:
    """
    Parse a line as the export sentinel.

    Returns:
        The sentinel's boolean value, or None if the line is not a sentinel
    """
    match = _sentinel_pattern(key).match(line.rstrip("\r\n"))
    if match is None:
        return None
    return match.group("value") == "true"


class MarkOutcome(enum.Enum):
    """What mark_exported did to the file."""
    ALREADY_EXPORTED = "already_exported"
    FLIPPED = "flipped"
    INSERTED = "inserted"


@dataclass
class SentinelDocument:
    """An SFM file's lines with the location and value of its sentinel."""
    lines: list[str]                 # Lines including their original endings
    key: str
    sentinel_index: int | None = None
    exported: bool = False

    @classmethod
    def parse(cls, text: str, key: str) -> "SentinelDocument":
        """Split text into lines and locate the first sentinel line."""
        lines = _LINE_RE.findall(text)
        for index, line in enumerate(lines):
            value = parse_sentinel(line, key)
            if value is not None:
                return cls(lines=lines, key=key, sentinel_index=index, exported=value)
        return cls(lines=lines, key=key)

    def mark_exported(self, anchors: tuple[str, ...]) -> MarkOutcome:
        """
        Set the sentinel to true.

        Flips an existing false sentinel in place, keeping its spacing, or
        inserts a new sentinel line after the first anchor line.

        Raises:
            StateUpdateError: If there is no sentinel and no anchor line
        """
        if self.sentinel_index is not None:
            if self.exported:
                return MarkOutcome.ALREADY_EXPORTED

            line = self.lines[self.sentinel_index]
            body = line.rstrip("\r\n")
            ending = line[len(body):]
            match = _sentinel_pattern(self.key).match(body)
            self.lines[self.sentinel_index] = (
                f"{match.group('lead')}true{match.group('trail')}{ending}"
            )
            self.exported = True
            return MarkOutcome.FLIPPED

        for index, line in enumerate(self.lines):
            if any(anchor in line for anchor in anchors):
                body = line.rstrip("\r\n")
                ending = line[len(body):]
                sentinel = f"{self.key}:true"
                if ending:
                    inserted = sentinel + ending
                else:
                    # Anchor is the last line and has no newline
                    self.lines[index] = body + "\n"
                    inserted = sentinel
                self.lines.insert(index + 1, inserted)
                self.sentinel_index = index + 1
                self.exported = True
                return MarkOutcome.INSERTED

        raise StateUpdateError(
            f"no '{self.key}' sentinel and no anchor line ({', '.join(anchors)}) to insert it after"
        )

    def serialize(self) -> str:
        return "".join(self.lines)


class ExportStateTracker:
    """Reads and writes the export sentinel of SFM files."""

    def __init__(self, fmt: SfmFormat) -> None:
        self.fmt = fmt

    def is_exported(self, path: str) -> bool:
        """
        Check whether a file has already been exported.

        The first sentinel line in the file is authoritative.

        Raises:
            OSError: If the file cannot be read
        """
        with open(path, encoding=ENCODING, errors=ERRORS) as f:
            for line in f:
                value = parse_sentinel(line, self.fmt.sentinel_key)
                if value is not None:
                    return value
        return False

    def mark_exported(self, path: str) -> MarkOutcome:
        """
        Mark a file as exported, rewriting it atomically.

        Marking an already exported file leaves it untouched.

        Raises:
            StateUpdateError: If the file cannot be read, has nowhere to put
                the sentinel, or cannot be written back
        """
        try:
            text = Path(path).read_bytes().decode(ENCODING, ERRORS)
        except OSError as e:
            raise StateUpdateError(f"error reading SFM file: {e}", source_file=path) from e

        document = SentinelDocument.parse(text, self.fmt.sentinel_key)
        try:
            outcome = document.mark_exported(self.fmt.anchors)
        except StateUpdateError as e:
            e.source_file = path
            raise

        if outcome is MarkOutcome.ALREADY_EXPORTED:
            log.debug("sentinel_already_set", file=path)
            return outcome

        try:
            _atomic_write(path, document.serialize().encode(ENCODING, ERRORS))
        except OSError as e:
            raise StateUpdateError(f"error updating SFM file: {e}", source_file=path) from e

        log.debug("sentinel_written", file=path, outcome=outcome.value)
        return outcome


def _atomic_write(path: str, data: bytes) -> None:
    """Write data to a sibling temp file, then rename it over path."""
    target = Path(path)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, target.stat().st_mode & 0o7777)
        os.replace(tmp_path, target)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
