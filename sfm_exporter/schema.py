"""Header schema resolution for SFM files."""

from dataclasses import dataclass
from typing import TextIO

from sfm_exporter.config import SfmFormat
from sfm_exporter.errors import SchemaNotFoundError


@dataclass(frozen=True)
class HeaderSchema:
    """Ordered column names parsed from a file's header line."""
    columns: tuple[str, ...]
    line_number: int  # 1-based line the header was found on

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError("HeaderSchema needs at least one column")

    def __len__(self) -> int:
        return len(self.columns)


def parse_header_line(line: str, fmt: SfmFormat) -> tuple[str, ...] | None:
    """
    Parse a single line as a header.

    A header line starts with the comment marker and contains the separator.
    The marker is stripped, the rest is split on the separator and every
    token is trimmed.

    Returns:
        The column names, or None if the line is not a header
    """
    line = line.rstrip("\r\n")
    if not line.startswith(fmt.comment_marker) or fmt.separator not in line:
        return None

    body = line[len(fmt.comment_marker):]
    return tuple(token.strip() for token in body.split(fmt.separator))


def resolve_header(stream: TextIO, fmt: SfmFormat, source_file: str | None = None) -> HeaderSchema:
    """
    Find the header line and return the file's column schema.

    Reads forward from the current position until the first header line.
    The stream is left wherever scanning stopped; callers must seek back to
    the start before the data pass.

    Args:
        stream: Readable text stream positioned at the start of the file
        fmt: SFM text-format settings
        source_file: File name used for error context

    Returns:
        The parsed HeaderSchema

    Raises:
        SchemaNotFoundError: If end-of-stream is reached without a header
    """
    line_number = 0
    while True:
        line = stream.readline()
        if not line:
            break
        line_number += 1

        columns = parse_header_line(line, fmt)
        if columns is not None:
            return HeaderSchema(columns=columns, line_number=line_number)

    raise SchemaNotFoundError(
        "column names not found in file header",
        source_file=source_file,
    )
