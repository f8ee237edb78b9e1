"""Naming and housekeeping for local and uploaded batch artifacts."""

from datetime import datetime
from pathlib import Path

import structlog

log = structlog.get_logger()


def base_name(source_file: str) -> str:
    """Source file name without directory or extension ("data/a.sfm" -> "a")."""
    return Path(source_file).stem


def run_stamp(now: datetime | None = None) -> str:
    """Timestamp used in local artifact names, e.g. "20240115-103000"."""
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def artifact_filename(base: str, stamp: str, batch_index: int) -> str:
    """
    Local file name for a batch artifact.

    The first batch is "<base>-<stamp>.json", later ones carry the index:
    "<base>-<stamp>-batch-<n>.json".
    """
    if batch_index > 0:
        return f"{base}-{stamp}-batch-{batch_index}.json"
    return f"{base}-{stamp}.json"


def upload_key(base: str, batch_index: int, compressed: bool) -> str:
    """Deterministic object key: "<base>/batch-<n>.json", plus ".gz" if compressed."""
    key = f"{base}/batch-{batch_index}.json"
    if compressed:
        key += ".gz"
    return key


def cleanup_temp_files(paths: list[str]) -> None:
    """Remove local artifacts, logging rather than raising on failure."""
    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            log.warning("temp_file_cleanup_failed", file=path, error=str(e))


def format_bytes(size: int) -> str:
    """Format a byte count as a human-readable string ("1.5 KB")."""
    unit = 1024
    if size < unit:
        return f"{size} B"

    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"
