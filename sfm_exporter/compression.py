"""
Gzip compression for finalized batch artifacts.

A compressed copy is only kept when it is strictly smaller than the
original; otherwise it is deleted and the original path is returned, so
the caller uploads the uncompressed artifact.
"""

import gzip
import shutil
from pathlib import Path
from typing import Protocol

import structlog

from sfm_exporter.errors import CompressionError

log = structlog.get_logger()


class Compressor(Protocol):
    """
    Protocol for artifact compressors.

    compress returns the path to upload: the compressed sibling when it is
    smaller, the original path otherwise.
    """

    suffix: str

    def compress(self, path: str) -> str:
        ...

    def decompress(self, path: str) -> str:
        ...


class GzipCompressor:
    """Gzip compressor writing "<path>.gz" next to the original."""

    suffix = ".gz"

    def __init__(self, level: int = 6) -> None:
        self.level = level

    def compress(self, path: str) -> str:
        """
        Compress an artifact if that makes it smaller.

        Args:
            path: Artifact to compress

        Returns:
            Path of the compressed file, or path itself if compression did
            not reduce the size

        Raises:
            CompressionError: If reading, writing or comparing sizes fails
        """
        dest_path = path + self.suffix
        try:
            with open(path, "rb") as fin, gzip.open(dest_path, "wb", compresslevel=self.level) as fout:
                shutil.copyfileobj(fin, fout)

            original_size = Path(path).stat().st_size
            compressed_size = Path(dest_path).stat().st_size
        except OSError as e:
            Path(dest_path).unlink(missing_ok=True)
            raise CompressionError(f"error compressing {path}: {e}") from e

        if compressed_size >= original_size:
            Path(dest_path).unlink(missing_ok=True)
            log.debug(
                "compression_not_beneficial",
                file=path,
                original_bytes=original_size,
                compressed_bytes=compressed_size,
            )
            return path

        log.debug(
            "artifact_compressed",
            file=path,
            original_bytes=original_size,
            compressed_bytes=compressed_size,
        )
        return dest_path

    def decompress(self, path: str) -> str:
        """
        Decompress a gzip file next to itself, dropping the ".gz" suffix.

        Raises:
            CompressionError: If path is not a .gz file or cannot be read
        """
        if not path.endswith(self.suffix):
            raise CompressionError(f"file is not a gzip file: {path}")

        dest_path = path[: -len(self.suffix)]
        try:
            with gzip.open(path, "rb") as fin, open(dest_path, "wb") as fout:
                shutil.copyfileobj(fin, fout)
        except (OSError, EOFError) as e:
            raise CompressionError(f"error decompressing {path}: {e}") from e

        return dest_path
