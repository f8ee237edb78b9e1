"""
Exception hierarchy for the export pipeline.

All pipeline exceptions inherit from ExportError so the orchestrator can
catch them together while still logging the specific type. Each exception
carries the source file and, where relevant, the batch it failed on.

Record shape mismatches are not errors: they are counted in
TransformStats and never raised.
"""

from __future__ import annotations


class ExportError(Exception):
    """Base exception for all export pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        source_file: str | None = None,
        batch_index: int | None = None,
    ) -> None:
        self.source_file = source_file
        self.batch_index = batch_index
        super().__init__(message)


class ConfigError(ExportError):
    """Configuration is missing or invalid."""
    pass


class SchemaNotFoundError(ExportError):
    """No comment-marked, separator-delimited header line in the file."""
    pass


class CompressionError(ExportError):
    """Compressing a finalized artifact failed."""
    pass


class UploadError(ExportError):
    """Handing an artifact to the blob store failed."""

    def __init__(self, message: str, *, key: str | None = None, **kwargs) -> None:
        self.key = key
        super().__init__(message, **kwargs)


class StateUpdateError(ExportError):
    """The export sentinel could not be written back to the source file."""
    pass
