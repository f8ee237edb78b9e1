"""
Configuration management for the SFM Exporter.

This module handles:
- Loading environment variables into a typed, immutable Config dataclass
- Loading the same settings from a YAML config file
- Validating values that every component relies on

The resulting Config is built once at startup and passed explicitly to
every component; nothing reads configuration from global state.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from sfm_exporter.errors import ConfigError

VALID_BACKENDS = {"local", "gcs", "s3"}
VALID_LOG_FORMATS = {"json", "console"}


@dataclass(frozen=True)
class SfmFormat:
    """
    Text-format settings for SFM files.

    The header is the first line starting with comment_marker that also
    contains separator. The sentinel is a line of the form
    "<sentinel_key>:<true|false>".
    """
    separator: str = ","
    comment_marker: str = "#"
    sentinel_key: str = "jsonS3Exported"
    anchors: tuple[str, ...] = (".sfm", "segmeta.json")  # Sentinel is inserted after the first line containing one of these


@dataclass(frozen=True)
class Config:
    """
    Application configuration.

    Supports three storage backends:
    - local: Copies artifacts into a directory (development)
    - gcs: Google Cloud Storage (gs://bucket/prefix)
    - s3: Amazon S3 (s3://bucket/prefix)
    """
    # Storage
    storage_backend: str = "local"      # "local", "gcs" or "s3"
    storage_path: str = "exports"       # Directory, gs:// or s3:// URI
    region: str | None = None           # S3 region
    access_key: str | None = None       # S3 static credentials, optional
    secret_key: str | None = None

    # Export
    batch_size: int = 1000              # Records per batch; <= 0 means one batch per file
    compression: bool = True            # Gzip batches when it makes them smaller
    temp_dir: str = "/tmp/sfm-exporter" # Where local artifacts are written
    flush_every: int = 1000             # Writer flush interval in records
    keep_artifacts: bool = False        # Keep local artifacts after upload
    file_extension: str = ".sfm"        # Extension of files picked up by the scan

    fmt: SfmFormat = field(default_factory=SfmFormat)

    # Logging
    log_level: str = "info"
    log_format: str = "json"            # "json" or "console"

    # Metrics
    env: str = "dev"
    dynatrace_endpoint: str = ""
    dynatrace_token_path: str = "/secrets/dynatrace-token"

    def __post_init__(self) -> None:
        if self.storage_backend not in VALID_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend '{self.storage_backend}', "
                f"expected one of {sorted(VALID_BACKENDS)}"
            )
        if self.log_format not in VALID_LOG_FORMATS:
            raise ConfigError(f"Unknown log format '{self.log_format}'")
        if not self.fmt.separator:
            raise ConfigError("Separator must not be empty")
        if not self.fmt.comment_marker:
            raise ConfigError("Comment marker must not be empty")
        if not self.fmt.sentinel_key:
            raise ConfigError("Sentinel key must not be empty")
        if self.flush_every <= 0:
            raise ConfigError("flush_every must be positive")
        if not all(isinstance(a, str) and a for a in self.fmt.anchors):
            raise ConfigError(f"Anchors must be non-empty strings, got {list(self.fmt.anchors)!r}")

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        All variables are optional and fall back to the dataclass defaults:
            SFM_STORAGE_BACKEND, SFM_STORAGE_PATH, SFM_REGION,
            SFM_ACCESS_KEY, SFM_SECRET_KEY,
            SFM_BATCH_SIZE, SFM_COMPRESSION, SFM_TEMP_DIR, SFM_FLUSH_EVERY,
            SFM_KEEP_ARTIFACTS, SFM_FILE_EXTENSION,
            SFM_SEPARATOR, SFM_COMMENT_MARKER, SFM_SENTINEL_KEY, SFM_ANCHORS,
            SFM_LOG_LEVEL, SFM_LOG_FORMAT,
            ENV, DYNATRACE_ENDPOINT, DYNATRACE_TOKEN_PATH
        """
        base = SfmFormat()
        anchors = os.environ.get("SFM_ANCHORS")

        try:
            batch_size = int(os.environ.get("SFM_BATCH_SIZE", "1000"))
            flush_every = int(os.environ.get("SFM_FLUSH_EVERY", "1000"))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        return cls(
            storage_backend=os.environ.get("SFM_STORAGE_BACKEND", "local"),
            storage_path=os.environ.get("SFM_STORAGE_PATH", "exports"),
            region=os.environ.get("SFM_REGION"),
            access_key=os.environ.get("SFM_ACCESS_KEY"),
            secret_key=os.environ.get("SFM_SECRET_KEY"),
            batch_size=batch_size,
            compression=_parse_bool(os.environ.get("SFM_COMPRESSION", "true")),
            temp_dir=os.environ.get("SFM_TEMP_DIR", "/tmp/sfm-exporter"),
            flush_every=flush_every,
            keep_artifacts=_parse_bool(os.environ.get("SFM_KEEP_ARTIFACTS", "false")),
            file_extension=os.environ.get("SFM_FILE_EXTENSION", ".sfm"),
            fmt=SfmFormat(
                separator=os.environ.get("SFM_SEPARATOR", base.separator),
                comment_marker=os.environ.get("SFM_COMMENT_MARKER", base.comment_marker),
                sentinel_key=os.environ.get("SFM_SENTINEL_KEY", base.sentinel_key),
                anchors=tuple(a.strip() for a in anchors.split(",") if a.strip())
                if anchors else base.anchors,
            ),
            log_level=os.environ.get("SFM_LOG_LEVEL", "info"),
            log_format=os.environ.get("SFM_LOG_FORMAT", "json"),
            env=os.environ.get("ENV", "dev"),
            dynatrace_endpoint=os.environ.get("DYNATRACE_ENDPOINT", ""),
            dynatrace_token_path=os.environ.get(
                "DYNATRACE_TOKEN_PATH", "/secrets/dynatrace-token"
            ),
        )

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Missing sections and keys keep their defaults. Example:

            storage:
              backend: s3
              path: s3://segments-export/prod
              region: eu-west-1
            export:
              batch_size: 500
              compression: true
              temp_dir: /tmp/sfm-exporter
            format:
              separator: ","
              sentinel_key: jsonS3Exported
            logging:
              level: debug
              format: console

        Args:
            path: Path to the YAML file

        Returns:
            The loaded Config

        Raises:
            ConfigError: If the file is unreadable, not a mapping, or holds
                invalid values
        """
        try:
            raw = yaml.safe_load(Path(path).read_text())
        except OSError as e:
            raise ConfigError(f"Error reading config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing config file {path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Config":
        """Build a Config from the sectioned mapping used by the YAML file."""
        storage = _section(raw, "storage")
        export = _section(raw, "export")
        fmt = _section(raw, "format")
        logging_cfg = _section(raw, "logging")
        metrics = _section(raw, "metrics")

        base = cls()
        base_fmt = base.fmt

        anchors = fmt.get("anchors")
        if isinstance(anchors, str):
            anchors = [anchors]
        elif anchors is not None and not isinstance(anchors, list):
            raise ConfigError(f"format.anchors must be a string or a list, got {anchors!r}")

        try:
            return replace(
                base,
                storage_backend=str(storage.get("backend", base.storage_backend)),
                storage_path=str(storage.get("path", base.storage_path)),
                region=storage.get("region", base.region),
                access_key=storage.get("access_key", base.access_key),
                secret_key=storage.get("secret_key", base.secret_key),
                batch_size=int(export.get("batch_size", base.batch_size)),
                compression=_parse_bool(export.get("compression", base.compression)),
                temp_dir=str(export.get("temp_dir", base.temp_dir)),
                flush_every=int(export.get("flush_every", base.flush_every)),
                keep_artifacts=_parse_bool(export.get("keep_artifacts", base.keep_artifacts)),
                file_extension=str(export.get("file_extension", base.file_extension)),
                fmt=SfmFormat(
                    separator=str(fmt.get("separator", base_fmt.separator)),
                    comment_marker=str(fmt.get("comment_marker", base_fmt.comment_marker)),
                    sentinel_key=str(fmt.get("sentinel_key", base_fmt.sentinel_key)),
                    anchors=tuple(anchors) if anchors else base_fmt.anchors,
                ),
                log_level=str(logging_cfg.get("level", base.log_level)).lower(),
                log_format=str(logging_cfg.get("format", base.log_format)).lower(),
                env=str(metrics.get("env", base.env)),
                dynatrace_endpoint=str(metrics.get("dynatrace_endpoint", base.dynatrace_endpoint)),
                dynatrace_token_path=str(
                    metrics.get("dynatrace_token_path", base.dynatrace_token_path)
                ),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a config section, which must be a mapping when present."""
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping, got {type(section).__name__}")
    return section


def _parse_bool(value: Any) -> bool:
    """Interpret YAML/env style booleans ("true", "1", "yes", True)."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off", ""):
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")
