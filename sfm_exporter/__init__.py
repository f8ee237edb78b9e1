"""
SFM Exporter - converts segment-metadata files to JSON Lines in object storage.

Scans a data directory for SFM files, converts each one to newline-delimited
JSON in size-bounded batches, optionally gzips each batch, uploads it, and
flips an embedded sentinel flag so the file is not exported again.

Usage:
    sfm-exporter --config config/config.yaml export --data data

Environment Variables (when no config file is given):
    SFM_STORAGE_BACKEND: "local", "gcs" or "s3" (default: local)
    SFM_STORAGE_PATH: Destination root (directory, gs:// or s3:// URI)
    SFM_BATCH_SIZE: Records per uploaded batch, <= 0 for one batch (default: 1000)
    SFM_COMPRESSION: "true" or "false" (default: true)
    SFM_TEMP_DIR: Where local artifacts are written (default: /tmp/sfm-exporter)
"""

__version__ = "0.1.0"
