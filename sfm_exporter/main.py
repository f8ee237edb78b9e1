"""
SFM Exporter entry point.

Runs one export pass over a data directory:
1. Load configuration (YAML file or environment)
2. Discover SFM files, in sorted path order
3. Export each file in turn; a failing file never stops the scan
4. Log a run summary and push metrics

Retry is a re-run: files whose sentinel is still false are exported again
from the beginning, overwriting the objects of any earlier partial attempt.

Auxiliary commands (list, fetch, delete) work directly on the blob store.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

import structlog

from sfm_exporter.compression import GzipCompressor
from sfm_exporter.config import Config
from sfm_exporter.errors import ExportError
from sfm_exporter.exporter import EXPORTED, FAILED, PENDING, SKIPPED, ExportResult, FileExporter
from sfm_exporter.metrics import MetricsClient
from sfm_exporter.storage import BlobStore, create_blob_store

log = structlog.get_logger()


@dataclass
class RunSummary:
    """Aggregate results of one export pass."""
    total: int = 0
    exported: int = 0
    skipped: int = 0
    pending: int = 0
    failed: int = 0
    records: int = 0
    records_dropped: int = 0
    batches: int = 0
    state_update_failures: int = 0
    results: list[ExportResult] = field(default_factory=list)

    @property
    def failures(self) -> list[ExportResult]:
        return [r for r in self.results if r.status == FAILED]


def configure_logging(level: str = "info", fmt: str = "json", stream: TextIO | None = None) -> None:
    """
    Configure structlog for the process.

    Args:
        level: Minimum level name ("debug", "info", ...)
        fmt: "json" for machine-readable lines, "console" for humans
        stream: Where log lines go (default: stderr)
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.WriteLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def discover_files(data_dir: str, extension: str = ".sfm") -> list[str]:
    """
    Find all files with the given extension below data_dir.

    Returns:
        Paths in sorted order, so runs visit files deterministically

    Raises:
        FileNotFoundError: If data_dir does not exist
    """
    root = Path(data_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Data directory not found: {data_dir}")

    return sorted(
        str(p) for p in root.rglob(f"*{extension}") if p.is_file()
    )


def export_all(
    files: list[str],
    exporter: FileExporter,
    dry_run: bool = False,
) -> RunSummary:
    """
    Export files one at a time, collecting one result per file.

    Never raises - errors are captured per file and the loop moves on.
    """
    summary = RunSummary(total=len(files))

    for path in files:
        try:
            result = exporter.export(path, dry_run=dry_run)
        except Exception as e:
            # Pipeline errors are captured inside export(); this is a bug guard
            log.exception("unexpected_export_error", file=path, error_type=type(e).__name__)
            result = ExportResult(
                source_file=path,
                status=FAILED,
                error=str(e),
                error_type=type(e).__name__,
            )

        summary.results.append(result)
        if result.status == EXPORTED:
            summary.exported += 1
            summary.records += result.records
            summary.records_dropped += result.mismatched
            summary.batches += len(result.batches)
            if not result.state_updated:
                summary.state_update_failures += 1
        elif result.status == SKIPPED:
            summary.skipped += 1
        elif result.status == PENDING:
            summary.pending += 1
        else:
            summary.failed += 1

    return summary


def load_config(config_path: str | None) -> Config:
    """Load from the YAML file if one is given and exists, else the environment."""
    if config_path and Path(config_path).exists():
        return Config.from_file(config_path)
    if config_path:
        log.warning("config_file_not_found", path=config_path, fallback="environment")
    return Config.from_env()


def run_export(args: argparse.Namespace, config: Config, store: BlobStore) -> int:
    """Run one export pass. Returns the process exit code."""
    metrics = MetricsClient(config)
    compressor = GzipCompressor() if config.compression else None
    exporter = FileExporter(config, store, compressor=compressor, metrics=metrics)

    files = discover_files(args.data, config.file_extension)
    log.info(
        "export_started",
        data_dir=args.data,
        files_found=len(files),
        destination=store.uri(""),
        batch_size=config.batch_size,
        compression=config.compression,
        dry_run=args.dry_run,
    )

    summary = export_all(files, exporter, dry_run=args.dry_run)

    metrics.record_run(summary)

    log.info(
        "export_complete",
        files_found=summary.total,
        files_exported=summary.exported,
        files_skipped=summary.skipped,
        files_pending=summary.pending,
        files_failed=summary.failed,
        records=summary.records,
        records_dropped=summary.records_dropped,
        batches=summary.batches,
        state_update_failures=summary.state_update_failures,
        duration_seconds=round(metrics.elapsed(), 3),
    )
    for failure in summary.failures:
        log.warning(
            "file_failed",
            file=failure.source_file,
            error=failure.error,
            error_type=failure.error_type,
        )

    metrics.flush()
    return 1 if summary.failed else 0


def run_list(args: argparse.Namespace, config: Config, store: BlobStore) -> int:
    for key in store.list(args.prefix):
        print(key)
    return 0


def run_fetch(args: argparse.Namespace, config: Config, store: BlobStore) -> int:
    store.get(args.key, args.dest)
    path = args.dest
    if args.decompress and path.endswith(GzipCompressor.suffix):
        path = GzipCompressor().decompress(path)
    log.info("object_fetched", key=args.key, path=path)
    return 0


def run_delete(args: argparse.Namespace, config: Config, store: BlobStore) -> int:
    store.delete(args.key)
    log.info("object_deleted", key=args.key, destination=store.uri(args.key))
    return 0


COMMANDS = {
    "export": run_export,
    "list": run_list,
    "fetch": run_fetch,
    "delete": run_delete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sfm-exporter",
        description="Export SFM files as JSON Lines batches to object storage",
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to configuration file (default: config/config.yaml, "
             "falls back to environment variables if missing)",
    )
    parser.add_argument(
        "--log",
        default=None,
        help="Append logs to this file instead of stderr",
    )

    sub = parser.add_subparsers(dest="command")

    export = sub.add_parser("export", help="Export all unexported SFM files (default)")
    export.add_argument("--data", default="data", help="Directory containing SFM files")
    export.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report which files would be exported",
    )

    list_cmd = sub.add_parser("list", help="List uploaded objects")
    list_cmd.add_argument("prefix", nargs="?", default="", help="Key prefix, e.g. a base file name")

    fetch = sub.add_parser("fetch", help="Download an uploaded object")
    fetch.add_argument("key", help="Object key, e.g. segment_1/batch-0.json.gz")
    fetch.add_argument("dest", help="Local destination path")
    fetch.add_argument("--decompress", action="store_true", help="Gunzip .gz objects after download")

    delete = sub.add_parser("delete", help="Delete an uploaded object")
    delete.add_argument("key", help="Object key")

    parser.set_defaults(command="export", data="data", dry_run=False)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ExportError as e:
        configure_logging()
        log.error("config_load_failed", error=str(e), error_type=type(e).__name__)
        return 2

    if args.log is None:
        configure_logging(config.log_level, config.log_format)
        return run_command(args, config)

    try:
        Path(args.log).parent.mkdir(parents=True, exist_ok=True)
        log_file = open(args.log, "a", encoding="utf-8")
    except OSError as e:
        configure_logging(config.log_level, config.log_format)
        log.error("log_file_open_failed", path=args.log, error=str(e), error_type=type(e).__name__)
        return 1

    with log_file:
        configure_logging(config.log_level, config.log_format, log_file)
        try:
            return run_command(args, config)
        finally:
            # The file is about to close; later log lines go back to stderr
            configure_logging(config.log_level, config.log_format)


def run_command(args: argparse.Namespace, config: Config) -> int:
    """Build the blob store and run the selected command. Returns the exit code."""
    try:
        store = create_blob_store(config)
        return COMMANDS[args.command](args, config, store)
    except Exception as e:
        log.error("command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
