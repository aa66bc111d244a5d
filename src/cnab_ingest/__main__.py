"""CNAB upload pipeline. Use --help for usage."""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from prometheus_client import start_http_server

from config.config import PipelineConfig, load_config
from core.logging.setup import setup_logging

from cnab_ingest.app import Pipeline, build_pipeline
from cnab_ingest.metrics import PrometheusMetrics
from cnab_ingest.types import ProcessingContext

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m cnab_ingest",
        description="Ingest CNAB fixed-width transaction files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create tables
    python -m cnab_ingest init-db

    # Submit a file (mode from config, or forced)
    python -m cnab_ingest submit CNAB.txt
    python -m cnab_ingest submit CNAB.txt --mode async

    # Run a queue worker with Prometheus metrics on :8000
    python -m cnab_ingest worker --metrics-port 8000

    # Re-enqueue stale uploads once
    python -m cnab_ingest recover
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: CNAB_CONFIG or src/config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: from config)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory when not logging to stdout (default: from config)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    submit = subparsers.add_parser("submit", help="Submit a CNAB file")
    submit.add_argument("file", type=Path, help="CNAB file to ingest")
    submit.add_argument(
        "--mode",
        choices=["sync", "async"],
        default=None,
        help="Override processing.mode",
    )

    worker = subparsers.add_parser("worker", help="Process queued uploads")
    worker.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port",
    )
    worker.add_argument(
        "--no-recovery",
        action="store_true",
        help="Do not run the incomplete upload recovery loop alongside the worker",
    )

    subparsers.add_parser("recover", help="Re-enqueue stale incomplete uploads once")
    subparsers.add_parser("stats", help="Print queue statistics as JSON")
    subparsers.add_parser("init-db", help="Create database tables")

    return parser.parse_args(argv)


def _load(args: argparse.Namespace) -> PipelineConfig:
    overrides = {}
    if getattr(args, "mode", None):
        overrides["processing"] = {"mode": args.mode}
    config = load_config(config_path=args.config, overrides=overrides or None)

    log_config = config.logging
    setup_logging(
        name="cnab",
        log_dir=Path(args.log_dir or log_config.log_dir),
        json_format=log_config.json_format,
        console_level=getattr(logging, args.log_level or log_config.level.upper(), logging.INFO),
        log_to_stdout=log_config.log_to_stdout,
    )
    return config


async def _submit(pipeline: Pipeline, path: Path) -> int:
    content = await asyncio.to_thread(path.read_bytes)
    result = await pipeline.service.submit(content, path.name, ProcessingContext())
    print(
        json.dumps(
            {
                "uploadId": result.upload_id,
                "statusCode": int(result.status_code),
                "transactionCount": result.transaction_count,
                "message": result.message,
            }
        )
    )
    return 0 if result.is_success else 1


async def _worker(pipeline: Pipeline, run_recovery: bool) -> int:
    worker = pipeline.create_worker()
    recovery = pipeline.create_recovery()
    if run_recovery:
        await recovery.start()
    try:
        await worker.run()
    finally:
        await recovery.stop()
    return 0


async def _recover(pipeline: Pipeline) -> int:
    requeued = await pipeline.create_recovery().recover_once()
    print(json.dumps({"requeued": requeued}))
    return 0


async def _stats(pipeline: Pipeline) -> int:
    stats = await pipeline.queue.get_stats()
    print(json.dumps(asdict(stats)))
    return 0


async def run_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    metrics = None
    if args.command == "worker" and args.metrics_port:
        metrics = PrometheusMetrics()
        start_http_server(args.metrics_port, registry=metrics.registry)
        logger.info("Metrics server started on port %d", args.metrics_port)

    pipeline = build_pipeline(config, metrics=metrics)
    if args.command == "init-db":
        pipeline.database.dispose()
        logger.info("Database tables created")
        return 0

    await pipeline.start()
    try:
        if args.command == "submit":
            return await _submit(pipeline, args.file)
        if args.command == "worker":
            run_recovery = config.recovery.enabled and not args.no_recovery
            return await _worker(pipeline, run_recovery)
        if args.command == "recover":
            return await _recover(pipeline)
        return await _stats(pipeline)
    finally:
        await pipeline.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = _load(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
