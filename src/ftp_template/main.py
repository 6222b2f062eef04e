"""Command line entry point."""

import argparse
import json
import sys
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from ftp_template.config.settings import Settings, load_settings
from ftp_template.errors import InvalidArgumentError, LocalIOError
from ftp_template.logging import setup_logging
from ftp_template.metrics.prometheus import MetricsCollector, start_metrics_server
from ftp_template.pool.manager import SessionPool, open_pool
from ftp_template.transfer.models import TransferRequest, TransferResult
from ftp_template.transfer.service import TransferService


logger = structlog.get_logger(__name__)


EXIT_OK = 0
EXIT_TRANSFER_FAILED = 1
EXIT_USAGE = 2


class Application:
    """Wires settings, pool and transfer service for one CLI run."""

    def __init__(self, settings: Settings) -> None:
        """Initialize the application.

        Args:
            settings: Application settings.
        """
        self._settings = settings
        self._metrics: Optional[MetricsCollector] = None
        self._pool: Optional[SessionPool] = None
        self._service: Optional[TransferService] = None

    @property
    def service(self) -> TransferService:
        """Get the transfer service."""
        if self._service is None:
            raise RuntimeError("Application not initialized")
        return self._service

    def initialize(self) -> None:
        """Initialize application components."""
        session_config = self._settings.require_session()

        if self._settings.metrics.enabled:
            self._metrics = MetricsCollector()
            start_metrics_server(
                self._settings.metrics.port,
                registry=self._metrics.registry,
            )

        self._pool = open_pool(
            session_config,
            settings=self._settings.pool,
            metrics=self._metrics,
        )
        self._service = TransferService(
            self._pool,
            settings=self._settings.transfer,
            metrics=self._metrics,
        )
        logger.info("application_initialized", address=session_config.address)

    def run(self, request: TransferRequest) -> TransferResult:
        """Execute one transfer request."""
        return self.service.transfer(request)

    def stop(self) -> None:
        """Close all pooled sessions."""
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        self._service = None
        logger.info("application_stopped")

    def __enter__(self) -> "Application":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ftp-template",
        description="Pooled FTP upload, download and delete",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        help="Path to YAML settings file (defaults to $FTP_TEMPLATE_CONFIG)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        help="Retries after the first attempt (overrides settings)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload a local file")
    upload.add_argument("local_file", help="Local file to upload")
    upload.add_argument("remote_dir", help="Remote directory")

    download = commands.add_parser("download", help="Download a remote file")
    download.add_argument("remote_dir", help="Remote directory")
    download.add_argument("file_name", help="Remote file name (case-insensitive)")
    download.add_argument("local_dir", help="Local directory to write into")

    delete = commands.add_parser("delete", help="Delete a remote file")
    delete.add_argument("remote_dir", help="Remote directory")
    delete.add_argument("file_name", help="Remote file name")

    return parser.parse_args(argv)


def build_request(args: argparse.Namespace) -> TransferRequest:
    """Turn parsed arguments into a transfer request."""
    if args.command == "upload":
        return TransferRequest.upload(args.local_file, args.remote_dir, args.retries)
    if args.command == "download":
        return TransferRequest.download(
            args.remote_dir, args.file_name, args.local_dir, args.retries
        )
    return TransferRequest.delete(args.remote_dir, args.file_name, args.retries)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point.

    Returns:
        Exit code.
    """
    args = parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    level = "DEBUG" if args.verbose else settings.logging.level
    setup_logging(level=level, format=settings.logging.format)

    request = build_request(args)

    try:
        with Application(settings) as app:
            result = app.run(request)
    except (InvalidArgumentError, ValueError) as e:
        logger.error("invalid_request", error=str(e))
        return EXIT_USAGE
    except LocalIOError as e:
        logger.error("local_io_error", error=str(e))
        return EXIT_TRANSFER_FAILED

    print(json.dumps(result.to_dict()))
    return EXIT_OK if result.succeeded else EXIT_TRANSFER_FAILED


def run() -> None:
    """Run the application."""
    sys.exit(main())


if __name__ == "__main__":
    run()
