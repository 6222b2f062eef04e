"""Prometheus metrics collector."""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)
import structlog


logger = structlog.get_logger(__name__)


class MetricsCollector:
    """Collector for pool and transfer metrics.

    Each collector owns its registry unless one is passed in, so several
    pools in one process (or one test run) never clash on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize metrics.

        Args:
            registry: Registry to register metrics with. A fresh one is
                created when omitted.
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        # Transfer metrics
        self.transfers_total = Counter(
            "ftp_transfers_total",
            "Total number of transfer operations",
            ["operation", "status"],
            registry=self.registry,
        )

        self.transfer_attempts = Counter(
            "ftp_transfer_attempts_total",
            "Total number of protocol attempts, retries included",
            ["operation"],
            registry=self.registry,
        )

        self.transfer_duration = Histogram(
            "ftp_transfer_duration_seconds",
            "Transfer duration in seconds",
            ["operation"],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
            registry=self.registry,
        )

        self.transfer_bytes = Counter(
            "ftp_transfer_bytes_total",
            "Total bytes transferred",
            ["operation"],
            registry=self.registry,
        )

        # Session pool metrics
        self.sessions_created = Counter(
            "ftp_sessions_created_total",
            "Total number of FTP sessions opened",
            registry=self.registry,
        )

        self.sessions_destroyed = Counter(
            "ftp_sessions_destroyed_total",
            "Total number of FTP sessions closed",
            registry=self.registry,
        )

        self.sessions_idle = Gauge(
            "ftp_sessions_idle",
            "Number of idle FTP sessions in the pool",
            registry=self.registry,
        )

        self.sessions_borrowed = Gauge(
            "ftp_sessions_borrowed",
            "Number of FTP sessions currently borrowed",
            registry=self.registry,
        )

        self.pool_exhausted = Counter(
            "ftp_pool_exhausted_total",
            "Number of borrows that timed out waiting for a session",
            registry=self.registry,
        )

    def record_transfer(
        self,
        operation: str,
        status: str,
        attempts: int,
        duration_seconds: float,
        bytes_transferred: int = 0,
    ) -> None:
        """Record a finished transfer operation.

        Args:
            operation: Operation name (upload/download/delete).
            status: Result status.
            attempts: Number of protocol attempts made.
            duration_seconds: Duration in seconds.
            bytes_transferred: Number of bytes transferred.
        """
        self.transfers_total.labels(operation=operation, status=status).inc()
        if attempts > 0:
            self.transfer_attempts.labels(operation=operation).inc(attempts)
        self.transfer_duration.labels(operation=operation).observe(duration_seconds)

        if bytes_transferred > 0:
            self.transfer_bytes.labels(operation=operation).inc(bytes_transferred)

    def record_session_created(self) -> None:
        """Record a session was opened."""
        self.sessions_created.inc()

    def record_session_destroyed(self) -> None:
        """Record a session was closed."""
        self.sessions_destroyed.inc()

    def record_pool_exhausted(self) -> None:
        """Record a borrow timed out."""
        self.pool_exhausted.inc()

    def update_pool_metrics(self, idle: int, borrowed: int) -> None:
        """Update session pool gauges.

        Args:
            idle: Number of idle sessions.
            borrowed: Number of borrowed sessions.
        """
        self.sessions_idle.set(idle)
        self.sessions_borrowed.set(borrowed)


def start_metrics_server(
    port: int = 9090,
    registry: Optional[CollectorRegistry] = None,
) -> None:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on.
        registry: Registry to expose. Defaults to the global registry.
    """
    if registry is None:
        start_http_server(port)
    else:
        start_http_server(port, registry=registry)
    logger.info("metrics_server_started", port=port)
