"""Metrics module."""

from ftp_template.metrics.prometheus import MetricsCollector, start_metrics_server

__all__ = ["MetricsCollector", "start_metrics_server"]
