"""
Monitoring and metrics infrastructure for SealedGallery.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and key-material redaction
- Flask request timing middleware

Usage:
    from monitoring import metrics

    metrics.increment("purchases_total")
    with metrics.timer("authority_submit_ms"):
        ...
"""

from monitoring.logging import LoggingContext, configure_logging
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "metrics",
    "setup_request_logging",
]
