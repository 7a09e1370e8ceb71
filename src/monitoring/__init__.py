"""
Monitoring for the royalty engine: metrics, structured logging and the
Flask request middleware.

Usage:
    from monitoring import metrics

    metrics.increment("claims_processed")
    metrics.timing("claim_duration_ms", 42.5)
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
