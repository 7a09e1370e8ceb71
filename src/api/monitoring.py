"""
Health and metrics blueprint.

Endpoints:
- /health: Engine health with component checks
- /health/live: Liveness probe
- /health/ready: Readiness probe (ledger reachable)
- /metrics: Prometheus text exposition
- /metrics/json: All metrics as JSON
"""

import time

from flask import Blueprint, Response

from monitoring.metrics import metrics

from .state import get_engine
from .utils import envelope

monitoring_bp = Blueprint("monitoring", __name__)

# Track startup time
_startup_time = time.time()


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """
    Health check with ledger, claims, notifications, detection and scheduler state.

    Returns 503 when the engine is degraded.
    """
    report = get_engine().health()
    report["uptimeSeconds"] = round(time.time() - _startup_time, 2)
    status = 200 if report["status"] == "healthy" else 503
    return envelope(report, status=status, success=status == 200)


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    """Returns 200 while the process is serving requests."""
    return envelope({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """
    Readiness probe.

    Ready when the ledger answers and the ledger circuit breaker is closed.
    """
    report = get_engine().health()
    issues = []
    if not report["ledgerAvailable"]:
        issues.append("ledger: not available")
    if report["claims"]["status"] != "healthy":
        issues.append("ledger circuit breaker open")

    if issues:
        return envelope({"status": "not_ready", "issues": issues}, status=503, success=False)
    return envelope({"status": "ready"})


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return envelope(metrics.get_all())


def _update_dynamic_metrics():
    """Refresh gauges before export."""
    engine = get_engine()
    for status, count in engine.claims.history.count_by_status().items():
        metrics.set_gauge("claim_history_entries", count, labels={"status": status.value})
    metrics.set_gauge("scheduler_running", 1 if engine.scheduler.is_running else 0)
