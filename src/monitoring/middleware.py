"""
Flask middleware for request logging and metrics.

Provides:
- Request ID tracking (X-Request-ID in, X-Request-ID out)
- Request timing and per-route counters
- Structured request logging with the request id in every record
- Trace id response header when tracing is active
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics
from tracing import add_trace_to_response

logger = logging.getLogger("royalty.request")

_ADDRESS_SEGMENT = re.compile(r"^0x[a-fA-F0-9]{40}$")


def setup_request_logging(app: Flask) -> None:
    """
    Install request hooks on a Flask app.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.start_time = time.perf_counter()
        set_request_context(request_id=g.request_id, method=request.method, path=request.path)

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return add_trace_to_response(response)

    @app.teardown_request
    def teardown_request(exception=None):
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={"path": request.path, "method": request.method},
            )
        clear_request_context()


def _record_request(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000
    path = normalize_path(request.path)

    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing("http_request_duration_ms", duration_ms, labels={"path": path})

    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(
        level,
        f"{request.method} {request.path} -> {status_code}",
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def normalize_path(path: str) -> str:
    """
    Normalize a path for metrics labels.

    Wallet addresses and numeric ids become placeholders so metric
    cardinality stays bounded.
    """
    parts = []
    for part in path.strip("/").split("/"):
        if _ADDRESS_SEGMENT.match(part):
            parts.append(":address")
        elif part.isdigit():
            parts.append(":id")
        else:
            parts.append(part)
    return "/" + "/".join(parts) if parts and parts != [""] else "/"
