"""
Shared utilities for the royalty engine API.

This module contains the response envelope, request parsing helpers,
the API key decorator and the error handlers used by every blueprint.
"""

import logging
import os
import secrets
from datetime import datetime, timezone
from functools import wraps
from typing import Any

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from engine import API_VERSION
from errors import (
    NotFoundError,
    RateLimitedError,
    RoyaltyEngineError,
    ValidationError,
    to_engine_error,
)

logger = logging.getLogger(__name__)

# ============================================================
# Security Configuration
# ============================================================

# Mutating routes require X-API-Key when ROYALTY_API_KEY is set
API_KEY_ENV = "ROYALTY_API_KEY"
API_KEY_REQUIRED_ENV = "ROYALTY_REQUIRE_AUTH"

MAX_RESULTS = 100
MAX_BATCH_SIZE = 100


# ============================================================
# Response Envelope
# ============================================================


def envelope(
    data: Any = None,
    status: int = 200,
    error: dict[str, Any] | None = None,
    success: bool | None = None,
    headers: dict[str, str] | None = None,
):
    """
    Wrap a payload in the standard response envelope.

    {success, data | error, metadata: {timestamp, version, requestId}}

    A failed claim carries both its error and its partial data.
    """
    body: dict[str, Any] = {"success": error is None if success is None else success}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    body["metadata"] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
        "requestId": getattr(g, "request_id", None),
    }
    response = jsonify(body)
    response.status_code = status
    if headers:
        response.headers.update(headers)
    return response


def error_response(error: RoyaltyEngineError):
    headers = None
    if isinstance(error, RateLimitedError):
        headers = {"Retry-After": str(error.retry_after)}
    return envelope(error=error.to_dict(), status=error.http_status, headers=headers)


# ============================================================
# Validation Utilities
# ============================================================


def get_json_body() -> dict[str, Any]:
    """Parse the request body as a JSON object or raise ValidationError."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple],
    optional_fields: dict[str, type | tuple] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> None:
    """
    Validate a JSON payload against a simple schema.

    Raises:
        ValidationError: Naming the first offending field
    """
    for field_name, expected_type in required_fields.items():
        if field_name not in data or data[field_name] is None:
            raise ValidationError(
                f"Missing required field: {field_name}", details={"field": field_name}
            )
        if not isinstance(data[field_name], expected_type):
            raise ValidationError(
                f"Field '{field_name}' has the wrong type", details={"field": field_name}
            )

    for field_name, expected_type in (optional_fields or {}).items():
        value = data.get(field_name)
        if value is not None and not isinstance(value, expected_type):
            raise ValidationError(
                f"Field '{field_name}' has the wrong type", details={"field": field_name}
            )

    for field_name, max_len in (max_lengths or {}).items():
        value = data.get(field_name)
        if isinstance(value, str) and len(value) > max_len:
            raise ValidationError(
                f"Field '{field_name}' exceeds maximum length of {max_len}",
                details={"field": field_name},
            )


def arg_bool(name: str, default: bool = False) -> bool:
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def arg_int(name: str, default: int, minimum: int = 1, maximum: int = MAX_RESULTS) -> int:
    """Parse a bounded integer query parameter."""
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={"field": name})
    if not minimum <= parsed <= maximum:
        raise ValidationError(
            f"{name} must be between {minimum} and {maximum}", details={"field": name}
        )
    return parsed


def arg_list(name: str) -> list[str] | None:
    """Comma-separated query parameter, or None when absent."""
    value = request.args.get(name)
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


# ============================================================
# Authentication Decorator
# ============================================================


def require_api_key(f):
    """
    Decorator to require API key authentication.

    Authentication is enforced only when ROYALTY_API_KEY is configured or
    ROYALTY_REQUIRE_AUTH=true.
    """

    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = os.getenv(API_KEY_ENV)
        required = os.getenv(API_KEY_REQUIRED_ENV, "false").lower() == "true"
        if not api_key and not required:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")
        if not provided_key:
            return envelope(
                error={
                    "code": "UNAUTHORIZED",
                    "message": "API key required",
                    "details": {"hint": "Provide API key in X-API-Key header"},
                },
                status=401,
            )

        if not api_key:
            return envelope(
                error={
                    "code": "CONFIGURATION_ERROR",
                    "message": "Server API key not configured",
                    "details": {"hint": f"Set {API_KEY_ENV} environment variable"},
                },
                status=503,
            )

        if not secrets.compare_digest(provided_key, api_key):
            return envelope(
                error={"code": "FORBIDDEN", "message": "Invalid API key", "details": {}},
                status=403,
            )

        return f(*args, **kwargs)

    return decorated_function


# ============================================================
# Error Handlers
# ============================================================


def register_error_handlers(app: Flask, include_trace: bool = True) -> None:
    """
    Map every exception to the error envelope.

    Args:
        app: Flask application
        include_trace: Attach stack traces to unexpected errors (never in production)
    """

    @app.errorhandler(RoyaltyEngineError)
    def handle_engine_error(error: RoyaltyEngineError):
        if error.http_status >= 500:
            logger.error(f"{error.code}: {error.message}", extra=error.to_log_dict())
        return error_response(error)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        if error.code == 404:
            return error_response(NotFoundError(f"No route for {request.path}"))
        return envelope(
            error={
                "code": (error.name or "HTTP_ERROR").upper().replace(" ", "_"),
                "message": error.description or error.name,
                "details": {},
            },
            status=error.code or 500,
        )

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        logger.exception("Unhandled error in request")
        return error_response(to_engine_error(error, include_trace=include_trace))
